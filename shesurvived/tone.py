"""Synthetic alarm tone played on a trusted contact's device."""
import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from shesurvived import config
from shesurvived.errors import ToneUnavailable
from shesurvived.timers import PeriodicTimer

logger = logging.getLogger("shesurvived.tone")


class ToneSink(ABC):
    """Somewhere a tone can be played: consumes waveform, frequency and gain."""

    @abstractmethod
    def start(self, waveform: str, frequency: float, gain: float):
        ...

    @abstractmethod
    def set_frequency(self, frequency: float):
        ...

    @abstractmethod
    def stop(self):
        ...


class LoggingToneSink(ToneSink):
    def __init__(self):
        self.playing = False
        self.frequency: Optional[float] = None
        self.changes: List[float] = []

    def start(self, waveform: str, frequency: float, gain: float):
        self.playing = True
        self.frequency = frequency
        self.changes.append(frequency)
        logger.info(f"Alarm tone started ({waveform}, {frequency:.0f} Hz, gain {gain})")

    def set_frequency(self, frequency: float):
        self.frequency = frequency
        self.changes.append(frequency)
        logger.debug(f"Alarm tone at {frequency:.0f} Hz")

    def stop(self):
        if self.playing:
            logger.info("Alarm tone stopped")
        self.playing = False


class UnsupportedToneSink(ToneSink):
    def start(self, waveform: str, frequency: float, gain: float):
        raise ToneUnavailable("Tone generation is not supported here")

    def set_frequency(self, frequency: float):
        raise ToneUnavailable("Tone generation is not supported here")

    def stop(self):
        pass


def build_tone_sink(kind: Optional[str] = None) -> ToneSink:
    kind = kind or config.TONE_OUTPUT
    if kind == "none":
        return UnsupportedToneSink()
    return LoggingToneSink()


class AlarmTone:
    """Continuous tone alternating between two frequencies until stopped.

    Any sink failure is logged and the alarm goes silent instead.
    """

    def __init__(self, scheduler: AsyncIOScheduler, sink: Optional[ToneSink] = None,
                 frequencies: Tuple[float, float] = config.TONE_FREQUENCIES,
                 cadence: float = config.TONE_CADENCE_SECONDS,
                 waveform: str = config.TONE_WAVEFORM,
                 gain: float = config.TONE_GAIN):
        self.sink = sink or build_tone_sink()
        self.frequencies = frequencies
        self.waveform = waveform
        self.gain = gain
        self.playing = False
        self.silenced = False
        self._index = 0
        self.timer = PeriodicTimer(scheduler, cadence, self._alternate, name="alarm-tone")

    def start(self):
        if self.playing or self.silenced:
            return
        self._index = 0
        try:
            self.sink.start(self.waveform, self.frequencies[0], self.gain)
        except Exception as e:
            logger.warning(f"Alarm tone unavailable, alerting silently: {e}")
            self.silenced = True
            return
        self.playing = True
        self.timer.start()

    def _alternate(self):
        if not self.playing:
            return False
        self._index = 1 - self._index
        try:
            self.sink.set_frequency(self.frequencies[self._index])
        except Exception as e:
            logger.warning(f"Alarm tone failed, alerting silently: {e}")
            self.playing = False
            self.silenced = True
            return False
        return True

    async def stop(self):
        await self.timer.stop()
        if self.playing:
            try:
                self.sink.stop()
            except Exception as e:
                logger.warning(f"Could not stop alarm tone cleanly: {e}")
        self.playing = False
