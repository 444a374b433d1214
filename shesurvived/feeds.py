"""Timer-driven feeds that keep an alert's audio and location fresh."""
import logging
from typing import TYPE_CHECKING, Optional

from shesurvived import config
from shesurvived.models import LocationSlot
from shesurvived.sources import AudioSource, LocationSource
from shesurvived.timers import PeriodicTimer

if TYPE_CHECKING:
    from shesurvived.lifecycle import AlertController

logger = logging.getLogger("shesurvived.feeds")


class AudioStreamer:
    """Appends the chunks recorded since the last tick to a single alert instance.

    Pauses while live streaming is off and stops for good once the alert is
    seen inactive. A new alert instance needs a new streamer.
    """

    def __init__(self, controller: "AlertController", user_id: str, alert_id: Optional[str],
                 source: AudioSource, interval: float = config.AUDIO_CHUNK_INTERVAL_SECONDS):
        self.controller = controller
        self.user_id = user_id
        self.alert_id = alert_id
        self.source = source
        self.finished = False
        self.timer = PeriodicTimer(controller.scheduler, interval, self.step, name=f"audio-{user_id}")

    @property
    def running(self) -> bool:
        return self.timer.running

    def start(self):
        if self.finished:
            return
        self.timer.start()

    async def stop(self):
        self.finished = True
        await self.timer.stop()

    async def step(self) -> bool:
        if self.finished:
            return False
        record = await self.controller.current(self.user_id)
        if record is None or not record.active or record.id != self.alert_id:
            logger.info(f"Audio stream for user {self.user_id} ended")
            self.finished = True
            return False
        if not record.live_stream_active:
            return True
        for chunk_id in await self.source.next_chunks(self.user_id):
            if await self.controller.append_chunk(self.user_id, chunk_id) is None:
                self.finished = True
                return False
        return True


class LocationTracker:
    """Writes a fresh fix into the user's location slot every tick while tracking."""

    def __init__(self, controller: "AlertController", user_id: str, source: LocationSource,
                 interval: float = config.LOCATION_INTERVAL_SECONDS):
        self.controller = controller
        self.user_id = user_id
        self.source = source
        self.timer = PeriodicTimer(controller.scheduler, interval, self.step, name=f"location-{user_id}")

    @property
    def tracking(self) -> bool:
        return self.timer.running

    def start(self):
        self.timer.start()

    async def stop(self):
        await self.timer.stop()

    async def toggle(self) -> bool:
        if self.tracking:
            await self.stop()
        else:
            self.start()
        return self.tracking

    async def step(self) -> Optional[LocationSlot]:
        location = await self.source.next(self.user_id)
        if location is None:
            return None
        slot = await self.controller.repository.put_location(self.user_id, location)
        await self.controller.update_location(self.user_id, location)
        return slot
