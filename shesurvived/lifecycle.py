"""Emergency alert lifecycle for one browsing context.

    Idle -> Active(normal | doubt) -> Cancelled(false alarm | resolved)

Cancelled is terminal for an alert instance; triggering again creates a new
record and a new history entry. Contacts are "notified" only in the sense
that the write becomes visible to their contexts through the change bus.
"""
import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Dict, List, Literal, Optional, Tuple, Union

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from shesurvived import config
from shesurvived.database import EMERGENCIES_KEY
from shesurvived.feeds import AudioStreamer
from shesurvived.models import AlertRecord, ChunkRef, Coordinates, EmergencyType, User
from shesurvived.notifier import decode
from shesurvived.repository import Repository, to_timestamp, utc_now
from shesurvived.sources import AudioSource, SimulatedAudioSource
from shesurvived.timers import ElapsedClock

logger = logging.getLogger("shesurvived.lifecycle")

FALSE_ALARM_REASON = "False alarm"
RESOLVED_REASON = "Emergency resolved"


class Mode(str, Enum):
    NORMAL = "normal"
    DOUBT = "doubt"


class Outcome(str, Enum):
    FALSE_ALARM = "false_alarm"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class Idle:
    kind: Literal["idle"] = "idle"


@dataclass(frozen=True)
class Active:
    mode: Mode
    started_at: str
    location: Optional[Coordinates]
    audio: Tuple[str, ...]
    kind: Literal["active"] = "active"


@dataclass(frozen=True)
class Cancelled:
    outcome: Outcome
    at: Optional[str]
    emergency_type: Optional[EmergencyType] = None
    kind: Literal["cancelled"] = "cancelled"


AlertState = Union[Idle, Active, Cancelled]


def alert_state(record: Optional[AlertRecord]) -> AlertState:
    if record is None:
        return Idle()
    if record.active:
        return Active(
            mode=Mode.DOUBT if record.doubt_mode else Mode.NORMAL,
            started_at=record.timestamp,
            location=record.location,
            audio=tuple(record.audio_chunks),
        )
    if record.was_real_emergency:
        return Cancelled(outcome=Outcome.RESOLVED, at=record.cancelled_at, emergency_type=record.emergency_type)
    return Cancelled(outcome=Outcome.FALSE_ALARM, at=record.cancelled_at)


def history_status(record: AlertRecord) -> str:
    state = alert_state(record)
    if isinstance(state, Active):
        return "active"
    if state.outcome == Outcome.RESOLVED:
        return "resolved"
    return "cancelled"


def match_history_entry(record: AlertRecord):
    """Pick the history entry a current record belongs to.

    Records carry an id and are matched on it. Records written before ids
    existed fall back to the last entry.
    """

    def match(entries: List[dict]) -> Optional[int]:
        if record.id:
            for index in range(len(entries) - 1, -1, -1):
                if entries[index].get("id") == record.id:
                    return index
            return None
        return len(entries) - 1 if entries else None

    return match


class AlertMirror:
    """Local copy of a user's alert, updated from change events."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        self.record: Optional[AlertRecord] = None

    @property
    def active(self) -> bool:
        return self.record is not None and self.record.active

    def seed(self, record: Optional[AlertRecord]):
        self.record = record

    def apply(self, record: AlertRecord) -> Optional[str]:
        was_active = self.active
        is_new = self.record is None or self.record.id != record.id
        self.record = record
        if record.active and (not was_active or is_new):
            return "triggered"
        if was_active and not record.active:
            return "cancelled"
        return None


class AlertController:
    def __init__(self, repository: Repository, scheduler: AsyncIOScheduler, audio_source: Optional[AudioSource] = None,
                 audio_interval: float = config.AUDIO_CHUNK_INTERVAL_SECONDS,
                 live_stream_on_trigger: bool = config.LIVE_STREAM_ON_TRIGGER):
        self.repository = repository
        self.scheduler = scheduler
        self.audio_source = audio_source or SimulatedAudioSource()
        self.audio_interval = audio_interval
        self.live_stream_on_trigger = live_stream_on_trigger
        self.streamers: Dict[str, AudioStreamer] = {}
        self.clocks: Dict[str, ElapsedClock] = {}
        self.mirrors: Dict[str, AlertMirror] = {}
        self._followers: Dict[str, asyncio.Task] = {}

    @property
    def context_id(self) -> Optional[str]:
        return self.repository.context_id

    async def current(self, user_id: str) -> Optional[AlertRecord]:
        return await self.repository.get_current_alert(user_id)

    def elapsed(self, user_id: str) -> int:
        clock = self.clocks.get(user_id)
        return clock.seconds if clock else 0

    def recording(self, user_id: str) -> bool:
        clock = self.clocks.get(user_id)
        return clock is not None and clock.running

    async def trigger(self, user: Optional[User], location: Optional[Coordinates],
                      doubt_mode: bool = False) -> Optional[AlertRecord]:
        if user is None:
            logger.debug("Trigger ignored: no authenticated user")
            return None
        async with self.repository.locked():
            existing = await self.repository.get_current_alert(user.id)
            if existing is not None and existing.active:
                logger.info(f"User {user.id} already has an active alert")
                return existing
            record = AlertRecord(
                id=uuid.uuid4().hex,
                user_id=user.id,
                user_name=user.full_name,
                timestamp=to_timestamp(utc_now()),
                location=location,
                active=True,
                doubt_mode=doubt_mode,
                bracelet_code=user.bracelet_code,
                # doubt mode only logs, it never sounds on contacts' devices
                play_alarm_on_contact=not doubt_mode,
                audio_chunks=[],
                live_stream_active=self.live_stream_on_trigger,
            )
            await self.repository.put_current_alert(record)
            await self.repository.append_history(record)
        mode = "doubt" if doubt_mode else "normal"
        logger.info(f"Alert {record.id} triggered by user {user.id} ({mode})")
        self._begin(record)
        return record

    async def cancel(self, user: Optional[User], was_real_emergency: bool,
                     emergency_type: Optional[EmergencyType] = None) -> None:
        if user is None:
            return
        async with self.repository.locked():
            record = await self.repository.get_current_alert(user.id)
            if record is None or not record.active:
                logger.debug(f"Cancel ignored: user {user.id} has no active alert")
                return
            record = record.model_copy(update={
                "active": False,
                "cancelled_at": to_timestamp(utc_now()),
                "play_alarm_on_contact": False,
                "live_stream_active": False,
                "was_real_emergency": was_real_emergency,
                "cancellation_reason": RESOLVED_REASON if was_real_emergency else FALSE_ALARM_REASON,
                "emergency_type": EmergencyType(emergency_type) if was_real_emergency and emergency_type else None,
            })
            await self.repository.put_current_alert(record)
            await self.repository.replace_history_entry(record, match_history_entry(record))
        logger.info(f"Alert {record.id} of user {user.id} cancelled: {record.cancellation_reason}")
        mirror = self.mirrors.get(user.id)
        if mirror is not None:
            mirror.seed(record)
        self.audio_source.discard(user.id)
        await self._end(user.id)

    async def append_chunk(self, user_id: str, chunk_id: str) -> Optional[AlertRecord]:
        async with self.repository.locked():
            record = await self.repository.get_current_alert(user_id)
            if record is None or not record.active:
                return None
            record = record.model_copy(update={
                "audio_chunks": [*record.audio_chunks, chunk_id],
                "latest_chunk": ChunkRef(id=chunk_id, timestamp=to_timestamp(utc_now())),
            })
            await self.repository.put_current_alert(record)
            await self.repository.replace_history_entry(record, match_history_entry(record))
        return record

    async def set_live_stream(self, user_id: str, active: bool) -> Optional[AlertRecord]:
        async with self.repository.locked():
            record = await self.repository.get_current_alert(user_id)
            if record is None or not record.active:
                return None
            record = record.model_copy(update={"live_stream_active": active})
            await self.repository.put_current_alert(record)
        if active and user_id not in self.streamers:
            self._start_streamer(record)
        return record

    async def update_location(self, user_id: str, location: Coordinates) -> Optional[AlertRecord]:
        async with self.repository.locked():
            record = await self.repository.get_current_alert(user_id)
            if record is None or not record.active:
                return None
            record = record.model_copy(update={"location": tuple(location)})
            await self.repository.put_current_alert(record)
        return record

    async def attach(self, user_id: str) -> Optional[AlertRecord]:
        """Pick up an alert after a reload and keep following other contexts."""
        record = await self.current(user_id)
        mirror = self.mirrors.setdefault(user_id, AlertMirror(user_id))
        mirror.seed(record)
        if record is not None and record.active:
            self._clock(user_id).start(record.timestamp)
            if record.live_stream_active:
                self._start_streamer(record)
        if user_id not in self._followers:
            self._followers[user_id] = asyncio.get_running_loop().create_task(self._follow(user_id, mirror))
        return record

    async def observe_changes(self, user_id: str) -> AsyncIterator[AlertRecord]:
        """Yield the user's record each time another context rewrites ``emergencies``.

        Never ends on its own; cancel the consumer or ``aclose()`` it.
        """
        queue: asyncio.Queue = asyncio.Queue()
        subscription = self.repository.store.bus.subscribe(EMERGENCIES_KEY, queue.put, context=self.context_id)
        try:
            while True:
                event = await queue.get()
                raw = decode(event, {}).get(user_id)
                if raw is not None:
                    yield AlertRecord.model_validate(raw)
        finally:
            subscription.unsubscribe()

    async def close(self):
        for task in list(self._followers.values()):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._followers.clear()
        for user_id in list(self.streamers):
            await self._end(user_id)
        self.clocks.clear()

    async def _follow(self, user_id: str, mirror: AlertMirror):
        async for record in self.observe_changes(user_id):
            transition = mirror.apply(record)
            if transition == "triggered":
                logger.info(f"Alert {record.id} of user {user_id} raised in another context")
                self._clock(user_id).start(record.timestamp)
            elif transition == "cancelled":
                logger.info(f"Alert {record.id} of user {user_id} cancelled in another context")
                self.audio_source.discard(user_id)
                await self._end(user_id)

    def _clock(self, user_id: str) -> ElapsedClock:
        return self.clocks.setdefault(user_id, ElapsedClock())

    def _begin(self, record: AlertRecord):
        mirror = self.mirrors.get(record.user_id)
        if mirror is not None:
            mirror.seed(record)
        self.audio_source.discard(record.user_id)
        self._clock(record.user_id).start(record.timestamp)
        self._start_streamer(record)

    def _start_streamer(self, record: AlertRecord):
        previous = self.streamers.get(record.user_id)
        if previous is not None and previous.alert_id == record.id and not previous.finished:
            previous.start()
            return
        streamer = AudioStreamer(self, record.user_id, record.id, self.audio_source, self.audio_interval)
        self.streamers[record.user_id] = streamer
        streamer.start()

    async def _end(self, user_id: str):
        streamer = self.streamers.pop(user_id, None)
        if streamer is not None:
            await streamer.stop()
        clock = self.clocks.get(user_id)
        if clock is not None:
            clock.stop()
