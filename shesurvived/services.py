"""Wiring: one ClientContext per browsing context (session token)."""
import logging
import time
import uuid
from typing import Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from shesurvived import config
from shesurvived.accounts import AccountService
from shesurvived.database import RecordStore, build_backend
from shesurvived.feeds import LocationTracker
from shesurvived.lifecycle import AlertController
from shesurvived.notifier import ChangeBus
from shesurvived.repository import Repository
from shesurvived.sources import AudioSource, LocationSource, build_audio_source, build_location_source
from shesurvived.surface import NotificationSurface
from shesurvived.timers import PeriodicTimer, build_scheduler
from shesurvived.tone import AlarmTone, ToneSink, build_tone_sink

logger = logging.getLogger("shesurvived.services")


class ClientContext:
    def __init__(self, services: "Services", context_id: str, user_id: str):
        self.id = context_id
        self.user_id = user_id
        self.last_used = services.clock()
        # open change feeds
        self.connections = 0
        self.repository = services.repository.bound(context_id)
        self.accounts = AccountService(self.repository)
        self.controller = AlertController(
            self.repository,
            services.scheduler,
            audio_source=services.audio_source,
            audio_interval=services.audio_interval,
            live_stream_on_trigger=services.live_stream_on_trigger,
        )
        self.tracker = LocationTracker(self.controller, user_id, services.location_source,
                                       interval=services.location_interval)
        self.surface = NotificationSurface(
            self.repository,
            user_id,
            services.scheduler,
            AlarmTone(services.scheduler, services.tone_sink_factory()),
            scan_interval=services.scan_interval,
        )

    @property
    def busy(self) -> bool:
        """Streaming audio, tracking location or holding an open change feed."""
        streamer = self.controller.streamers.get(self.user_id)
        streaming = streamer is not None and not streamer.finished
        return streaming or self.tracker.tracking or self.connections > 0

    async def open(self):
        await self.controller.attach(self.user_id)
        await self.surface.start()

    async def close(self):
        await self.tracker.stop()
        await self.surface.stop()
        await self.controller.close()


class Services:
    def __init__(self, store: Optional[RecordStore] = None,
                 audio_source: Optional[AudioSource] = None,
                 location_source: Optional[LocationSource] = None,
                 tone_sink_factory: Optional[Callable[[], ToneSink]] = None,
                 audio_interval: float = config.AUDIO_CHUNK_INTERVAL_SECONDS,
                 location_interval: float = config.LOCATION_INTERVAL_SECONDS,
                 scan_interval: float = config.CONTACT_SCAN_INTERVAL_SECONDS,
                 live_stream_on_trigger: bool = config.LIVE_STREAM_ON_TRIGGER,
                 scheduler: Optional[AsyncIOScheduler] = None,
                 idle_seconds: float = config.CONTEXT_IDLE_SECONDS,
                 reap_interval: float = config.CONTEXT_REAP_INTERVAL_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.store = store or RecordStore(build_backend(), ChangeBus())
        self.repository = Repository(self.store)
        self.audio_source = audio_source or build_audio_source()
        self.location_source = location_source or build_location_source()
        self.tone_sink_factory = tone_sink_factory or build_tone_sink
        self.audio_interval = audio_interval
        self.location_interval = location_interval
        self.scan_interval = scan_interval
        self.live_stream_on_trigger = live_stream_on_trigger
        self.scheduler = scheduler or build_scheduler()
        self.idle_seconds = idle_seconds
        self.clock = clock
        self.contexts: Dict[str, ClientContext] = {}
        self.reaper = PeriodicTimer(self.scheduler, reap_interval, self.reap_idle, name="context-reaper")

    @property
    def bus(self) -> ChangeBus:
        return self.store.bus

    async def startup(self):
        """Start the scheduler on the running loop and begin reaping idle contexts."""
        if not self.scheduler.running:
            self.scheduler.start()
        self.reaper.start()

    def new_context_id(self) -> str:
        return uuid.uuid4().hex

    async def context(self, context_id: str, user_id: str) -> ClientContext:
        """Return the live context for a session, opening it on first use."""
        ctx = self.contexts.get(context_id)
        if ctx is not None and ctx.user_id == user_id:
            ctx.last_used = self.clock()
            return ctx
        if ctx is not None:
            await self.close_context(context_id)
        ctx = ClientContext(self, context_id, user_id)
        self.contexts[context_id] = ctx
        await ctx.open()
        logger.info(f"Opened context {context_id} for user {user_id}")
        return ctx

    async def close_context(self, context_id: str):
        ctx = self.contexts.pop(context_id, None)
        if ctx is not None:
            await ctx.close()
            logger.info(f"Closed context {context_id}")

    async def reap_idle(self) -> int:
        """Close contexts unused for ``idle_seconds`` that are not busy.

        A reaped session whose token is still valid gets a fresh context on
        its next request.
        """
        cutoff = self.clock() - self.idle_seconds
        stale = [c.id for c in self.contexts.values() if c.last_used < cutoff and not c.busy]
        for context_id in stale:
            await self.close_context(context_id)
        if stale:
            logger.info(f"Reaped {len(stale)} idle contexts, {len(self.contexts)} left")
        return len(stale)

    async def shutdown(self):
        await self.reaper.stop()
        for context_id in list(self.contexts):
            await self.close_context(context_id)
        self.bus.close()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
