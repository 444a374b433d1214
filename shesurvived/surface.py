"""What a viewer sees of other users' alerts: dashboard banner, tracking and history."""
import logging
from typing import Dict, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from shesurvived import config
from shesurvived.database import EMERGENCIES_KEY, USERS_KEY
from shesurvived.errors import RecordNotFound
from shesurvived.formatting import format_elapsed, latest_chunk_label, recording_duration, time_ago
from shesurvived.lifecycle import history_status
from shesurvived.models import (
    AlertRecord,
    DashboardView,
    HistoryEntry,
    HistoryView,
    NotificationView,
    TrackingView,
    User,
    UserPublic,
)
from shesurvived.notifier import Subscription
from shesurvived.repository import Repository, parse_timestamp
from shesurvived.timers import PeriodicTimer
from shesurvived.tone import AlarmTone

logger = logging.getLogger("shesurvived.surface")


def watched_ids(viewer: User) -> List[str]:
    """Users whose alerts reach the viewer: those who trust them, then their own contacts."""
    seen: Set[str] = set()
    ordered = []
    for user_id in [*viewer.trusted_by, *viewer.trusted_contacts]:
        if user_id not in seen and user_id != viewer.id:
            seen.add(user_id)
            ordered.append(user_id)
    return ordered


class NotificationSurface:
    def __init__(self, repository: Repository, viewer_id: str, scheduler: AsyncIOScheduler,
                 tone: Optional[AlarmTone] = None,
                 scan_interval: float = config.CONTACT_SCAN_INTERVAL_SECONDS):
        self.repository = repository
        self.viewer_id = viewer_id
        self.tone = tone or AlarmTone(scheduler)
        self.notifications: List[NotificationView] = []
        self.muted = False
        # user id -> timestamp of the dismissed alert instance
        self.dismissed: Dict[str, str] = {}
        self._subscriptions: List[Subscription] = []
        self.timer = PeriodicTimer(scheduler, scan_interval, self.refresh, name=f"contact-scan-{viewer_id}")

    async def start(self):
        bus = self.repository.store.bus
        context = self.repository.context_id
        for key in (EMERGENCIES_KEY, USERS_KEY):
            self._subscriptions.append(bus.subscribe(key, self._on_change, context=context))
        self.timer.start()
        await self.refresh()

    async def stop(self):
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()
        await self.timer.stop()
        await self.tone.stop()

    async def _on_change(self, event):
        await self.refresh()

    async def refresh(self) -> List[NotificationView]:
        viewer = await self.repository.get_user(self.viewer_id)
        if viewer is None:
            self.notifications = []
            await self._sync_tone()
            return self.notifications
        users = {u.id: u for u in await self.repository.list_users()}
        emergencies = await self.repository.get_emergencies()
        shown = []
        for user_id in watched_ids(viewer):
            alert = emergencies.get(user_id)
            contact = users.get(user_id)
            if alert is None or not alert.active or contact is None:
                continue
            if self.dismissed.get(user_id) == alert.timestamp:
                continue
            shown.append(NotificationView(
                user_id=user_id,
                user_name=contact.full_name,
                timestamp=alert.timestamp,
                time_ago=time_ago(alert.timestamp),
                location=alert.location,
                doubt_mode=alert.doubt_mode,
                play_alarm_on_contact=alert.play_alarm_on_contact,
            ))
        self.notifications = shown
        await self._sync_tone()
        return shown

    def dismiss(self, user_id: str):
        """Hide the banner here only; the alert itself stays active."""
        for notification in self.notifications:
            if notification.user_id == user_id:
                self.dismissed[user_id] = notification.timestamp
        self.notifications = [n for n in self.notifications if n.user_id != user_id]

    async def dismiss_and_sync(self, user_id: str):
        self.dismiss(user_id)
        await self._sync_tone()

    async def mute(self):
        self.muted = True
        await self._sync_tone()

    async def unmute(self):
        self.muted = False
        await self._sync_tone()

    def view(self) -> DashboardView:
        return DashboardView(notifications=list(self.notifications), tone_playing=self.tone.playing, muted=self.muted)

    async def track(self, user_id: str) -> TrackingView:
        """Tracking view of an alert the viewer is allowed to follow: their own or a watched user's."""
        viewer = await self.repository.get_user(self.viewer_id)
        if viewer is None:
            raise RecordNotFound(f"User {self.viewer_id} not found", redirect_to="/api/login")
        if user_id != viewer.id and user_id not in watched_ids(viewer):
            raise RecordNotFound(f"User {self.viewer_id} does not watch {user_id}")
        return await tracking_view(self.repository, user_id)

    async def call(self, user_id: str) -> Optional[str]:
        contact = await self.repository.get_user(user_id)
        if contact is None:
            raise RecordNotFound(f"User {user_id} not found")
        # TODO: hand the number to a telephony provider once one is chosen
        logger.info(f"Call requested to {user_id} (not connected)")
        return contact.phone_number or None

    async def _sync_tone(self):
        if not self.muted and any(n.play_alarm_on_contact for n in self.notifications):
            self.tone.start()
        else:
            await self.tone.stop()


async def tracking_view(repository: Repository, user_id: str) -> TrackingView:
    alert = await repository.get_current_alert(user_id)
    if alert is None:
        raise RecordNotFound(f"No emergency record for user {user_id}")
    user = await repository.get_user(user_id)
    if user is None:
        raise RecordNotFound(f"User {user_id} not found")
    slot = await repository.get_location(user_id)
    latest = alert.latest_chunk.timestamp if alert.latest_chunk else None
    return TrackingView(
        user=UserPublic.from_user(user),
        alert=alert,
        location=slot.location if slot else alert.location,
        location_updated_at=slot.timestamp if slot else None,
        audio_duration=format_elapsed(recording_duration(len(alert.audio_chunks))),
        latest_chunk_label=latest_chunk_label(latest),
    )


async def load_history(repository: Repository, viewer_id: str) -> HistoryView:
    """Sent and received alerts, newest first, with the current records folded in."""
    viewer = await repository.get_user(viewer_id)
    if viewer is None:
        raise RecordNotFound(f"User {viewer_id} not found", redirect_to="/api/login")
    users = {u.id: u for u in await repository.list_users()}
    history = await repository.get_history_map()
    current = await repository.get_emergencies()

    def entries_for(user_id: str, name: str) -> List[HistoryEntry]:
        records = _merge(history.get(user_id, []), current.get(user_id))
        return [HistoryEntry(user_id=user_id, user_name=name, status=history_status(r), alert=r) for r in records]

    sent = entries_for(viewer.id, viewer.full_name)
    received = []
    for user_id in watched_ids(viewer):
        contact = users.get(user_id)
        if contact is not None:
            received.extend(entries_for(user_id, contact.full_name))
    return HistoryView(sent=_newest_first(sent), received=_newest_first(received))


def _merge(records: List[AlertRecord], current: Optional[AlertRecord]) -> List[AlertRecord]:
    if current is None:
        return list(records)
    merged = []
    replaced = False
    for record in records:
        if current.id and record.id == current.id:
            merged.append(current)
            replaced = True
        else:
            merged.append(record)
    if not replaced and not any(r.timestamp == current.timestamp for r in records):
        merged.append(current)
    return merged


def _newest_first(entries: List[HistoryEntry]) -> List[HistoryEntry]:
    return sorted(entries, key=lambda e: parse_timestamp(e.alert.timestamp), reverse=True)
