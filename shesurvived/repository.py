"""Typed access to the record store, one instance per browsing context.

Every write is tagged with the context id, so the change bus delivers it to
every other context and never back to this one.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from shesurvived.database import (
    EMERGENCIES_KEY,
    HISTORY_KEY,
    LOCATIONS_KEY,
    SESSION_USER_KEY,
    USERS_KEY,
    RecordStore,
)
from shesurvived.models import AlertRecord, Coordinates, LocationSlot, User

logger = logging.getLogger("shesurvived.repository")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


class Repository:
    def __init__(self, store: RecordStore, context_id: Optional[str] = None):
        self.store = store
        self.context_id = context_id

    def bound(self, context_id: str) -> "Repository":
        return Repository(self.store, context_id)

    def locked(self):
        return self.store.locked()

    # --- Users --- #

    async def list_users(self) -> List[User]:
        return [User.model_validate(u) for u in await self.store.read(USERS_KEY, [])]

    async def save_users(self, users: List[User]):
        await self.store.write(USERS_KEY, [u.to_record() for u in users], origin=self.context_id)

    async def get_user(self, user_id: str) -> Optional[User]:
        for user in await self.list_users():
            if user.id == user_id:
                return user
        return None

    async def find_user_by_email(self, email: str) -> Optional[User]:
        for user in await self.list_users():
            if user.email == email:
                return user
        return None

    async def save_user(self, user: User):
        """Insert or replace one user, keeping the session copy in step."""
        users = await self.list_users()
        for index, existing in enumerate(users):
            if existing.id == user.id:
                users[index] = user
                break
        else:
            users.append(user)
        await self.save_users(users)
        session_user = await self.get_session_user()
        if session_user is not None and session_user.id == user.id:
            await self.set_session_user(user)

    # --- Session --- #

    async def get_session_user(self) -> Optional[User]:
        raw = await self.store.read(SESSION_USER_KEY)
        return User.model_validate(raw) if raw else None

    async def set_session_user(self, user: User):
        await self.store.write(SESSION_USER_KEY, user.to_record(), origin=self.context_id)

    async def clear_session(self):
        await self.store.remove_item(SESSION_USER_KEY, origin=self.context_id)

    # --- Current alerts --- #

    async def get_emergencies(self) -> Dict[str, AlertRecord]:
        raw = await self.store.read(EMERGENCIES_KEY, {})
        return {user_id: AlertRecord.model_validate(record) for user_id, record in raw.items()}

    async def get_current_alert(self, user_id: str) -> Optional[AlertRecord]:
        return (await self.get_emergencies()).get(user_id)

    async def put_current_alert(self, record: AlertRecord):
        raw = await self.store.read(EMERGENCIES_KEY, {})
        raw[record.user_id] = record.to_record()
        await self.store.write(EMERGENCIES_KEY, raw, origin=self.context_id)

    # --- History --- #

    async def get_history_map(self) -> Dict[str, List[AlertRecord]]:
        raw = await self.store.read(HISTORY_KEY, {})
        return {user_id: [AlertRecord.model_validate(r) for r in _as_list(entries)] for user_id, entries in raw.items()}

    async def get_history(self, user_id: str) -> List[AlertRecord]:
        return (await self.get_history_map()).get(user_id, [])

    async def append_history(self, record: AlertRecord):
        raw = await self.store.read(HISTORY_KEY, {})
        entries = _as_list(raw.get(record.user_id))
        entries.append(record.to_record())
        raw[record.user_id] = entries
        await self.store.write(HISTORY_KEY, raw, origin=self.context_id)

    async def replace_history_entry(self, record: AlertRecord, match: Callable[[List[dict]], Optional[int]]):
        """Overwrite the entry picked by ``match`` with ``record``; no-op when nothing matches."""
        raw = await self.store.read(HISTORY_KEY, {})
        entries = _as_list(raw.get(record.user_id))
        index = match(entries)
        if index is None:
            logger.warning(f"No history entry to update for user {record.user_id}")
            return
        entries[index] = {**entries[index], **record.to_record()}
        raw[record.user_id] = entries
        await self.store.write(HISTORY_KEY, raw, origin=self.context_id)

    # --- Locations --- #

    async def get_location(self, user_id: str) -> Optional[LocationSlot]:
        raw = await self.store.read(LOCATIONS_KEY, {})
        slot = raw.get(user_id)
        return LocationSlot.model_validate(slot) if slot else None

    async def put_location(self, user_id: str, location: Coordinates, moment: Optional[datetime] = None) -> LocationSlot:
        """Replace the user's slot in the shared map under the store lock."""
        slot = LocationSlot(location=location, timestamp=to_timestamp(moment or utc_now()))
        async with self.store.locked():
            raw = await self.store.read(LOCATIONS_KEY, {})
            raw[user_id] = slot.to_record()
            await self.store.write(LOCATIONS_KEY, raw, origin=self.context_id)
        return slot


def _as_list(entries) -> List[dict]:
    # A lone record is a legacy shape of the history map
    if entries is None:
        return []
    if isinstance(entries, list):
        return list(entries)
    return [entries]
