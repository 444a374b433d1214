import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorClient

from shesurvived import config
from shesurvived.notifier import ChangeBus

# Configure simple logging
logger = logging.getLogger("shesurvived.database")

USERS_KEY = "safetyUsers"
SESSION_USER_KEY = "safetyUser"
EMERGENCIES_KEY = "emergencies"
HISTORY_KEY = "emergencyHistory"
LOCATIONS_KEY = "emergencyData"


class MemoryBackend:
    """Process-local key/value storage, the single-device demo default."""

    def __init__(self):
        self._items: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._items.get(key)

    async def set(self, key: str, value: str):
        self._items[key] = value

    async def delete(self, key: str):
        self._items.pop(key, None)


class MongoBackend:
    """One document per key in the ``records`` collection."""

    def __init__(self, url: str, database_name: str):
        # Lower timeout to 2 seconds so a missing server fails fast
        self.client = AsyncIOMotorClient(url, serverSelectionTimeoutMS=2000)
        self.collection = self.client[database_name].get_collection("records")

    async def get(self, key: str) -> Optional[str]:
        doc = await self.collection.find_one({"_id": key})
        return doc["value"] if doc else None

    async def set(self, key: str, value: str):
        await self.collection.update_one(
            {"_id": key},
            {"$set": {"value": value, "updated_at": datetime.utcnow()}},
            upsert=True,
        )

    async def delete(self, key: str):
        await self.collection.delete_one({"_id": key})


def build_backend(kind: Optional[str] = None, url: Optional[str] = None, database_name: Optional[str] = None):
    kind = kind or config.STORAGE_BACKEND
    url = url if url is not None else config.MONGODB_URL
    if kind == "mongo":
        if not url:
            logger.error("CRITICAL: MONGODB_URL not found in environment. Falling back to in-memory records.")
            return MemoryBackend()
        try:
            return MongoBackend(url, database_name or config.DATABASE_NAME)
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            return MemoryBackend()
    if kind != "memory":
        logger.warning(f"Unknown STORAGE_BACKEND '{kind}', using in-memory records")
    return MemoryBackend()


class RecordStore:
    """Key/value store of JSON strings that announces every write on the bus.

    Keys are created lazily on first write and live until removed.
    """

    def __init__(self, backend=None, bus: Optional[ChangeBus] = None):
        self.backend = backend if backend is not None else MemoryBackend()
        self.bus = bus if bus is not None else ChangeBus()
        self._lock: Optional[asyncio.Lock] = None

    def locked(self) -> asyncio.Lock:
        """Lock held around read-modify-write sequences within this process."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def get_item(self, key: str) -> Optional[str]:
        return await self.backend.get(key)

    async def set_item(self, key: str, value: str, origin: Optional[str] = None):
        await self.backend.set(key, value)
        self.bus.publish(key, value, origin=origin)

    async def remove_item(self, key: str, origin: Optional[str] = None):
        await self.backend.delete(key)
        self.bus.publish(key, None, origin=origin)

    async def read(self, key: str, default: Any = None) -> Any:
        raw = await self.get_item(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            logger.error(f"Stored value for '{key}' is not valid JSON, ignoring it")
            return default

    async def write(self, key: str, value: Any, origin: Optional[str] = None):
        await self.set_item(key, json.dumps(value), origin=origin)
