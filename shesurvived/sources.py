"""Where locations and audio chunks come from.

The simulated sources stand in for a phone's GPS and microphone. The device
sources hand out whatever the paired device pushed through the API.
"""
import logging
import random
import uuid
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, Dict, List, Optional

from shesurvived import config
from shesurvived.models import Coordinates
from shesurvived.repository import utc_now

logger = logging.getLogger("shesurvived.sources")


class LocationSource(ABC):
    @abstractmethod
    async def initial(self, user_id: str) -> Coordinates:
        """Location to stamp on a freshly triggered alert."""

    @abstractmethod
    async def next(self, user_id: str) -> Optional[Coordinates]:
        """Next fix for a tracked user, or None when there is nothing new."""


class AudioSource(ABC):
    @abstractmethod
    async def next_chunks(self, user_id: str) -> List[str]:
        """Identifiers of the chunks recorded since the last call, oldest first."""

    def discard(self, user_id: str):
        """Drop anything still waiting for the user; called when an alert ends."""


class SimulatedLocationSource(LocationSource):
    def __init__(self, origin: Coordinates = config.DEFAULT_LOCATION,
                 jitter: float = config.LOCATION_JITTER_DEGREES,
                 spread: float = config.INITIAL_LOCATION_SPREAD_DEGREES,
                 rng: Optional[random.Random] = None):
        self.origin = origin
        self.jitter = jitter
        self.spread = spread
        self.rng = rng or random.Random()
        self.last: Dict[str, Coordinates] = {}

    async def initial(self, user_id: str) -> Coordinates:
        lat = self.origin[0] + (self.rng.random() - 0.5) * self.spread
        lng = self.origin[1] + (self.rng.random() - 0.5) * self.spread
        self.last[user_id] = (lat, lng)
        return self.last[user_id]

    def seed(self, user_id: str, location: Coordinates):
        self.last[user_id] = tuple(location)

    async def next(self, user_id: str) -> Coordinates:
        if user_id not in self.last:
            return await self.initial(user_id)
        lat, lng = self.last[user_id]
        moved = (
            lat + (self.rng.random() - 0.5) * self.jitter,
            lng + (self.rng.random() - 0.5) * self.jitter,
        )
        self.last[user_id] = moved
        return moved


class DeviceLocationSource(LocationSource):
    def __init__(self, fallback: Coordinates = config.DEFAULT_LOCATION):
        self.fallback = fallback
        self.fixes: Dict[str, Coordinates] = {}
        self._fresh: Dict[str, bool] = {}

    def push(self, user_id: str, location: Coordinates):
        self.fixes[user_id] = tuple(location)
        self._fresh[user_id] = True

    async def initial(self, user_id: str) -> Coordinates:
        return self.fixes.get(user_id, self.fallback)

    async def next(self, user_id: str) -> Optional[Coordinates]:
        if not self._fresh.get(user_id):
            return None
        self._fresh[user_id] = False
        return self.fixes[user_id]


class SimulatedAudioSource(AudioSource):
    async def next_chunks(self, user_id: str) -> List[str]:
        stamp = int(utc_now().timestamp() * 1000)
        return [f"chunk_{stamp}_{uuid.uuid4().hex[:8]}"]


class DeviceAudioSource(AudioSource):
    def __init__(self):
        self.pending: Dict[str, Deque[str]] = {}

    def push(self, user_id: str, chunk_id: str):
        self.pending.setdefault(user_id, deque()).append(chunk_id)

    async def next_chunks(self, user_id: str) -> List[str]:
        queue = self.pending.pop(user_id, None)
        return list(queue) if queue else []

    def discard(self, user_id: str):
        dropped = self.pending.pop(user_id, None)
        if dropped:
            logger.info(f"Dropped {len(dropped)} unsent chunks for user {user_id}")


def build_location_source(kind: Optional[str] = None) -> LocationSource:
    kind = kind or config.LOCATION_SOURCE
    if kind == "device":
        return DeviceLocationSource()
    if kind != "simulated":
        logger.warning(f"Unknown LOCATION_SOURCE '{kind}', using simulated locations")
    return SimulatedLocationSource()


def build_audio_source(kind: Optional[str] = None) -> AudioSource:
    kind = kind or config.AUDIO_SOURCE
    if kind == "device":
        return DeviceAudioSource()
    if kind != "simulated":
        logger.warning(f"Unknown AUDIO_SOURCE '{kind}', using simulated audio")
    return SimulatedAudioSource()
