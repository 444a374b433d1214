"""Synthetic incident data for the safe-walk map.

Points and zones are random draws around a centre; there is no real
incident feed behind them.
"""
import math
import random
from typing import List, Optional, Tuple

from shesurvived.models import Coordinates, SafeWalkView, Zone

CITY_COORDINATES = {
    "Agadir": (30.4278, -9.5981),
    "New York": (40.7128, -74.006),
    "Los Angeles": (34.0522, -118.2437),
    "Chicago": (41.8781, -87.6298),
    "San Francisco": (37.7749, -122.4194),
    "Miami": (25.7617, -80.1918),
}

# radius units are hundredths of a degree
DEGREES_PER_UNIT = 0.01


def _around(center: Coordinates, radius: float, rng: random.Random) -> Coordinates:
    angle = rng.random() * math.pi * 2
    distance = rng.random() * radius
    return (
        center[0] + distance * math.cos(angle) * DEGREES_PER_UNIT,
        center[1] + distance * math.sin(angle) * DEGREES_PER_UNIT,
    )


def generate_heat_points(center: Coordinates, count: int = 200, radius: float = 10,
                         rng: Optional[random.Random] = None) -> List[Tuple[float, float, float]]:
    rng = rng or random.Random()
    points = []
    for _ in range(count):
        lat, lng = _around(center, radius, rng)
        points.append((lat, lng, rng.random() * 0.5 + 0.5))
    return points


def generate_zones(center: Coordinates, count: int = 5, radius: float = 8,
                   rng: Optional[random.Random] = None) -> List[Zone]:
    rng = rng or random.Random()
    zones = []
    for _ in range(count):
        position = _around(center, radius, rng)
        zones.append(Zone(position=position, is_safe=rng.random() > 0.3, radius=rng.random() * 100 + 50))
    return zones


def city_label(center: Coordinates) -> str:
    for city, coords in CITY_COORDINATES.items():
        if abs(coords[0] - center[0]) < 0.1 and abs(coords[1] - center[1]) < 0.1:
            return city
    return "Your Location"


def safe_walk_view(center: Coordinates, rng: Optional[random.Random] = None) -> SafeWalkView:
    rng = rng or random.Random()
    return SafeWalkView(
        center=center,
        label=city_label(center),
        points=generate_heat_points(center, rng=rng),
        zones=generate_zones(center, rng=rng),
    )
