"""
Ephemeral courier positions keyed by courier login.

Nothing here is persisted; positions age out through expire_older_than,
which the scheduler runs on a fixed interval.
"""
import time
from typing import Callable, Dict, List, Optional

from relay.models import Location
from relay.observability import get_logger

logger = get_logger(__name__)


class LocationStore:
    """Last known position and liveness per courier."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._locations: Dict[str, Location] = {}

    def update(self, key: str, lat: float, lng: float) -> Location:
        location = Location(lat=float(lat), lng=float(lng), updated_at=self._clock(), live=True)
        self._locations[key] = location
        return location

    def mark_inactive(self, key: str) -> bool:
        """Flag a position as no longer live; the point stays until it expires."""
        location = self._locations.get(key)
        if location is None:
            return False
        location.live = False
        return True

    def clear(self, key: str) -> bool:
        return self._locations.pop(key, None) is not None

    def get(self, key: str) -> Optional[Location]:
        return self._locations.get(key)

    def expire_older_than(self, max_age: float) -> List[str]:
        """Remove every entry older than ``max_age`` seconds; returns removed keys."""
        now = self._clock()
        expired = [key for key, loc in self._locations.items() if loc.age(now) > max_age]
        for key in expired:
            del self._locations[key]
        if expired:
            logger.info(f"Expired locations: {expired}")
        return expired

    def snapshot(self, max_age: Optional[float] = None) -> Dict[str, dict]:
        """Current positions, optionally hiding entries older than ``max_age``."""
        now = self._clock()
        return {
            key: loc.to_dict()
            for key, loc in self._locations.items()
            if max_age is None or loc.age(now) <= max_age
        }

    def __len__(self) -> int:
        return len(self._locations)
