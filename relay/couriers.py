"""
Courier roster: login -> password, tags and display color.

Loaded once at startup from couriers.json and never mutated. Entries may
carry either ``tags`` (list) or the older single ``tag`` field:

    {
        "sasha": {"password": "...", "tags": ["sasha", "night"], "color": "#e53935"},
        "dima":  {"password": "...", "tag": "dima"}
    }
"""
import hmac
import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from relay.exceptions import CourierNotFound
from relay.models import Courier
from relay.observability import get_logger

logger = get_logger(__name__)


class CourierRoster:
    """Read-only courier lookup."""

    def __init__(self, couriers: Iterable[Courier] = ()):
        self._couriers: Dict[str, Courier] = {c.login: c for c in couriers}

    @classmethod
    def from_dict(cls, data: Dict[str, dict]) -> "CourierRoster":
        return cls(Courier.from_dict(login, entry) for login, entry in data.items())

    @classmethod
    def from_file(cls, path: Path) -> "CourierRoster":
        try:
            with Path(path).open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load courier roster from {path}: {e}")
            data = {}
        roster = cls.from_dict(data)
        logger.info(f"Loaded {len(roster)} couriers")
        return roster

    def get(self, login: str) -> Optional[Courier]:
        return self._couriers.get(login)

    def require(self, login: str) -> Courier:
        courier = self._couriers.get(login)
        if courier is None:
            raise CourierNotFound(login)
        return courier

    def authenticate(self, login: str, password: str) -> Optional[Courier]:
        courier = self._couriers.get(login)
        if courier and hmac.compare_digest(courier.password.encode(), str(password).encode()):
            return courier
        return None

    def owners_of(self, tag: str) -> List[Courier]:
        """Couriers whose tag set includes ``tag``."""
        return [c for c in self._couriers.values() if tag in c.tags]

    def login_for_tags(self, tags: Iterable[str]) -> Optional[str]:
        """
        Courier owning a tag set: an exact tag-set match first, then the first
        courier sharing any tag.
        """
        wanted = set(tags)
        if not wanted:
            return None
        for courier in self._couriers.values():
            if set(courier.tags) == wanted:
                return courier.login
        for courier in self._couriers.values():
            if wanted.intersection(courier.tags):
                return courier.login
        return None

    def public_list(self) -> List[dict]:
        return [c.public_dict() for c in self._couriers.values()]

    def __iter__(self):
        return iter(self._couriers.values())

    def __len__(self) -> int:
        return len(self._couriers)
