"""
Value types shared across the relay.

Orders themselves stay as the raw amoCRM lead dicts (plus an attached
``contact`` summary) so clients receive exactly what amoCRM sent.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

Order = Dict[str, Any]

UNKNOWN_NAME = "Не указано"
UNKNOWN_PHONE = "Не указан"


@dataclass
class ContactSummary:
    """Resolved contact attached to a lead as ``lead["contact"]``."""
    id: Optional[int] = None
    name: str = UNKNOWN_NAME
    phone: str = UNKNOWN_PHONE

    @classmethod
    def unknown(cls, contact_id: Optional[int] = None) -> "ContactSummary":
        return cls(id=contact_id)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "phone": self.phone}


@dataclass(frozen=True)
class Courier:
    """Roster entry. ``tags`` keeps the roster order; it decides dedup priority."""
    login: str
    password: str
    tags: tuple
    color: Optional[str] = None

    @classmethod
    def from_dict(cls, login: str, data: Dict[str, Any]) -> "Courier":
        tags = data.get("tags") or ([data["tag"]] if data.get("tag") else [login])
        return cls(
            login=login,
            password=str(data.get("password", "")),
            tags=tuple(str(t) for t in tags),
            color=data.get("color"),
        )

    def public_dict(self) -> Dict[str, Any]:
        """Roster entry safe to push to map observers."""
        return {"login": self.login, "tags": list(self.tags), "color": self.color}


@dataclass
class Location:
    """Last reported courier position. ``updated_at`` is epoch seconds."""
    lat: float
    lng: float
    updated_at: float
    live: bool = True

    def age(self, now: float) -> float:
        return now - self.updated_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lat": self.lat,
            "lng": self.lng,
            "timestamp": int(self.updated_at * 1000),
            "live": self.live,
        }


MAP_CLASS = "map"


@dataclass(frozen=True)
class SubscriptionKey:
    """
    Normalized subscription criteria.

    A tag set is the canonical key; a login is resolved to its courier's tags
    before a key is built. Map observers carry no tags.
    """
    tags: tuple = ()
    login: Optional[str] = None
    is_map: bool = False

    @classmethod
    def for_tags(cls, tags: Iterable[str], login: Optional[str] = None) -> "SubscriptionKey":
        ordered: List[str] = []
        for tag in tags:
            tag = tag.strip()
            if tag and tag not in ordered:
                ordered.append(tag)
        return cls(tags=tuple(ordered), login=login)

    @classmethod
    def map_observer(cls) -> "SubscriptionKey":
        return cls(is_map=True)

    @property
    def tag_set(self) -> FrozenSet[str]:
        return frozenset(self.tags)


@dataclass
class LeadPage:
    """One page of the amoCRM lead list."""
    leads: List[Order] = field(default_factory=list)
    total: int = 0
    raw_count: int = 0  # leads amoCRM returned before the tag check
    from_cache: bool = False


@dataclass
class LeadSweep:
    """
    Result of walking every page of a filter.

    ``complete`` is False when the walk stopped on an error; the leads are
    then a partial snapshot and must never be read as proof of absence.
    Pages served from the cache may predate orders amoCRM lists now, so a
    sweep with any ``cached_pages`` is not authoritative either.
    """
    leads: List[Order] = field(default_factory=list)
    complete: bool = True
    pages: int = 0
    cached_pages: int = 0

    @property
    def authoritative(self) -> bool:
        return self.complete and self.cached_pages == 0

    @property
    def ids(self) -> set:
        return {lead["id"] for lead in self.leads}
