"""
External collaborators consumed by the engine.

- ``Clock``: source of "now" (swap for ``FrozenClock`` in tests)
- ``SegmentProvider``: behavioural segments of a user
- ``SubjectProfileProvider``: facts used by audience criteria
- ``ContentProvider``: personalised content used to seed programmatic tests

The ``Static*`` implementations are dictionary-backed and serve local runs,
the traffic simulator and tests.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable


class Clock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now


@runtime_checkable
class SegmentProvider(Protocol):
    async def get_segments(self, user_id: str) -> Optional[List[str]]:
        """Segments for a known user, or None when the user is unknown."""
        ...


@runtime_checkable
class SubjectProfileProvider(Protocol):
    async def get_total_purchases(self, user_id: Optional[str]) -> int: ...

    async def get_session_count(self, subject_key: str) -> int: ...

    async def get_last_visit(self, subject_key: str) -> Optional[datetime]: ...


@runtime_checkable
class ContentProvider(Protocol):
    async def get_personalized_content(
        self, product_id: str, user_id: Optional[str], session_id: Optional[str]
    ) -> "PersonalizedContent": ...


@dataclass
class PersonalizedContent:
    content: Any
    target_audience: List[str] = field(default_factory=list)
    alternatives: List[Any] = field(default_factory=list)


class StaticSegmentProvider:
    def __init__(self, segments: Optional[Dict[str, List[str]]] = None):
        self.segments = dict(segments or {})

    async def get_segments(self, user_id: str) -> Optional[List[str]]:
        return self.segments.get(user_id)


@dataclass
class SubjectProfile:
    total_purchases: int = 0
    session_count: int = 0
    last_visit: Optional[datetime] = None


class StaticSubjectProfileProvider:
    """Profiles keyed by user id or session id."""

    def __init__(self, profiles: Optional[Dict[str, SubjectProfile]] = None):
        self.profiles = dict(profiles or {})

    def _profile(self, key: Optional[str]) -> SubjectProfile:
        if key is None:
            return SubjectProfile()
        return self.profiles.get(key) or SubjectProfile()

    async def get_total_purchases(self, user_id: Optional[str]) -> int:
        return self._profile(user_id).total_purchases

    async def get_session_count(self, subject_key: str) -> int:
        return self._profile(subject_key).session_count

    async def get_last_visit(self, subject_key: str) -> Optional[datetime]:
        return self._profile(subject_key).last_visit


class StaticContentProvider:
    def __init__(self, catalog: Optional[Dict[str, PersonalizedContent]] = None):
        self.catalog = dict(catalog or {})

    async def get_personalized_content(
        self, product_id: str, user_id: Optional[str], session_id: Optional[str]
    ) -> PersonalizedContent:
        if product_id not in self.catalog:
            raise LookupError(f"No personalized content for product {product_id}")
        return self.catalog[product_id]
