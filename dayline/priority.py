from __future__ import annotations

from enum import IntEnum
from typing import Hashable

from dayline.models import (
    Candidate,
    CommuteKind,
    EventKind,
    PersistedEvent,
    PlaceKind,
    ScreenTimeKind,
)


class Tier(IntEnum):
    UNKNOWN = 0
    LOCATION = 1
    SCREEN_TIME = 2
    PROTECTED = 3


def kind_tier(kind: EventKind | None) -> Tier:
    if isinstance(kind, ScreenTimeKind):
        return Tier.SCREEN_TIME
    if isinstance(kind, (PlaceKind, CommuteKind)):
        return Tier.LOCATION
    return Tier.UNKNOWN


def event_tier(event: PersistedEvent) -> Tier:
    if event.is_locked or event.is_user:
        return Tier.PROTECTED
    return kind_tier(event.kind)


def candidate_tier(candidate: Candidate) -> Tier:
    return kind_tier(candidate.kind)


def outranks(tier: Tier, other: Tier) -> bool:
    """Whether ``tier`` wins a contested interval against ``other``."""
    return tier > other


def identity_key(kind: EventKind | None) -> Hashable | None:
    """Cross-window identity; ``None`` means the kind cannot be matched."""
    if isinstance(kind, ScreenTimeKind):
        if kind.app_id is None:
            return None
        return ("screen_time", kind.app_id)
    if isinstance(kind, PlaceKind):
        return ("place", kind.place_id)
    return None


def is_trimmable(kind: EventKind | None) -> bool:
    # Commute legs share the location tier but are never split.
    return isinstance(kind, PlaceKind)
