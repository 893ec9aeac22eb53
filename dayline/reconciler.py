from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Sequence

from dayline.intervals import Span, overlaps_any, subtract_spans
from dayline.models import (
    Candidate,
    CommuteKind,
    EventDelete,
    EventExtension,
    EventUpdate,
    PersistedEvent,
    PlaceKind,
    ReconcileConfig,
    ReconciliationPlan,
    ScreenTimeKind,
)
from dayline.priority import (
    Tier,
    candidate_tier,
    event_tier,
    identity_key,
    is_trimmable,
    outranks,
)


EXTENSION_GAP = timedelta(seconds=60)
MIN_SEGMENT = timedelta(seconds=60)

STREAM_SCREEN_TIME = "screen_time"
STREAM_LOCATION = "location"

Claim = tuple[Tier, Span]


@dataclass
class Classification:
    protected_spans: list[Span] = field(default_factory=list)
    protected_ids: list[str] = field(default_factory=list)


@dataclass
class MatchResult:
    matched: list[tuple[PersistedEvent, Candidate]] = field(default_factory=list)
    unmatched: list[Candidate] = field(default_factory=list)
    orphans: list[PersistedEvent] = field(default_factory=list)
    superseded: list[Candidate] = field(default_factory=list)


def _candidate_order(candidate: Candidate) -> tuple[datetime, datetime, str]:
    return (candidate.scheduled_start, candidate.scheduled_end, candidate.source_id or "")


def classify_events(existing_events: Iterable[PersistedEvent]) -> Classification:
    classification = Classification()
    for event in existing_events:
        tier = event_tier(event)
        if tier is not Tier.PROTECTED:
            continue
        classification.protected_spans.append((event.scheduled_start, event.scheduled_end))
        if event.id not in classification.protected_ids:
            classification.protected_ids.append(event.id)
    return classification


def match_candidates(
    existing_events: Iterable[PersistedEvent],
    candidates: Iterable[Candidate],
) -> MatchResult:
    """Pair unlocked derived entries with candidates sharing their ``source_id``.

    Candidates whose ``source_id`` belongs to a protected entry are superseded by
    that entry and never reach the insertion path.
    """
    result = MatchResult()
    by_source_id: dict[str, PersistedEvent] = {}
    protected_source_ids: set[str] = set()
    open_events: list[PersistedEvent] = []
    for event in existing_events:
        if not event.is_derived:
            continue
        source_id = event.source_id
        if event.is_locked:
            if source_id:
                protected_source_ids.add(source_id)
            continue
        open_events.append(event)
        if source_id and source_id not in by_source_id:
            by_source_id[source_id] = event

    claimed: set[str] = set()
    for candidate in candidates:
        source_id = (candidate.source_id or "").strip()
        event = by_source_id.get(source_id) if source_id else None
        if event is not None and event.id not in claimed:
            claimed.add(event.id)
            result.matched.append((event, candidate))
        elif source_id and source_id in protected_source_ids:
            result.superseded.append(candidate)
        else:
            result.unmatched.append(candidate)

    result.orphans = [event for event in open_events if event.id not in claimed]
    return result


def diff_update(event: PersistedEvent, candidate: Candidate) -> EventUpdate | None:
    new_start = candidate.scheduled_start if candidate.scheduled_start != event.scheduled_start else None
    new_end = candidate.scheduled_end if candidate.scheduled_end != event.scheduled_end else None
    new_title = candidate.title if candidate.title != event.title else None
    if new_start is None and new_end is None and new_title is None:
        return None
    return EventUpdate(event_id=event.id, new_start=new_start, new_end=new_end, new_title=new_title)


def extension_pool(
    previous_window_events: Iterable[PersistedEvent],
    candidate: Candidate,
    *,
    window_start: datetime | None = None,
    gap: timedelta = EXTENSION_GAP,
    current_ends: dict[str, datetime] | None = None,
    excluded_ids: Iterable[str] = (),
) -> list[PersistedEvent]:
    """Previous-window entries that ``candidate`` could continue, locked or not.

    ``current_ends`` carries ends already advanced earlier in the same pass. An
    entry already reaching past the candidate's start still qualifies so that a
    re-run over an extended entry does not insert a duplicate.
    """
    key = identity_key(candidate.kind)
    if key is None:
        return []
    current_ends = current_ends or {}
    excluded = set(excluded_ids)
    pool: list[PersistedEvent] = []
    for event in previous_window_events:
        if event.id in excluded:
            continue
        if identity_key(event.kind) != key:
            continue
        if window_start is not None and event.scheduled_start >= window_start:
            continue
        if event.scheduled_start >= candidate.scheduled_start:
            continue
        end = current_ends.get(event.id, event.scheduled_end)
        if candidate.scheduled_start - end > gap:
            continue
        pool.append(event)
    return pool


def find_extendable_event(
    previous_window_events: Iterable[PersistedEvent],
    candidate: Candidate,
    *,
    window_start: datetime | None = None,
    gap: timedelta = EXTENSION_GAP,
    current_ends: dict[str, datetime] | None = None,
    excluded_ids: Iterable[str] = (),
) -> PersistedEvent | None:
    current_ends = current_ends or {}
    usable = [
        event
        for event in extension_pool(
            previous_window_events,
            candidate,
            window_start=window_start,
            gap=gap,
            current_ends=current_ends,
            excluded_ids=excluded_ids,
        )
        if event_tier(event) is not Tier.PROTECTED
    ]
    if not usable:
        return None
    return max(usable, key=lambda event: current_ends.get(event.id, event.scheduled_end))


def trim_to_gaps(
    candidate: Candidate,
    higher_spans: Sequence[Span],
    min_length: timedelta = MIN_SEGMENT,
) -> list[Candidate]:
    """Split ``candidate`` into the parts not covered by ``higher_spans``.

    An untouched candidate keeps its ``source_id``; pieces are suffixed with their
    gap ordinal and dropped when shorter than ``min_length``.
    """
    start, end = candidate.scheduled_start, candidate.scheduled_end
    if not overlaps_any(start, end, higher_spans):
        return [candidate]
    gaps = subtract_spans(start, end, higher_spans)
    return [
        candidate.piece(gap_start, gap_end, ordinal)
        for ordinal, (gap_start, gap_end) in enumerate(gaps)
        if gap_end - gap_start >= min_length
    ]


def _spans_above(claims: Iterable[Claim], tier: Tier, *, protected_only: bool = False) -> list[Span]:
    return [
        span
        for claim_tier, span in claims
        if outranks(claim_tier, tier) and (claim_tier is Tier.PROTECTED or not protected_only)
    ]


def reconcile_stream(
    existing_events: Sequence[PersistedEvent],
    candidates: Iterable[Candidate],
    *,
    previous_window_events: Sequence[PersistedEvent] = (),
    claims: list[Claim],
    window_start: datetime | None = None,
    config: ReconcileConfig | None = None,
) -> ReconciliationPlan:
    """Reconcile one signal stream. Spans it keeps are appended to ``claims``."""
    config = config or ReconcileConfig()
    plan = ReconciliationPlan()

    prepared: list[Candidate] = []
    for candidate in sorted(candidates, key=_candidate_order):
        tier = candidate_tier(candidate)
        start, end = candidate.scheduled_start, candidate.scheduled_end
        # Candidates touching a protected span stay whole and are vetoed below.
        if is_trimmable(candidate.kind) and not overlaps_any(
            start, end, _spans_above(claims, tier, protected_only=True)
        ):
            prepared.extend(trim_to_gaps(candidate, _spans_above(claims, tier), config.min_segment))
        else:
            prepared.append(candidate)

    match = match_candidates(existing_events, prepared)
    kept: list[Claim] = []

    for event, candidate in match.matched:
        tier = candidate_tier(candidate)
        start, end = candidate.scheduled_start, candidate.scheduled_end
        if overlaps_any(start, end, _spans_above(claims, tier, protected_only=True)):
            kept.append((tier, (event.scheduled_start, event.scheduled_end)))
            continue
        update = diff_update(event, candidate)
        if update is not None:
            plan.updates.append(update)
        kept.append((tier, (start, end)))

    matched_ids = {event.id for event, _ in match.matched}
    extended_ends: dict[str, datetime] = {}
    extension_sources: set[str] = set()
    for candidate in match.unmatched:
        tier = candidate_tier(candidate)
        start, end = candidate.scheduled_start, candidate.scheduled_end
        if overlaps_any(start, end, _spans_above(claims, tier, protected_only=True)):
            continue
        pool = extension_pool(
            previous_window_events,
            candidate,
            window_start=window_start,
            gap=config.extension_gap,
            current_ends=extended_ends,
            excluded_ids=matched_ids,
        )
        for event in pool:
            if event_tier(event) is Tier.PROTECTED:
                plan.protect(event.id)
        target = find_extendable_event(
            pool,
            candidate,
            window_start=window_start,
            gap=config.extension_gap,
            current_ends=extended_ends,
        )
        if target is not None:
            extension_sources.add(target.id)
            if end > extended_ends.get(target.id, target.scheduled_end):
                extended_ends[target.id] = end
            kept.append((tier, (start, end)))
            continue
        plan.inserts.append(candidate)
        kept.append((tier, (start, end)))

    plan.extensions = [EventExtension(event_id=event_id, new_end=new_end) for event_id, new_end in extended_ends.items()]
    plan.deletes = [
        EventDelete(event_id=event.id) for event in match.orphans if event.id not in extension_sources
    ]
    claims.extend(kept)
    return plan


def _route_existing(
    existing_events: Sequence[PersistedEvent],
    location_source_ids: set[str],
) -> dict[str, list[PersistedEvent]]:
    routed: dict[str, list[PersistedEvent]] = {STREAM_SCREEN_TIME: [], STREAM_LOCATION: []}
    for event in existing_events:
        if not event.is_derived:
            continue
        kind = event.kind
        if isinstance(kind, ScreenTimeKind):
            routed[STREAM_SCREEN_TIME].append(event)
        elif isinstance(kind, (PlaceKind, CommuteKind)):
            routed[STREAM_LOCATION].append(event)
        elif event.source_id and event.source_id in location_source_ids:
            routed[STREAM_LOCATION].append(event)
        else:
            routed[STREAM_SCREEN_TIME].append(event)
    return routed


def reconcile(
    *,
    existing_events: Iterable[PersistedEvent],
    screen_time_candidates: Iterable[Candidate] = (),
    location_candidates: Iterable[Candidate] = (),
    previous_window_events: Iterable[PersistedEvent] = (),
    window_start: datetime | None = None,
    config: ReconcileConfig | None = None,
) -> ReconciliationPlan:
    """Compute the storage operations that merge fresh candidates into a window.

    Pure and deterministic: the inputs are never mutated and identical inputs
    produce identical plans. Locked and user entries only ever show up in
    ``protected_ids``.
    """
    config = config or ReconcileConfig()
    existing = list(existing_events)
    previous = list(previous_window_events)
    screen_time = list(screen_time_candidates)
    location = list(location_candidates)

    classification = classify_events(existing)
    plan = ReconciliationPlan(protected_ids=list(classification.protected_ids))
    claims: list[Claim] = [(Tier.PROTECTED, span) for span in classification.protected_spans]

    location_source_ids = {candidate.source_id for candidate in location if candidate.source_id}
    routed = _route_existing(existing, location_source_ids)

    for stream, candidates in ((STREAM_SCREEN_TIME, screen_time), (STREAM_LOCATION, location)):
        plan.merge(
            reconcile_stream(
                routed[stream],
                candidates,
                previous_window_events=previous,
                claims=claims,
                window_start=window_start,
                config=config,
            )
        )
    return plan
