from __future__ import annotations

import threading
import traceback
import weakref
from datetime import datetime, timedelta, timezone
from typing import Iterable

from dayline.config_manager import ConfigManager
from dayline.models import (
    Candidate,
    ReconcileResult,
    ReconciliationPlan,
    ingestion_window,
    previous_window,
    serialize_datetime,
)
from dayline.reconciler import reconcile
from dayline.state_store import AppliedPlan, StateStore


FORCED_TRIGGERS = {"manual-window"}


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


def resolve_window(
    window_start: datetime | None,
    window_end: datetime | None,
    *,
    window_minutes: int,
    now: datetime | None = None,
) -> tuple[datetime, datetime]:
    if (window_start is None) ^ (window_end is None):
        raise ValueError("window_start and window_end must both be provided")
    if window_start is not None and window_end is not None:
        start = window_start.astimezone(timezone.utc)
        end = window_end.astimezone(timezone.utc)
        if end <= start:
            raise ValueError("window_end must be later than window_start")
        return start, end
    return ingestion_window(now or datetime.now(timezone.utc), window_minutes)


class IngestionEngine:
    def __init__(self, config_manager: ConfigManager, state_store: StateStore) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        # Entries vanish once no pass holds the user's lock.
        self._user_locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._user_locks_guard = threading.Lock()

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._user_locks_guard:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._user_locks[user_id] = lock
            return lock

    def preview(
        self,
        user_id: str,
        *,
        screen_time_candidates: Iterable[Candidate] = (),
        location_candidates: Iterable[Candidate] = (),
        window_start: datetime | None = None,
        window_end: datetime | None = None,
    ) -> tuple[ReconciliationPlan, datetime, datetime]:
        """Compute the plan for a window against stored state without writing."""
        config = self.config_manager.load()
        start, end = resolve_window(window_start, window_end, window_minutes=config.ingestion.window_minutes)
        prev_start, prev_end = previous_window(start, end)
        plan = reconcile(
            existing_events=self.state_store.fetch_events_in_window(user_id, start, end),
            screen_time_candidates=screen_time_candidates,
            location_candidates=location_candidates,
            previous_window_events=self.state_store.fetch_events_in_window(user_id, prev_start, prev_end),
            window_start=start,
            config=config.reconcile,
        )
        return plan, start, end

    def _record_applied(
        self,
        *,
        user_id: str,
        run_id: int,
        trigger: str,
        plan: ReconciliationPlan,
        applied: AppliedPlan,
    ) -> None:
        for event_id, candidate in zip(applied.inserted_ids, plan.inserts):
            self.state_store.record_audit_event(
                user_id=user_id,
                event_id=event_id,
                action="insert",
                details={"trigger": trigger, "candidate": candidate.to_dict()},
                run_id=run_id,
            )
        updates = {update.event_id: update for update in plan.updates}
        for event_id in applied.updated_ids:
            self.state_store.record_audit_event(
                user_id=user_id,
                event_id=event_id,
                action="update",
                details={"trigger": trigger, "patch": updates[event_id].to_dict()},
                run_id=run_id,
            )
        extensions = {extension.event_id: extension for extension in plan.extensions}
        for event_id in applied.extended_ids:
            self.state_store.record_audit_event(
                user_id=user_id,
                event_id=event_id,
                action="extend",
                details={"trigger": trigger, "new_end": serialize_datetime(extensions[event_id].new_end)},
                run_id=run_id,
            )
        for event_id in applied.deleted_ids:
            self.state_store.record_audit_event(
                user_id=user_id,
                event_id=event_id,
                action="delete",
                details={"trigger": trigger},
                run_id=run_id,
            )
        for event_id in applied.skipped_ids:
            self.state_store.record_audit_event(
                user_id=user_id,
                event_id=event_id,
                action="skip_locked_event",
                details={"trigger": trigger, "reason": "locked_after_planning"},
                run_id=run_id,
            )
        for event_id in plan.protected_ids:
            self.state_store.record_audit_event(
                user_id=user_id,
                event_id=event_id,
                action="protect",
                details={"trigger": trigger},
                run_id=run_id,
            )

    def run_window(
        self,
        user_id: str,
        *,
        screen_time_candidates: Iterable[Candidate] = (),
        location_candidates: Iterable[Candidate] = (),
        window_start: datetime | None = None,
        window_end: datetime | None = None,
        trigger: str = "manual",
        now: datetime | None = None,
    ) -> ReconcileResult:
        started_at = datetime.now(timezone.utc)
        config = self.config_manager.load()
        start, end = resolve_window(
            window_start,
            window_end,
            window_minutes=config.ingestion.window_minutes,
            now=now,
        )
        screen_time = list(screen_time_candidates)
        location = list(location_candidates)

        with self._user_lock(user_id):
            run_id = self.state_store.start_run(
                user_id=user_id,
                trigger=trigger,
                window_start=start,
                window_end=end,
            )
            counts: dict[str, int] = {}
            try:
                if (
                    config.ingestion.lock_processed_windows
                    and trigger not in FORCED_TRIGGERS
                    and self.state_store.is_window_locked(user_id, start)
                ):
                    message = "Window already processed. Reconcile skipped."
                    self.state_store.record_audit_event(
                        user_id=user_id,
                        event_id="window",
                        action="skip_locked_window",
                        details={"trigger": trigger, "window_start": serialize_datetime(start)},
                        run_id=run_id,
                    )
                    duration_ms = _elapsed_ms(started_at)
                    self.state_store.finish_run(
                        run_id=run_id,
                        status="skipped",
                        message=message,
                        duration_ms=duration_ms,
                    )
                    return ReconcileResult(
                        status="skipped",
                        message=message,
                        duration_ms=duration_ms,
                        trigger=trigger,
                        user_id=user_id,
                        window_start=start,
                        window_end=end,
                        run_id=run_id,
                    )

                prev_start, prev_end = previous_window(start, end)
                existing = self.state_store.fetch_events_in_window(user_id, start, end)
                previous = self.state_store.fetch_events_in_window(user_id, prev_start, prev_end)
                plan = reconcile(
                    existing_events=existing,
                    screen_time_candidates=screen_time,
                    location_candidates=location,
                    previous_window_events=previous,
                    window_start=start,
                    config=config.reconcile,
                )
                applied = self.state_store.apply_plan(user_id, plan)
                self._record_applied(
                    user_id=user_id,
                    run_id=run_id,
                    trigger=trigger,
                    plan=plan,
                    applied=applied,
                )
                counts = applied.counts()
                counts["protected"] = len(plan.protected_ids)

                stats = {
                    "events_created": counts["inserted"],
                    "events_extended": counts["extended"],
                    "screen_time_sessions": len(screen_time),
                    "location_segments": len(location),
                }
                if config.ingestion.lock_processed_windows:
                    if self.state_store.lock_window(
                        user_id=user_id,
                        window_start=start,
                        window_end=end,
                        stats=stats,
                    ):
                        self.state_store.record_audit_event(
                            user_id=user_id,
                            event_id="window",
                            action="lock_window",
                            details={"trigger": trigger, "stats": stats},
                            run_id=run_id,
                        )
                if config.ingestion.lock_events_after_hours > 0:
                    cutoff = end - timedelta(hours=config.ingestion.lock_events_after_hours)
                    locked = self.state_store.lock_events_in_window(user_id, cutoff - (end - start), cutoff)
                    counts["locked"] = locked
                self.state_store.advance_checkpoint(
                    user_id=user_id,
                    window_start=start,
                    window_end=end,
                    stats=counts,
                )

                duration_ms = _elapsed_ms(started_at)
                message = (
                    f"Reconciled {len(screen_time)} screen-time and {len(location)} location candidates "
                    f"against {len(existing)} events."
                )
                self.state_store.finish_run(
                    run_id=run_id,
                    status="success",
                    message=message,
                    duration_ms=duration_ms,
                    counts=counts,
                )
                return ReconcileResult(
                    status="success",
                    message=f"{message} run_id={run_id}",
                    duration_ms=duration_ms,
                    trigger=trigger,
                    user_id=user_id,
                    window_start=start,
                    window_end=end,
                    counts=counts,
                    run_id=run_id,
                )
            except Exception as exc:
                duration_ms = _elapsed_ms(started_at)
                error_message = f"{type(exc).__name__}: {exc}"
                self.state_store.finish_run(
                    run_id=run_id,
                    status="error",
                    message=error_message,
                    duration_ms=duration_ms,
                    counts=counts,
                )
                self.state_store.record_audit_event(
                    user_id=user_id,
                    event_id="reconcile",
                    action="run_error",
                    details={
                        "trigger": trigger,
                        "error": error_message,
                        "traceback": traceback.format_exc(limit=5),
                    },
                    run_id=run_id,
                )
                return ReconcileResult(
                    status="error",
                    message=error_message,
                    duration_ms=duration_ms,
                    trigger=trigger,
                    user_id=user_id,
                    window_start=start,
                    window_end=end,
                    counts=counts,
                    run_id=run_id,
                )
