from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from dayline.config_manager import ConfigManager
from dayline.ingestion import IngestionEngine
from dayline.models import Candidate, parse_iso_datetime
from dayline.state_store import StateStore


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class ReconcileRequest(BaseModel):
    window_start: str | None = None
    window_end: str | None = None
    screen_time: list[dict[str, Any]] = Field(default_factory=list)
    location: list[dict[str, Any]] = Field(default_factory=list)
    trigger: str = "api"


class UserEventRequest(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    scheduled_start: str
    scheduled_end: str
    locked: bool = False


class WindowLockRequest(BaseModel):
    start: str
    end: str


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.engine = IngestionEngine(self.config_manager, self.state_store)


def _parse_time(value: str | None, field_name: str) -> datetime | None:
    if value is None:
        return None
    try:
        return parse_iso_datetime(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"invalid {field_name}: {value!r}") from exc


def _parse_window(start_text: str | None, end_text: str | None) -> tuple[datetime | None, datetime | None]:
    start = _parse_time(start_text, "window_start")
    end = _parse_time(end_text, "window_end")
    if (start is None) ^ (end is None):
        raise HTTPException(status_code=400, detail="window_start and window_end must both be provided")
    if start is not None and end is not None and end <= start:
        raise HTTPException(status_code=400, detail="window_end must be later than window_start")
    return start, end


def _candidates_from_payload(items: list[dict[str, Any]], stream: str) -> list[Candidate]:
    candidates: list[Candidate] = []
    for index, item in enumerate(items):
        try:
            candidate = Candidate.from_dict(item)
        except (AttributeError, TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=f"invalid {stream} candidate #{index}: {exc}") from exc
        if candidate.scheduled_start is None or candidate.scheduled_end is None:
            raise HTTPException(status_code=400, detail=f"{stream} candidate #{index} needs start and end")
        candidates.append(candidate)
    return candidates


def create_app() -> FastAPI:
    config_path = os.getenv("DAYLINE_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("DAYLINE_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Dayline", version="0.1.0")
    app.state.context = context

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.load().to_dict()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        try:
            updated = app.state.context.config_manager.update(request.payload)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"message": "config updated", "config": updated.to_dict()}

    @app.post("/api/users/{user_id}/reconcile")
    def run_reconcile(user_id: str, request: ReconcileRequest) -> dict[str, Any]:
        start, end = _parse_window(request.window_start, request.window_end)
        result = app.state.context.engine.run_window(
            user_id,
            screen_time_candidates=_candidates_from_payload(request.screen_time, "screen_time"),
            location_candidates=_candidates_from_payload(request.location, "location"),
            window_start=start,
            window_end=end,
            trigger=request.trigger,
        )
        return {"message": "reconcile completed", "result": result.to_dict()}

    @app.post("/api/users/{user_id}/reconcile/preview")
    def preview_reconcile(user_id: str, request: ReconcileRequest) -> dict[str, Any]:
        start, end = _parse_window(request.window_start, request.window_end)
        plan, window_start, window_end = app.state.context.engine.preview(
            user_id,
            screen_time_candidates=_candidates_from_payload(request.screen_time, "screen_time"),
            location_candidates=_candidates_from_payload(request.location, "location"),
            window_start=start,
            window_end=end,
        )
        return {
            "window": {"start": window_start.isoformat(), "end": window_end.isoformat()},
            "plan": plan.to_dict(),
        }

    @app.get("/api/users/{user_id}/events")
    def list_events(user_id: str, start: str, end: str) -> dict[str, Any]:
        window_start, window_end = _parse_window(start, end)
        events = app.state.context.state_store.fetch_events_in_window(user_id, window_start, window_end)
        return {"events": [event.to_dict() for event in events]}

    @app.post("/api/users/{user_id}/events")
    def create_user_event(user_id: str, request: UserEventRequest) -> dict[str, Any]:
        start, end = _parse_window(request.scheduled_start, request.scheduled_end)
        event = app.state.context.state_store.insert_event(
            user_id=user_id,
            title=request.title.strip(),
            scheduled_start=start,
            scheduled_end=end,
            meta={"source": "user"},
            locked_at=datetime.now(timezone.utc) if request.locked else None,
        )
        return {"event": event.to_dict()}

    @app.post("/api/events/{event_id}/lock")
    def lock_event(event_id: str) -> dict[str, Any]:
        store = app.state.context.state_store
        event = store.get_event(event_id)
        if event is None:
            raise HTTPException(status_code=404, detail="event not found")
        changed = store.lock_event(event_id)
        return {"locked": True, "changed": changed, "event": store.get_event(event_id).to_dict()}

    @app.post("/api/users/{user_id}/windows/lock")
    def lock_window_events(user_id: str, request: WindowLockRequest) -> dict[str, Any]:
        start, end = _parse_window(request.start, request.end)
        locked_count = app.state.context.state_store.lock_events_in_window(user_id, start, end)
        return {"locked_count": locked_count}

    @app.get("/api/runs")
    def recent_runs(limit: int = 20, user_id: str | None = None) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_runs(limit=limit, user_id=user_id)}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    @app.get("/api/debug/runs/{run_id}")
    def debug_run(run_id: int, limit: int = 500) -> dict[str, Any]:
        run = app.state.context.state_store.get_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="run not found")
        events = app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)
        return {"run": run, "events": events}

    return app
