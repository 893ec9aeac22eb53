from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Union


USER_SOURCES = {"user", "actual_adjust"}
DERIVED_SOURCES = {"derived", "system"}
KIND_PLACE = "location_block"
KIND_COMMUTE = "commute"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).astimezone(timezone.utc).isoformat()


def _clean_text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


# Signal kinds. Resolved once from the stored metadata bag so that the
# reconciler only ever matches on these types.


@dataclass(frozen=True)
class ScreenTimeKind:
    app_id: str | None = None


@dataclass(frozen=True)
class PlaceKind:
    place_id: str | None = None


@dataclass(frozen=True)
class CommuteKind:
    pass


EventKind = Union[ScreenTimeKind, PlaceKind, CommuteKind]


@dataclass(frozen=True)
class UserSignal:
    pass


@dataclass(frozen=True)
class DerivedSignal:
    source_id: str | None = None
    kind: EventKind | None = None


@dataclass(frozen=True)
class UnknownSignal:
    source: str = ""


Signal = Union[UserSignal, DerivedSignal, UnknownSignal]


def kind_from_meta(meta: dict[str, Any] | None) -> EventKind | None:
    meta = meta or {}
    app_id = _clean_text(meta.get("app_id"))
    if app_id is not None:
        return ScreenTimeKind(app_id=app_id)
    kind = str(meta.get("kind") or "").strip()
    if kind == KIND_PLACE:
        return PlaceKind(place_id=_clean_text(meta.get("place_id")))
    if kind == KIND_COMMUTE:
        return CommuteKind()
    return None


def signal_from_meta(meta: dict[str, Any] | None) -> Signal:
    meta = meta or {}
    source = str(meta.get("source") or "").strip()
    if source in USER_SOURCES:
        return UserSignal()
    if source in DERIVED_SOURCES:
        return DerivedSignal(source_id=_clean_text(meta.get("source_id")), kind=kind_from_meta(meta))
    return UnknownSignal(source=source)


def kind_to_meta(kind: EventKind | None) -> dict[str, Any]:
    if isinstance(kind, ScreenTimeKind):
        return {"app_id": kind.app_id} if kind.app_id else {}
    if isinstance(kind, PlaceKind):
        return {"kind": KIND_PLACE, "place_id": kind.place_id}
    if isinstance(kind, CommuteKind):
        return {"kind": KIND_COMMUTE}
    return {}


def signal_to_meta(signal: Signal) -> dict[str, Any]:
    if isinstance(signal, UserSignal):
        return {"source": "user"}
    if isinstance(signal, DerivedSignal):
        meta: dict[str, Any] = {"source": "derived"}
        if signal.source_id:
            meta["source_id"] = signal.source_id
        meta.update(kind_to_meta(signal.kind))
        return meta
    return {"source": signal.source} if signal.source else {}


@dataclass(frozen=True)
class PersistedEvent:
    id: str
    user_id: str
    title: str
    scheduled_start: datetime
    scheduled_end: datetime
    signal: Signal = field(default_factory=UnknownSignal)
    locked_at: datetime | None = None

    @property
    def is_locked(self) -> bool:
        return self.locked_at is not None

    @property
    def is_user(self) -> bool:
        return isinstance(self.signal, UserSignal)

    @property
    def is_derived(self) -> bool:
        return isinstance(self.signal, DerivedSignal)

    @property
    def source_id(self) -> str | None:
        if isinstance(self.signal, DerivedSignal):
            return self.signal.source_id
        return None

    @property
    def kind(self) -> EventKind | None:
        if isinstance(self.signal, DerivedSignal):
            return self.signal.kind
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PersistedEvent":
        meta = data.get("meta")
        return cls(
            id=str(data.get("id", "")).strip(),
            user_id=str(data.get("user_id", "")).strip(),
            title=str(data.get("title", "") or ""),
            scheduled_start=parse_iso_datetime(data.get("scheduled_start")),
            scheduled_end=parse_iso_datetime(data.get("scheduled_end")),
            signal=signal_from_meta(meta if isinstance(meta, dict) else {}),
            locked_at=parse_iso_datetime(data.get("locked_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "scheduled_start": serialize_datetime(self.scheduled_start),
            "scheduled_end": serialize_datetime(self.scheduled_end),
            "meta": signal_to_meta(self.signal),
            "locked_at": serialize_datetime(self.locked_at),
        }


@dataclass(frozen=True)
class Candidate:
    source_id: str
    title: str
    scheduled_start: datetime
    scheduled_end: datetime
    kind: EventKind | None = None

    def piece(self, start: datetime, end: datetime, ordinal: int) -> "Candidate":
        return replace(
            self,
            source_id=f"{self.source_id}:{ordinal}",
            scheduled_start=start,
            scheduled_end=end,
        )

    def to_meta(self) -> dict[str, Any]:
        return signal_to_meta(DerivedSignal(source_id=self.source_id, kind=self.kind))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Candidate":
        meta = data.get("meta")
        meta = dict(meta) if isinstance(meta, dict) else {}
        for key in ("app_id", "kind", "place_id"):
            if key in data and key not in meta:
                meta[key] = data[key]
        return cls(
            source_id=str(data.get("source_id", "") or "").strip(),
            title=str(data.get("title", "") or ""),
            scheduled_start=parse_iso_datetime(data.get("scheduled_start")),
            scheduled_end=parse_iso_datetime(data.get("scheduled_end")),
            kind=kind_from_meta(meta),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "title": self.title,
            "scheduled_start": serialize_datetime(self.scheduled_start),
            "scheduled_end": serialize_datetime(self.scheduled_end),
            "meta": self.to_meta(),
        }


@dataclass(frozen=True)
class EventUpdate:
    event_id: str
    new_start: datetime | None = None
    new_end: datetime | None = None
    new_title: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"event_id": self.event_id}
        if self.new_start is not None:
            payload["new_start"] = serialize_datetime(self.new_start)
        if self.new_end is not None:
            payload["new_end"] = serialize_datetime(self.new_end)
        if self.new_title is not None:
            payload["new_title"] = self.new_title
        return payload


@dataclass(frozen=True)
class EventDelete:
    event_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"event_id": self.event_id}


@dataclass(frozen=True)
class EventExtension:
    event_id: str
    new_end: datetime

    def to_dict(self) -> dict[str, Any]:
        return {"event_id": self.event_id, "new_end": serialize_datetime(self.new_end)}


@dataclass
class ReconciliationPlan:
    inserts: list[Candidate] = field(default_factory=list)
    updates: list[EventUpdate] = field(default_factory=list)
    deletes: list[EventDelete] = field(default_factory=list)
    extensions: list[EventExtension] = field(default_factory=list)
    protected_ids: list[str] = field(default_factory=list)

    def protect(self, event_id: str) -> None:
        if event_id not in self.protected_ids:
            self.protected_ids.append(event_id)

    def merge(self, other: "ReconciliationPlan") -> "ReconciliationPlan":
        self.inserts.extend(other.inserts)
        self.updates.extend(other.updates)
        self.deletes.extend(other.deletes)
        self.extensions.extend(other.extensions)
        for event_id in other.protected_ids:
            self.protect(event_id)
        return self

    @property
    def is_empty(self) -> bool:
        return not (self.inserts or self.updates or self.deletes or self.extensions)

    def counts(self) -> dict[str, int]:
        return {
            "inserted": len(self.inserts),
            "updated": len(self.updates),
            "deleted": len(self.deletes),
            "extended": len(self.extensions),
            "protected": len(self.protected_ids),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "inserts": [item.to_dict() for item in self.inserts],
            "updates": [item.to_dict() for item in self.updates],
            "deletes": [item.to_dict() for item in self.deletes],
            "extensions": [item.to_dict() for item in self.extensions],
            "protected_ids": list(self.protected_ids),
        }


@dataclass
class ReconcileConfig:
    extension_gap_seconds: int = 60
    min_segment_seconds: int = 60

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ReconcileConfig":
        data = data or {}
        return cls(
            extension_gap_seconds=max(0, int(data.get("extension_gap_seconds", 60))),
            min_segment_seconds=max(0, int(data.get("min_segment_seconds", 60))),
        )

    @property
    def extension_gap(self) -> timedelta:
        return timedelta(seconds=self.extension_gap_seconds)

    @property
    def min_segment(self) -> timedelta:
        return timedelta(seconds=self.min_segment_seconds)


@dataclass
class IngestionConfig:
    window_minutes: int = 30
    lock_processed_windows: bool = True
    lock_events_after_hours: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "IngestionConfig":
        data = data or {}
        return cls(
            window_minutes=max(1, int(data.get("window_minutes", 30))),
            lock_processed_windows=bool(data.get("lock_processed_windows", True)),
            lock_events_after_hours=max(0, int(data.get("lock_events_after_hours", 0))),
        )


@dataclass
class AppConfig:
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            reconcile=ReconcileConfig.from_dict(data.get("reconcile")),
            ingestion=IngestionConfig.from_dict(data.get("ingestion")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ReconcileResult:
    status: str
    message: str
    duration_ms: int
    trigger: str
    user_id: str = ""
    window_start: datetime | None = None
    window_end: datetime | None = None
    counts: dict[str, int] = field(default_factory=dict)
    run_id: int | None = None
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "trigger": self.trigger,
            "user_id": self.user_id,
            "window_start": serialize_datetime(self.window_start),
            "window_end": serialize_datetime(self.window_end),
            "counts": dict(self.counts),
            "run_id": self.run_id,
            "run_at": serialize_datetime(self.run_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()


def ingestion_window(now: datetime, window_minutes: int) -> tuple[datetime, datetime]:
    """Return the most recently completed window aligned to ``window_minutes``."""
    now_utc = _ensure_tz(now).astimezone(timezone.utc)
    size = timedelta(minutes=max(1, window_minutes))
    midnight = now_utc.replace(hour=0, minute=0, second=0, microsecond=0)
    elapsed = now_utc - midnight
    current_start = midnight + size * (elapsed // size)
    return current_start - size, current_start


def previous_window(window_start: datetime, window_end: datetime) -> tuple[datetime, datetime]:
    size = window_end - window_start
    return window_start - size, window_start
