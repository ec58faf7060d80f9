from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any
from urllib.parse import urlsplit, urlunsplit


DECODE_POLICIES = ("abort", "skip")
DEFAULT_SUMMARY = "\U0001F382 ~display-name~"
DEFAULT_DESCRIPTION = "Birthday: ~birthday~"
DEFAULT_DATE_FORMAT = "%Y-%m-%d"
DEFAULT_CATEGORY = "Birthday"
DEFAULT_PRODUCT_ID = "-//birthdaycal//Birthday Calendar Sync//EN"


class BirthdaySyncError(Exception):
    pass


class ConnectivityError(BirthdaySyncError):
    pass


class ContactSourceError(BirthdaySyncError):
    pass


class EventDecodeError(BirthdaySyncError):
    pass


class DAVStoreError(BirthdaySyncError):
    def __init__(self, method: str, url: str, status: int | None = None, reason: str = "") -> None:
        self.method = method
        self.url = url
        self.status = status
        detail = f"{method} {url} failed"
        if status is not None:
            detail += f" with status {status}"
        if reason:
            detail += f": {reason}"
        super().__init__(detail)


class PlanInvariantError(BirthdaySyncError):
    pass


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _strip_url(value: Any) -> str:
    return str(value or "").strip()


@dataclass
class DAVConfig:
    user: str = ""
    password: str = ""
    cal_url: str = ""
    card_url: str = ""
    timeout_seconds: int = 30
    max_retries: int = 5
    retry_delay_seconds: int = 10

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "DAVConfig":
        data = data or {}
        return cls(
            user=str(data.get("user", "")).strip(),
            password=str(data.get("password", "")).strip(),
            cal_url=_strip_url(data.get("cal_url", "")),
            card_url=_strip_url(data.get("card_url", "")),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            max_retries=max(0, int(data.get("max_retries", 5))),
            retry_delay_seconds=max(0, int(data.get("retry_delay_seconds", 10))),
        )

    def is_complete(self) -> bool:
        return bool(self.cal_url and self.card_url and self.user)

    @property
    def base_url(self) -> str:
        source = self.card_url or self.cal_url
        if not source:
            return ""
        parts = urlsplit(source)
        return urlunsplit((parts.scheme, parts.netloc, "", "", ""))

    @property
    def calendar_path(self) -> str:
        return self.cal_url.rstrip("/").rsplit("/", 1)[-1]


@dataclass
class EventConfig:
    summary: str = DEFAULT_SUMMARY
    description: str = DEFAULT_DESCRIPTION
    date_format: str = DEFAULT_DATE_FORMAT
    alarm_duration: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "EventConfig":
        data = data or {}
        alarm_duration = str(data.get("alarm_duration") or "").strip()
        if alarm_duration:
            # Imported lazily: codec depends on this module.
            from birthdaycal.codec import parse_duration

            parse_duration(alarm_duration)
        return cls(
            summary=str(data.get("summary", DEFAULT_SUMMARY)),
            description=str(data.get("description", DEFAULT_DESCRIPTION)),
            date_format=str(data.get("date_format", DEFAULT_DATE_FORMAT)).strip() or DEFAULT_DATE_FORMAT,
            alarm_duration=alarm_duration,
        )


@dataclass
class SyncConfig:
    category: str = DEFAULT_CATEGORY
    product_id: str = DEFAULT_PRODUCT_ID
    interval_seconds: int = 86400
    run_on_start: bool = True
    decode_policy: str = "abort"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        policy = str(data.get("decode_policy", "abort")).strip().lower()
        if policy not in DECODE_POLICIES:
            policy = "abort"
        return cls(
            category=str(data.get("category", DEFAULT_CATEGORY)).strip() or DEFAULT_CATEGORY,
            product_id=str(data.get("product_id", DEFAULT_PRODUCT_ID)).strip() or DEFAULT_PRODUCT_ID,
            interval_seconds=max(60, int(data.get("interval_seconds", 86400))),
            run_on_start=bool(data.get("run_on_start", True)),
            decode_policy=policy,
        )


@dataclass
class AppConfig:
    dav: DAVConfig = field(default_factory=DAVConfig)
    event: EventConfig = field(default_factory=EventConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            dav=DAVConfig.from_dict(data.get("dav")),
            event=EventConfig.from_dict(data.get("event")),
            sync=SyncConfig.from_dict(data.get("sync")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass(frozen=True)
class Contact:
    first_name: str
    last_name: str
    display_name: str
    birthday: date

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part) or self.display_name


@dataclass(frozen=True)
class ManagedEvent:
    identifier: str
    birthday: date
    location: str


@dataclass
class SnapshotResult:
    events: tuple[ManagedEvent, ...] = ()
    skipped: list[tuple[str, str]] = field(default_factory=list)
    duplicates: list[ManagedEvent] = field(default_factory=list)


@dataclass(frozen=True)
class ReconciliationPlan:
    to_delete: frozenset[str] = frozenset()
    to_replace: frozenset[str] = frozenset()
    to_create: frozenset[str] = frozenset()
    contacts: dict[str, Contact] = field(default_factory=dict, compare=False)
    existing: dict[str, ManagedEvent] = field(default_factory=dict, compare=False)

    @property
    def is_empty(self) -> bool:
        return not (self.to_delete or self.to_replace or self.to_create)

    def check(self) -> None:
        overlaps = (
            (self.to_delete & self.to_replace)
            | (self.to_delete & self.to_create)
            | (self.to_replace & self.to_create)
        )
        if overlaps:
            raise PlanInvariantError(f"Plan sets overlap: {sorted(overlaps)}")

    def summary(self) -> str:
        return (
            f"delete={len(self.to_delete)} replace={len(self.to_replace)} "
            f"create={len(self.to_create)}"
        )


@dataclass
class ApplyFailure:
    identifier: str
    operation: str
    error: str


@dataclass
class ApplyReport:
    created: list[str] = field(default_factory=list)
    replaced: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    duplicates_removed: list[str] = field(default_factory=list)
    # Writes withheld because the target href holds an entry that could not be decoded.
    held: list[str] = field(default_factory=list)
    failures: list[ApplyFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def record_failure(self, identifier: str, operation: str, exc: Exception) -> None:
        self.failures.append(
            ApplyFailure(identifier=identifier, operation=operation, error=f"{type(exc).__name__}: {exc}")
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    trigger: str
    created: int = 0
    replaced: int = 0
    deleted: int = 0
    duplicates_removed: int = 0
    held: int = 0
    failed: int = 0
    stage: str = ""
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "trigger": self.trigger,
            "created": self.created,
            "replaced": self.replaced,
            "deleted": self.deleted,
            "duplicates_removed": self.duplicates_removed,
            "held": self.held,
            "failed": self.failed,
            "stage": self.stage,
            "run_at": serialize_datetime(self.run_at),
        }
