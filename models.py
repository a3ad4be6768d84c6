from dataclasses import asdict, dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

DEFAULT_COUNTRY = "en-ca"
DEFAULT_CHECK_INTERVAL_SECONDS = 30
DEFAULT_MAX_RETRIES = 3
DEFAULT_REQUEST_TIMEOUT_SECONDS = 20.0
DEFAULT_MAX_RELOGIN_ATTEMPTS = 5


class CycleOutcome(str, Enum):
    CONTINUE = "CONTINUE"
    STOPPED = "STOPPED"
    BOOKED = "BOOKED"
    LOGIN_FAILED = "LOGIN_FAILED"
    IP_BLOCKED = "IP_BLOCKED"


class JobState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"
    BOOKED = "booked"
    ERROR = "error"


class BookingFailure(str, Enum):
    SLOT_GONE = "Slot no longer available"
    SERVER_PROBLEM = "Server problem processing booking"
    SESSION_EXPIRED_DURING_BOOKING = "Session expired during booking"
    CSRF_EXPIRED = "CSRF token expired"
    SESSION_EXPIRED = "Session expired"
    HTTP_ERROR = "HTTP error"
    FORM_NOT_PROCESSED = "Still on appointment form (booking not processed)"
    AMBIGUOUS = "Ambiguous response"


@dataclass(frozen=True)
class IntervalPhase:
    seconds: int
    duration_minutes: float


@dataclass(frozen=True)
class FacilityLocation:
    id: str
    name: str


@dataclass(frozen=True)
class AvailabilityDate:
    date: str
    is_business_day: bool = True


@dataclass(frozen=True)
class BookingResult:
    success: bool
    verified: bool
    date: str
    time: str
    facility_id: str
    failure: Optional[BookingFailure] = None
    detail: Optional[str] = None

    @property
    def booked(self) -> bool:
        return self.success and self.verified

    @property
    def session_expired(self) -> bool:
        return self.failure in (
            BookingFailure.SESSION_EXPIRED,
            BookingFailure.SESSION_EXPIRED_DURING_BOOKING,
        )

    @property
    def failure_reason(self) -> Optional[str]:
        if self.failure is None:
            return None
        if self.detail:
            return f"{self.failure.value} ({self.detail})"
        return self.failure.value


@dataclass
class HealthStats:
    total_checks: int = 0
    successful_checks: int = 0
    failed_checks: int = 0
    consecutive_failures: int = 0
    relogin_count: int = 0
    last_error: Optional[str] = None
    last_check_at: Optional[str] = None
    started_at: Optional[str] = None

    def record_success(self) -> None:
        self.successful_checks += 1
        self.consecutive_failures = 0

    def record_failure(self, error: Optional[str]) -> None:
        self.failed_checks += 1
        self.consecutive_failures += 1
        self.last_error = error

    def as_fields(self) -> Dict[str, Any]:
        return asdict(self)


def _parse_iso_date(value: Any, key: str) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise ValueError(f"Invalid configuration: {key} must be formatted as YYYY-MM-DD") from exc


def _parse_phases(raw: Optional[Iterable[Any]]) -> Tuple[IntervalPhase, ...]:
    phases: List[IntervalPhase] = []
    for item in raw or ():
        if isinstance(item, IntervalPhase):
            phase = item
        elif isinstance(item, dict):
            phase = IntervalPhase(
                seconds=int(item["seconds"]),
                duration_minutes=float(item.get("duration_minutes", item.get("durationMinutes", 0))),
            )
        else:
            seconds, minutes = item
            phase = IntervalPhase(seconds=int(seconds), duration_minutes=float(minutes))
        if phase.seconds <= 0 or phase.duration_minutes <= 0:
            raise ValueError("Invalid configuration: interval schedule phases need positive seconds and minutes")
        phases.append(phase)
    return tuple(phases)


@dataclass(frozen=True)
class JobConfig:
    job_id: str
    email: str
    password: str
    schedule_id: str
    start_date: date
    end_date: date
    facility_ids: Tuple[str, ...] = ()
    country: str = DEFAULT_COUNTRY
    check_interval_seconds: int = DEFAULT_CHECK_INTERVAL_SECONDS
    interval_schedule: Tuple[IntervalPhase, ...] = field(default_factory=tuple)
    auto_book: bool = True
    max_retries: int = DEFAULT_MAX_RETRIES
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    max_relogin_attempts: int = DEFAULT_MAX_RELOGIN_ATTEMPTS
    name: Optional[str] = None

    def __post_init__(self) -> None:
        if self.start_date > self.end_date:
            raise ValueError("Invalid configuration: START_DATE must be earlier than or equal to END_DATE")
        for key in ("check_interval_seconds", "max_retries", "max_relogin_attempts"):
            if getattr(self, key) < 1:
                raise ValueError(f"Invalid configuration: {key} must be a positive integer")
        if self.request_timeout_seconds <= 0:
            raise ValueError("Invalid configuration: request_timeout_seconds must be positive")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobConfig":
        missing = [key for key in ("job_id", "email", "password", "schedule_id", "start_date", "end_date") if not data.get(key)]
        if missing:
            raise ValueError("Invalid configuration: missing " + ", ".join(missing))

        facility_ids = data.get("facility_ids") or ()
        if isinstance(facility_ids, str):
            facility_ids = facility_ids.split(",")

        return cls(
            job_id=str(data["job_id"]),
            email=str(data["email"]).strip(),
            password=str(data["password"]),
            schedule_id=str(data["schedule_id"]).strip(),
            start_date=_parse_iso_date(data["start_date"], "START_DATE"),
            end_date=_parse_iso_date(data["end_date"], "END_DATE"),
            facility_ids=tuple(str(fid).strip() for fid in facility_ids if str(fid).strip()),
            country=str(data.get("country") or DEFAULT_COUNTRY).strip(),
            check_interval_seconds=int(data.get("check_interval_seconds") or DEFAULT_CHECK_INTERVAL_SECONDS),
            interval_schedule=_parse_phases(data.get("interval_schedule")),
            auto_book=bool(data.get("auto_book", True)),
            max_retries=int(data.get("max_retries") or DEFAULT_MAX_RETRIES),
            request_timeout_seconds=float(data.get("request_timeout_seconds") or DEFAULT_REQUEST_TIMEOUT_SECONDS),
            max_relogin_attempts=int(data.get("max_relogin_attempts") or DEFAULT_MAX_RELOGIN_ATTEMPTS),
            name=data.get("name"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "name": self.name,
            "email": self.email,
            "password": self.password,
            "schedule_id": self.schedule_id,
            "country": self.country,
            "facility_ids": list(self.facility_ids),
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "check_interval_seconds": self.check_interval_seconds,
            "interval_schedule": [
                {"seconds": phase.seconds, "duration_minutes": phase.duration_minutes}
                for phase in self.interval_schedule
            ],
            "auto_book": self.auto_book,
            "max_retries": self.max_retries,
            "request_timeout_seconds": self.request_timeout_seconds,
            "max_relogin_attempts": self.max_relogin_attempts,
        }

    @staticmethod
    def _mask(value: str, *, keep: int = 2) -> str:
        if not value:
            return ""
        if len(value) <= keep * 2:
            return value[0] + "***" if len(value) > 1 else "*"
        return f"{value[:keep]}***{value[-keep:]}"

    def masked_summary(self) -> str:
        return (
            f"email={self._mask(self.email)} | schedule={self.schedule_id} | country={self.country} | "
            f"facilities={','.join(self.facility_ids) or 'none'} | "
            f"window={self.start_date.isoformat()}..{self.end_date.isoformat()} | auto_book={self.auto_book}"
        )
