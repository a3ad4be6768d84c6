from datetime import date
from pathlib import Path
import sys
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from http_transport import SessionTransport, TransportResponse
from job_store import JobStore
from models import AvailabilityDate, BookingResult, FacilityLocation, JobConfig


def make_config(**overrides: Any) -> JobConfig:
    values: Dict[str, Any] = {
        "job_id": "job1",
        "name": "Test job",
        "email": "user@example.com",
        "password": "secret-pass",
        "schedule_id": "12345678",
        "country": "en-ca",
        "facility_ids": ["94", "95"],
        "start_date": "2026-11-01",
        "end_date": "2026-11-30",
        "check_interval_seconds": 30,
        "auto_book": True,
        "max_retries": 3,
        "request_timeout_seconds": 20,
        "max_relogin_attempts": 5,
    }
    values.update(overrides)
    return JobConfig.from_dict(values)


def _next(script: List[Any]) -> Any:
    """Pop scripted results; the last one repeats forever."""
    item = script.pop(0) if len(script) > 1 else script[0]
    if isinstance(item, BaseException):
        raise item
    return item


class InMemoryStore(JobStore):
    def __init__(self, *configs: JobConfig) -> None:
        self.configs = {cfg.job_id: cfg for cfg in configs}
        self.logs: List[tuple] = []
        self.updates: List[Dict[str, Any]] = []
        self.facilities: Dict[str, List[FacilityLocation]] = {}
        self.bookings: List[tuple] = []

    def load_job_config(self, job_id: str) -> JobConfig:
        return self.configs[job_id]

    def append_log(self, job_id: str, level: str, message: str) -> None:
        self.logs.append((job_id, level, message))

    def update_health_and_status(self, job_id: str, fields: Mapping[str, Any]) -> None:
        self.updates.append(dict(fields))

    def cache_facilities(self, job_id: str, facilities: Sequence[FacilityLocation]) -> None:
        self.facilities[job_id] = list(facilities)

    def read_cached_facilities(self, job_id: str) -> List[FacilityLocation]:
        return list(self.facilities.get(job_id, []))

    def record_booking(self, job_id: str, date: str, time: str, facility_label: str, timestamp: str) -> None:
        self.bookings.append((job_id, date, time, facility_label))

    @property
    def statuses(self) -> List[str]:
        return [update["status"] for update in self.updates if "status" in update]


class FakeClient:
    """Scripted stand-in for AisClient: every method pulls from a per-key script."""

    def __init__(
        self,
        *,
        days: Optional[Dict[str, List[Any]]] = None,
        times: Optional[List[Any]] = None,
        bookings: Optional[List[Any]] = None,
        logins: Optional[List[Any]] = None,
        facilities: Optional[List[Any]] = None,
    ) -> None:
        self.days = days or {}
        self.times = times or [[]]
        self.bookings = bookings or []
        self.logins = logins or [None]
        self.facilities = facilities or [[FacilityLocation("94", "Toronto"), FacilityLocation("95", "Vancouver")]]
        self.calls: List[tuple] = []
        self.closed = False
        self.last_booking_body = "<html>unclear</html>"

    def login(self) -> None:
        self.calls.append(("login",))
        _next(self.logins)

    def fetch_facilities(self) -> List[FacilityLocation]:
        self.calls.append(("fetch_facilities",))
        return _next(self.facilities)

    def fetch_open_days(self, facility_id: str) -> List[AvailabilityDate]:
        self.calls.append(("fetch_open_days", facility_id))
        return _next(self.days.setdefault(facility_id, [[]]))

    def fetch_open_times(self, facility_id: str, date: str) -> List[str]:
        self.calls.append(("fetch_open_times", facility_id, date))
        return _next(self.times)

    def submit_booking(self, facility_id: str, date: str, time: str, *, attempt: int = 1) -> BookingResult:
        self.calls.append(("submit_booking", facility_id, date, time, attempt))
        return _next(self.bookings)

    def close(self) -> None:
        self.closed = True

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)


class FakeTransport(SessionTransport):
    """Returns queued responses per (METHOD, url fragment) and records every request."""

    def __init__(self) -> None:
        self.routes: List[tuple] = []
        self.requests: List[Dict[str, Any]] = []
        self.reset_count = 0
        self.closed = False

    def add(self, method: str, fragment: str, *responses: TransportResponse) -> None:
        self.routes.append((method.upper(), fragment, list(responses)))

    def request(self, method, url, *, headers=None, data=None) -> TransportResponse:
        self.requests.append({"method": method.upper(), "url": url, "headers": dict(headers or {}), "data": data})
        for route_method, fragment, responses in self.routes:
            if route_method == method.upper() and fragment in url:
                return _next(responses)
        raise AssertionError(f"Unexpected request {method} {url}")

    def reset(self) -> None:
        self.reset_count += 1

    def close(self) -> None:
        self.closed = True


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> bool:
        self.calls.append(seconds)
        return True


def in_range(*dates: str) -> List[AvailabilityDate]:
    return [AvailabilityDate(value, True) for value in dates]


@pytest.fixture
def config() -> JobConfig:
    return make_config()


@pytest.fixture
def today() -> date:
    return date(2026, 10, 19)
