import json
import logging
import re
from datetime import date
from enum import Enum
from typing import Any, Iterable, List, Optional, Sequence

from bs4 import BeautifulSoup

from models import AvailabilityDate, BookingFailure, BookingResult, FacilityLocation
from scheduler_errors import ParseError, SessionExpiredError

SIGN_IN_PATH = "/users/sign_in"
SIGN_IN_MARKERS = ("sign_in", "Sign In")

INVALID_CREDENTIALS_MARKER = "invalid email or password"
RATE_LIMIT_MARKERS = ("try again later", "Too many")

BOOKING_CONFIRMED_MARKERS = (
    "successfully scheduled",
    "successfully booked",
    "your appointment has been scheduled",
)
BOOKING_SLOT_GONE_MARKERS = ("no longer available", "no appointment available")
BOOKING_SERVER_PROBLEM_MARKERS = ("could not be processed", "there was a problem")
BOOKING_FORM_MARKERS = ("appointments[consulate_appointment][facility_id]", "reschedule appointment")

_META_CSRF_PATTERNS = (
    re.compile(r'<meta[^>]+name=["\']csrf-token["\'][^>]+content=["\']([^"\']+)["\']', re.IGNORECASE),
    re.compile(r'<meta[^>]+content=["\']([^"\']+)["\'][^>]+name=["\']csrf-token["\']', re.IGNORECASE),
)

_REDIRECT_PATTERNS = (
    re.compile(r'window\.location(?:\.href)?\s*=\s*["\']([^"\']+)["\']'),
    re.compile(r'window\.location\.(?:replace|assign)\(\s*["\']([^"\']+)["\']\s*\)'),
    re.compile(r'Turbolinks\.visit\(\s*["\']([^"\']+)["\']'),
)


class PageSelectors:
    """CSS selectors tried in order; overridable from selectors.yml at startup."""

    CSRF_META = ['meta[name="csrf-token"]']
    CSRF_INPUT = ['input[name="authenticity_token"]']
    FACILITY_SELECT = [
        'select[name="appointments[consulate_appointment][facility_id]"]',
        "select#appointments_consulate_appointment_facility_id",
    ]


class LoginOutcome(str, Enum):
    REDIRECTED = "redirected"
    INVALID_CREDENTIALS = "invalid_credentials"
    RATE_LIMITED = "rate_limited"
    UNDETERMINED = "undetermined"


def has_sign_in_marker(body: str) -> bool:
    return any(marker in body for marker in SIGN_IN_MARKERS)


def is_sign_in_url(url: str) -> bool:
    return "sign_in" in (url or "")


def _select_first(soup: BeautifulSoup, selectors: Iterable[str]):
    for selector in selectors:
        element = soup.select_one(selector)
        if element is not None:
            return element
    return None


def extract_csrf_token(html: str) -> Optional[str]:
    if not html:
        return None
    for pattern in _META_CSRF_PATTERNS:
        match = pattern.search(html)
        if match:
            return match.group(1)

    soup = BeautifulSoup(html, "html.parser")
    meta = _select_first(soup, PageSelectors.CSRF_META)
    if meta is not None and meta.get("content"):
        return meta["content"]
    field = _select_first(soup, PageSelectors.CSRF_INPUT)
    if field is not None and field.get("value"):
        return field["value"]
    return None


def parse_facilities(html: str) -> List[FacilityLocation]:
    soup = BeautifulSoup(html or "", "html.parser")
    select = _select_first(soup, PageSelectors.FACILITY_SELECT)
    if select is None:
        return []
    facilities = []
    for option in select.find_all("option"):
        value = (option.get("value") or "").strip()
        if value:
            facilities.append(FacilityLocation(id=value, name=option.get_text(strip=True)))
    return facilities


def _decode_json(body: str) -> Any:
    try:
        return json.loads(body)
    except (TypeError, ValueError):
        return None


def _parse_failure(body: str, what: str) -> Exception:
    if has_sign_in_marker(body or ""):
        return SessionExpiredError()
    snippet = (body or "")[:120].replace("\n", " ")
    return ParseError(f"Unexpected {what} response: {snippet!r}")


def parse_open_days(body: str) -> List[AvailabilityDate]:
    payload = _decode_json(body)
    if not isinstance(payload, list):
        raise _parse_failure(body, "open days")

    days = []
    for item in payload:
        if not isinstance(item, dict) or not item.get("date"):
            logging.debug("Skipping malformed open-day entry: %r", item)
            continue
        days.append(AvailabilityDate(date=str(item["date"]), is_business_day=bool(item.get("business_day", False))))
    return days


def parse_open_times(body: str) -> List[str]:
    payload = _decode_json(body)
    if isinstance(payload, list):
        times = payload
    elif isinstance(payload, dict) and isinstance(payload.get("available_times"), list):
        times = payload["available_times"]
    else:
        raise _parse_failure(body, "open times")
    return [str(value) for value in times if value]


def extract_redirect_target(body: str) -> Optional[str]:
    if not body:
        return None
    payload = _decode_json(body)
    if isinstance(payload, dict) and isinstance(payload.get("redirect"), str):
        return payload["redirect"]
    for pattern in _REDIRECT_PATTERNS:
        match = pattern.search(body)
        if match:
            return match.group(1)
    return None


def classify_login_response(body: str) -> LoginOutcome:
    body = body or ""
    target = extract_redirect_target(body)
    if target and SIGN_IN_PATH not in target:
        return LoginOutcome.REDIRECTED
    if INVALID_CREDENTIALS_MARKER in body.lower():
        return LoginOutcome.INVALID_CREDENTIALS
    if any(marker in body for marker in RATE_LIMIT_MARKERS):
        return LoginOutcome.RATE_LIMITED
    return LoginOutcome.UNDETERMINED


def classify_booking_response(status: int, body: str, *, facility_id: str, date: str, time: str) -> BookingResult:
    """Map a booking POST response onto a BookingResult.

    Rules apply in a fixed order and the last one always matches, so every
    response lands somewhere. Only an explicit confirmation phrase counts as booked.
    """
    text = (body or "").lower()

    def failed(failure: BookingFailure, detail: Optional[str] = None) -> BookingResult:
        return BookingResult(
            success=False,
            verified=False,
            date=date,
            time=time,
            facility_id=facility_id,
            failure=failure,
            detail=detail,
        )

    if any(marker in text for marker in BOOKING_CONFIRMED_MARKERS):
        return BookingResult(success=True, verified=True, date=date, time=time, facility_id=facility_id)
    if any(marker in text for marker in BOOKING_SLOT_GONE_MARKERS):
        return failed(BookingFailure.SLOT_GONE)
    if any(marker in text for marker in BOOKING_SERVER_PROBLEM_MARKERS):
        return failed(BookingFailure.SERVER_PROBLEM)
    if "sign_in" in text:
        return failed(BookingFailure.SESSION_EXPIRED_DURING_BOOKING)
    if status == 422:
        return failed(BookingFailure.CSRF_EXPIRED)
    if status in (401, 403):
        return failed(BookingFailure.SESSION_EXPIRED, f"HTTP {status}")
    if not 200 <= status < 300:
        return failed(BookingFailure.HTTP_ERROR, f"HTTP {status}")
    if any(marker in text for marker in BOOKING_FORM_MARKERS):
        return failed(BookingFailure.FORM_NOT_PROCESSED)
    return failed(BookingFailure.AMBIGUOUS)


def filter_dates_in_range(dates: Iterable[AvailabilityDate], start: date, end: date) -> List[AvailabilityDate]:
    """Business days within [start, end], inclusive, sorted ascending and de-duplicated."""
    start_iso, end_iso = start.isoformat(), end.isoformat()
    matching = {
        item.date: item
        for item in dates
        if item.is_business_day and start_iso <= item.date <= end_iso
    }
    return [matching[key] for key in sorted(matching)]


def nearest_upcoming_date(dates: Sequence[AvailabilityDate], today: Optional[date] = None) -> Optional[str]:
    today_iso = (today or date.today()).isoformat()
    upcoming = sorted(item.date for item in dates if item.is_business_day and item.date >= today_iso)
    return upcoming[0] if upcoming else None
