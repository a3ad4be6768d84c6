import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional
from urllib.parse import quote, urljoin

from http_transport import SessionTransport, TransportResponse
from models import AvailabilityDate, BookingFailure, BookingResult, FacilityLocation, JobConfig
from page_parsers import (
    LoginOutcome,
    RATE_LIMIT_MARKERS,
    classify_booking_response,
    classify_login_response,
    extract_csrf_token,
    extract_redirect_target,
    has_sign_in_marker,
    is_sign_in_url,
    parse_facilities,
    parse_open_days,
    parse_open_times,
)
from scheduler_errors import (
    CsrfExpiredError,
    HttpStatusError,
    InvalidCredentialsError,
    LoginError,
    LoginVerificationError,
    RateLimitedError,
    SessionExpiredError,
)

BASE_URL = "https://ais.usvisa-info.com"

JSON_ACCEPT = "application/json, text/javascript, */*; q=0.01"
HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
LOGIN_ACCEPT = "*/*;q=0.5, text/javascript, application/javascript, application/ecmascript, application/x-ecmascript"


@dataclass
class SessionState:
    csrf_token: Optional[str] = None
    authenticated_since: Optional[str] = None


class AisClient:
    """Talks to one AIS account through one SessionTransport.

    The transport keeps the cookies; this class keeps the anti-forgery token
    and knows the site's URLs, form fields and response shapes.
    """

    def __init__(self, cfg: JobConfig, transport: SessionTransport, *, base_url: str = BASE_URL) -> None:
        self.cfg = cfg
        self.transport = transport
        self.base_url = base_url.rstrip("/")
        self.session = SessionState()
        self.last_booking_body: Optional[str] = None

    @property
    def sign_in_url(self) -> str:
        return f"{self.base_url}/{self.cfg.country}/niv/users/sign_in"

    @property
    def group_url(self) -> str:
        return f"{self.base_url}/{self.cfg.country}/niv/groups/{self.cfg.schedule_id}"

    @property
    def appointment_url(self) -> str:
        return f"{self.base_url}/{self.cfg.country}/niv/schedule/{self.cfg.schedule_id}/appointment"

    def days_url(self, facility_id: str) -> str:
        return f"{self.appointment_url}/days/{facility_id}.json?appointments[expedite]=false"

    def times_url(self, facility_id: str, date: str) -> str:
        return f"{self.appointment_url}/times/{facility_id}.json?date={quote(date)}&appointments[expedite]=false"

    def _xhr_headers(self, *, accept: str = JSON_ACCEPT, referer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Accept": accept,
            "X-Requested-With": "XMLHttpRequest",
            "Referer": referer or self.appointment_url,
        }
        if self.session.csrf_token:
            headers["X-CSRF-Token"] = self.session.csrf_token
        return headers

    def _refresh_token(self, body: str) -> Optional[str]:
        token = extract_csrf_token(body)
        if token:
            self.session.csrf_token = token
        return token

    def reset_session(self) -> None:
        self.transport.reset()
        self.session = SessionState()

    def login(self) -> None:
        self.reset_session()
        logging.info("Logging in to AIS (%s)", self.cfg.masked_summary())

        page = self.transport.request("GET", self.sign_in_url, headers={"Accept": HTML_ACCEPT})
        if not self._refresh_token(page.body):
            if any(marker in page.body for marker in RATE_LIMIT_MARKERS):
                raise RateLimitedError("Login rate limited. Try again later.")
            raise LoginError("Could not extract CSRF token from login page")

        response = self.transport.request(
            "POST",
            self.sign_in_url,
            headers=self._xhr_headers(accept=LOGIN_ACCEPT, referer=self.sign_in_url),
            data={
                "user[email]": self.cfg.email,
                "user[password]": self.cfg.password,
                "policy_confirmed": "1",
                "commit": "Sign In",
            },
        )
        if response.status == 429:
            raise RateLimitedError("Login rate limited. Try again later.")

        outcome = classify_login_response(response.body)
        logging.debug("Login response classified as %s (HTTP %s)", outcome.value, response.status)
        if outcome is LoginOutcome.INVALID_CREDENTIALS:
            raise InvalidCredentialsError()
        if outcome is LoginOutcome.RATE_LIMITED:
            raise RateLimitedError("Login rate limited. Try again later.")

        if outcome is LoginOutcome.REDIRECTED:
            target = urljoin(self.sign_in_url, extract_redirect_target(response.body) or "")
            landing = self.transport.request("GET", target, headers={"Accept": HTML_ACCEPT, "Referer": self.sign_in_url})
        else:
            # 200 with neither a redirect nor an error: probe a page that requires a session.
            landing = self.transport.request("GET", self.group_url, headers={"Accept": HTML_ACCEPT})

        if is_sign_in_url(landing.url):
            raise LoginVerificationError()

        self._refresh_token(landing.body)
        self.session.authenticated_since = datetime.now(timezone.utc).isoformat()
        logging.info("Login successful")

    def fetch_facilities(self) -> List[FacilityLocation]:
        response = self.transport.request(
            "GET",
            self.appointment_url,
            headers={"Accept": HTML_ACCEPT, "Referer": self.group_url},
        )
        if is_sign_in_url(response.url):
            raise SessionExpiredError()

        self._refresh_token(response.body)
        facilities = parse_facilities(response.body)
        if not facilities and has_sign_in_marker(response.body):
            raise SessionExpiredError()
        return facilities

    @staticmethod
    def _raise_for_status(response: TransportResponse) -> None:
        if response.status in (401, 403):
            raise SessionExpiredError()
        if response.status == 429:
            raise RateLimitedError()
        if response.status == 422:
            raise CsrfExpiredError()
        if not response.ok:
            raise HttpStatusError(response.status)

    def fetch_open_days(self, facility_id: str) -> List[AvailabilityDate]:
        response = self.transport.request("GET", self.days_url(facility_id), headers=self._xhr_headers())
        self._raise_for_status(response)
        return parse_open_days(response.body)

    def fetch_open_times(self, facility_id: str, date: str) -> List[str]:
        response = self.transport.request("GET", self.times_url(facility_id, date), headers=self._xhr_headers())
        self._raise_for_status(response)
        return parse_open_times(response.body)

    def submit_booking(self, facility_id: str, date: str, time: str, *, attempt: int = 1) -> BookingResult:
        if attempt > 1 or not self.session.csrf_token:
            page = self.transport.request("GET", self.appointment_url, headers={"Accept": HTML_ACCEPT})
            if is_sign_in_url(page.url):
                return BookingResult(
                    success=False,
                    verified=False,
                    date=date,
                    time=time,
                    facility_id=facility_id,
                    failure=BookingFailure.SESSION_EXPIRED_DURING_BOOKING,
                )
            self._refresh_token(page.body)

        response = self.transport.request(
            "POST",
            self.appointment_url,
            headers={"Accept": HTML_ACCEPT, "Referer": self.appointment_url},
            data={
                "authenticity_token": self.session.csrf_token or "",
                "confirmed_limit_message": "1",
                "use_consulate_appointment_capacity": "true",
                "appointments[consulate_appointment][facility_id]": facility_id,
                "appointments[consulate_appointment][date]": date,
                "appointments[consulate_appointment][time]": time,
            },
        )
        result = classify_booking_response(
            response.status,
            response.body,
            facility_id=facility_id,
            date=date,
            time=time,
        )
        self.last_booking_body = response.body
        return result

    def close(self) -> None:
        self.transport.close()
