from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from ais_client import AisClient
from conftest import FakeTransport, make_config
from http_transport import TransportResponse
from models import AvailabilityDate, BookingFailure
from scheduler_errors import (
    CsrfExpiredError,
    HttpStatusError,
    InvalidCredentialsError,
    LoginError,
    LoginVerificationError,
    RateLimitedError,
    SessionExpiredError,
)

BASE = "https://ais.usvisa-info.com/en-ca/niv"
SIGN_IN_PAGE = '<html><head><meta name="csrf-token" content="login-token"></head><body>Sign In</body></html>'
GROUP_PAGE = '<html><head><meta name="csrf-token" content="group-token"></head><body>Groups</body></html>'
APPOINTMENT_PAGE = """
<html><head><meta name="csrf-token" content="appt-token"></head><body>
<select name="appointments[consulate_appointment][facility_id]">
  <option></option><option value="94">Toronto</option>
</select></body></html>
"""


def resp(body: str = "", status: int = 200, url: str = f"{BASE}/groups/12345678") -> TransportResponse:
    return TransportResponse(status=status, url=url, body=body)


def _login_routes(transport: FakeTransport, post_body: str, landing: TransportResponse) -> None:
    transport.add("GET", "/users/sign_in", resp(SIGN_IN_PAGE, url=f"{BASE}/users/sign_in"))
    transport.add("POST", "/users/sign_in", resp(post_body, url=f"{BASE}/users/sign_in"))
    transport.add("GET", "/groups/", landing)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def client(transport: FakeTransport) -> AisClient:
    return AisClient(make_config(), transport)


def test_login_follows_redirect_and_keeps_fresh_token(client: AisClient, transport: FakeTransport) -> None:
    _login_routes(transport, 'window.location = "/en-ca/niv/groups/12345678"', resp(GROUP_PAGE))

    client.login()

    assert transport.reset_count == 1
    post = transport.requests[1]
    assert post["method"] == "POST"
    assert post["data"]["user[email]"] == "user@example.com"
    assert post["data"]["policy_confirmed"] == "1"
    assert post["headers"]["X-CSRF-Token"] == "login-token"
    assert transport.requests[2]["url"] == f"{BASE}/groups/12345678"
    assert client.session.csrf_token == "group-token"
    assert client.session.authenticated_since is not None


def test_login_without_redirect_probes_group_page(client: AisClient, transport: FakeTransport) -> None:
    _login_routes(transport, "<html>ok</html>", resp(GROUP_PAGE))
    client.login()
    assert transport.requests[-1]["url"] == client.group_url


def test_login_invalid_credentials(client: AisClient, transport: FakeTransport) -> None:
    _login_routes(transport, "Invalid email or password.", resp(GROUP_PAGE))
    with pytest.raises(InvalidCredentialsError):
        client.login()
    assert len(transport.requests) == 2


def test_login_bounced_back_to_sign_in(client: AisClient, transport: FakeTransport) -> None:
    _login_routes(transport, "<html>ok</html>", resp(SIGN_IN_PAGE, url=f"{BASE}/users/sign_in"))
    with pytest.raises(LoginVerificationError):
        client.login()
    assert client.session.authenticated_since is None


def test_login_rate_limited_on_post(client: AisClient, transport: FakeTransport) -> None:
    transport.add("GET", "/users/sign_in", resp(SIGN_IN_PAGE, url=f"{BASE}/users/sign_in"))
    transport.add("POST", "/users/sign_in", resp("slow down", status=429))
    with pytest.raises(RateLimitedError):
        client.login()


def test_login_page_without_token(client: AisClient, transport: FakeTransport) -> None:
    transport.add("GET", "/users/sign_in", resp("<html>maintenance</html>"))
    with pytest.raises(LoginError):
        client.login()


def test_fetch_facilities_refreshes_token(client: AisClient, transport: FakeTransport) -> None:
    transport.add("GET", "/appointment", resp(APPOINTMENT_PAGE))
    facilities = client.fetch_facilities()
    assert [f.id for f in facilities] == ["94"]
    assert client.session.csrf_token == "appt-token"


def test_fetch_facilities_redirected_to_sign_in(client: AisClient, transport: FakeTransport) -> None:
    transport.add("GET", "/appointment", resp(SIGN_IN_PAGE, url=f"{BASE}/users/sign_in"))
    with pytest.raises(SessionExpiredError):
        client.fetch_facilities()


def test_fetch_open_days_sends_xhr_headers(client: AisClient, transport: FakeTransport) -> None:
    client.session.csrf_token = "appt-token"
    transport.add("GET", "/days/94.json", resp('[{"date": "2026-11-03", "business_day": true}]'))

    assert client.fetch_open_days("94") == [AvailabilityDate("2026-11-03", True)]
    headers = transport.requests[0]["headers"]
    assert headers["X-Requested-With"] == "XMLHttpRequest"
    assert headers["X-CSRF-Token"] == "appt-token"
    assert "appointments[expedite]=false" in transport.requests[0]["url"]


@pytest.mark.parametrize(
    ("status", "error"),
    [
        (401, SessionExpiredError),
        (403, SessionExpiredError),
        (429, RateLimitedError),
        (422, CsrfExpiredError),
        (500, HttpStatusError),
    ],
)
def test_fetch_open_days_status_mapping(client: AisClient, transport: FakeTransport, status: int, error) -> None:
    transport.add("GET", "/days/94.json", resp("{}", status=status))
    with pytest.raises(error):
        client.fetch_open_days("94")


def test_fetch_open_times(client: AisClient, transport: FakeTransport) -> None:
    transport.add("GET", "/times/95.json", resp('{"available_times": ["08:15"], "business_times": ["08:15"]}'))
    assert client.fetch_open_times("95", "2026-11-03") == ["08:15"]
    assert "date=2026-11-03" in transport.requests[0]["url"]


def test_submit_booking_first_attempt_uses_cached_token(client: AisClient, transport: FakeTransport) -> None:
    client.session.csrf_token = "appt-token"
    transport.add("POST", "/appointment", resp("You have successfully scheduled your appointment"))

    result = client.submit_booking("94", "2026-11-03", "09:00")

    assert result.booked
    assert len(transport.requests) == 1
    form = transport.requests[0]["data"]
    assert form["authenticity_token"] == "appt-token"
    assert form["appointments[consulate_appointment][date]"] == "2026-11-03"
    assert form["appointments[consulate_appointment][time]"] == "09:00"


def test_submit_booking_retry_refreshes_token(client: AisClient, transport: FakeTransport) -> None:
    client.session.csrf_token = "stale"
    transport.add("GET", "/appointment", resp(APPOINTMENT_PAGE))
    transport.add("POST", "/appointment", resp("<html>Thanks</html>"))

    result = client.submit_booking("94", "2026-11-03", "09:00", attempt=2)

    assert [r["method"] for r in transport.requests] == ["GET", "POST"]
    assert transport.requests[1]["data"]["authenticity_token"] == "appt-token"
    assert result.failure is BookingFailure.AMBIGUOUS
    assert client.last_booking_body == "<html>Thanks</html>"


def test_submit_booking_session_gone_before_post(client: AisClient, transport: FakeTransport) -> None:
    transport.add("GET", "/appointment", resp(SIGN_IN_PAGE, url=f"{BASE}/users/sign_in"))
    result = client.submit_booking("94", "2026-11-03", "09:00")
    assert result.session_expired
    assert [r["method"] for r in transport.requests] == ["GET"]
