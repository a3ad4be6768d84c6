import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Union

import requests

from browser_session import BrowserProfile, pick_profile
from retry_utils import RetryPolicy

RequestBody = Union[None, str, Mapping[str, Any]]


@dataclass(frozen=True)
class TransportResponse:
    status: int
    url: str
    body: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class SessionTransport(ABC):
    """One authenticated browser-like session: cookies persist across requests until reset()."""

    @abstractmethod
    def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        data: RequestBody = None,
    ) -> TransportResponse:
        raise NotImplementedError

    @abstractmethod
    def reset(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class HttpTransport(SessionTransport):
    def __init__(
        self,
        *,
        timeout_seconds: float = 20.0,
        retry_policy: Optional[RetryPolicy] = None,
        profile: Optional[BrowserProfile] = None,
        sleep: Callable[[float], Optional[bool]] = time.sleep,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.retry_policy = retry_policy or RetryPolicy()
        self.profile = profile or pick_profile()
        self._sleep = sleep
        self._session_factory = session_factory
        self.session = self._new_session()

    def _new_session(self) -> requests.Session:
        session = self._session_factory()
        session.headers.update(self.profile.headers())
        return session

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        data: RequestBody = None,
    ) -> TransportResponse:
        method = method.upper()

        def send() -> TransportResponse:
            response = self.session.request(
                method,
                url,
                headers=dict(headers or {}),
                data=data,
                timeout=self.timeout_seconds,
                allow_redirects=True,
            )
            return TransportResponse(status=response.status_code, url=response.url, body=response.text)

        return self.retry_policy.call(send, description=f"{method} {url}", sleep=self._sleep)

    def reset(self) -> None:
        self.close()
        self.session = self._new_session()
        logging.debug("HTTP session reset; cookie jar cleared")

    def close(self) -> None:
        try:
            self.session.close()
        except Exception:  # noqa: BLE001
            logging.debug("Session close raised; ignoring to continue cleanup.")

