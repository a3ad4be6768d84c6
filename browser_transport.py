import logging
import queue
import threading
import time
from typing import Callable, List, Mapping, Optional
from urllib.parse import urlencode

from selenium import webdriver
from selenium.common.exceptions import WebDriverException
from selenium.webdriver.chrome.service import Service
from webdriver_manager.chrome import ChromeDriverManager

from browser_session import BrowserProfile, build_chrome_options, pick_profile
from http_transport import RequestBody, SessionTransport, TransportResponse
from retry_utils import RetryPolicy, is_socket_error
from scheduler_errors import TransportError

# Headers the browser owns; fetch() refuses to set them from script.
FORBIDDEN_FETCH_HEADERS = {"user-agent", "cookie", "origin", "host", "content-length", "referer"}

FETCH_SCRIPT = """
const [url, method, headers, body, referrer, timeoutMs, done] = arguments;
const controller = new AbortController();
const timer = setTimeout(() => controller.abort(), timeoutMs);
const options = {method: method, headers: headers, credentials: 'include', signal: controller.signal};
if (body !== null) options.body = body;
if (referrer) options.referrer = referrer;
fetch(url, options)
  .then(async (resp) => {
    const text = await resp.text();
    clearTimeout(timer);
    done({status: resp.status, url: resp.url, text: text});
  })
  .catch((err) => {
    clearTimeout(timer);
    done({error: String((err && err.message) || err || 'fetch failed')});
  });
"""

STEALTH_SCRIPT = (
    "Object.defineProperty(navigator, 'webdriver', {get: () => undefined});"
    "Object.defineProperty(navigator, 'platform', {get: () => '%s'});"
)


class BrowserPool:
    """Chrome drivers shared by jobs through explicit checkout.

    A checked-out driver belongs to exactly one job until it is released, and
    release wipes cookies and storage so no session state leaks to the next owner.
    """

    def __init__(
        self,
        *,
        size: int = 2,
        headless: bool = True,
        driver_factory: Optional[Callable[[BrowserProfile], webdriver.Chrome]] = None,
    ) -> None:
        self.size = max(1, size)
        self.headless = headless
        self._driver_factory = driver_factory or self._launch_driver
        self._driver_path: Optional[str] = None
        self._idle: "queue.Queue[webdriver.Chrome]" = queue.Queue()
        self._lock = threading.Lock()
        self._drivers: List[webdriver.Chrome] = []
        self._launching = 0

    def _launch_driver(self, profile: BrowserProfile) -> webdriver.Chrome:
        if self._driver_path is None:
            self._driver_path = ChromeDriverManager().install()
        options = build_chrome_options(headless=self.headless, profile=profile)
        try:
            driver = webdriver.Chrome(service=Service(self._driver_path), options=options)
        except WebDriverException as exc:
            logging.error("Failed to start Chrome driver: %s", exc)
            raise
        driver.set_page_load_timeout(90)
        driver.implicitly_wait(0)
        logging.info("Chrome driver initialized (headless=%s)", self.headless)
        return driver

    def checkout(self, profile: BrowserProfile, *, timeout: Optional[float] = 120) -> webdriver.Chrome:
        driver: Optional[webdriver.Chrome] = None
        try:
            driver = self._idle.get_nowait()
        except queue.Empty:
            with self._lock:
                can_launch = len(self._drivers) + self._launching < self.size
                if can_launch:
                    self._launching += 1
            if can_launch:
                try:
                    driver = self._driver_factory(profile)
                finally:
                    with self._lock:
                        self._launching -= 1
                        if driver is not None:
                            self._drivers.append(driver)
            else:
                try:
                    driver = self._idle.get(timeout=timeout)
                except queue.Empty as exc:
                    raise TransportError(
                        f"No browser available in pool of {self.size} after {timeout}s"
                    ) from exc

        self._apply_profile(driver, profile)
        return driver

    def _apply_profile(self, driver: webdriver.Chrome, profile: BrowserProfile) -> None:
        try:
            driver.execute_cdp_cmd(
                "Network.setUserAgentOverride",
                {
                    "userAgent": profile.user_agent,
                    "acceptLanguage": profile.accept_language,
                    "platform": profile.navigator_platform,
                },
            )
            driver.execute_cdp_cmd(
                "Page.addScriptToEvaluateOnNewDocument",
                {"source": STEALTH_SCRIPT % profile.navigator_platform},
            )
        except Exception:  # noqa: BLE001
            logging.debug("Unable to apply browser profile via CDP; continuing anyway.")

    def release(self, driver: webdriver.Chrome) -> None:
        try:
            driver.delete_all_cookies()
            driver.execute_script("try { localStorage.clear(); sessionStorage.clear(); } catch (e) {}")
            driver.get("about:blank")
        except WebDriverException:
            logging.debug("Driver unusable on release; discarding it.")
            self._discard(driver)
            return
        self._idle.put(driver)

    def _discard(self, driver: webdriver.Chrome) -> None:
        with self._lock:
            if driver in self._drivers:
                self._drivers.remove(driver)
        try:
            driver.quit()
        except Exception:  # noqa: BLE001
            logging.debug("Driver quit raised; ignoring to continue cleanup.")

    def close_all(self) -> None:
        with self._lock:
            drivers = list(self._drivers)
            self._drivers.clear()
        for driver in drivers:
            try:
                driver.quit()
            except Exception:  # noqa: BLE001
                logging.debug("Driver quit raised; ignoring to continue cleanup.")


class BrowserTransport(SessionTransport):
    """Runs every request as fetch() inside a pooled Chrome page."""

    def __init__(
        self,
        pool: BrowserPool,
        *,
        origin_url: str,
        timeout_seconds: float = 20.0,
        retry_policy: Optional[RetryPolicy] = None,
        profile: Optional[BrowserProfile] = None,
        sleep: Callable[[float], Optional[bool]] = time.sleep,
    ) -> None:
        self.pool = pool
        self.origin_url = origin_url
        self.timeout_seconds = timeout_seconds
        self.retry_policy = retry_policy or RetryPolicy()
        self.profile = profile or pick_profile()
        self._sleep = sleep
        self.driver: Optional[webdriver.Chrome] = None

    def _ensure_driver(self) -> webdriver.Chrome:
        if self.driver is not None:
            return self.driver
        driver = self.pool.checkout(self.profile)
        try:
            driver.set_script_timeout(self.timeout_seconds + 10)
            # fetch() needs a same-origin document so the site's cookies ride along.
            driver.get(self.origin_url)
        except WebDriverException:
            self.pool.release(driver)
            raise
        self.driver = driver
        return driver

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        data: RequestBody = None,
    ) -> TransportResponse:
        method = method.upper()
        fetch_headers = {}
        referrer = None
        for name, value in (headers or {}).items():
            if name.lower() == "referer":
                referrer = value
            elif name.lower() not in FORBIDDEN_FETCH_HEADERS:
                fetch_headers[name] = value

        body: Optional[str]
        if data is None or isinstance(data, str):
            body = data
        else:
            body = urlencode(list(data.items()))
            fetch_headers.setdefault("Content-Type", "application/x-www-form-urlencoded; charset=UTF-8")

        def send() -> TransportResponse:
            driver = self._ensure_driver()
            result = driver.execute_async_script(
                FETCH_SCRIPT,
                url,
                method,
                fetch_headers,
                body,
                referrer,
                int(self.timeout_seconds * 1000),
            )
            if not isinstance(result, dict) or result.get("error"):
                message = result.get("error") if isinstance(result, dict) else "fetch failed"
                raise TransportError(str(message), socket_error=is_socket_error(Exception(message)))
            return TransportResponse(
                status=int(result.get("status", 0)),
                url=str(result.get("url") or url),
                body=str(result.get("text") or ""),
            )

        return self.retry_policy.call(send, description=f"{method} {url}", sleep=self._sleep)

    def reset(self) -> None:
        self.close()
        logging.debug("Browser session reset; driver returned to pool")

    def close(self) -> None:
        if self.driver is None:
            return
        driver, self.driver = self.driver, None
        self.pool.release(driver)
