import os
import platform
import random
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from selenium.webdriver.chrome.options import Options


@dataclass(frozen=True)
class BrowserProfile:
    """An internally consistent browser identity: UA, client hints, viewport and language agree."""

    user_agent: str
    sec_ch_ua: str
    platform: str
    viewport: Tuple[int, int]
    accept_language: str
    host_os: Optional[str] = None

    def headers(self) -> Dict[str, str]:
        return {
            "User-Agent": self.user_agent,
            "Accept-Language": self.accept_language,
            "sec-ch-ua": self.sec_ch_ua,
            "sec-ch-ua-mobile": "?0",
            "sec-ch-ua-platform": self.platform,
        }

    @property
    def navigator_platform(self) -> str:
        if "Windows" in self.platform:
            return "Win32"
        if "macOS" in self.platform:
            return "MacIntel"
        return "Linux x86_64"


_CHROME_133 = '"Chromium";v="133", "Google Chrome";v="133", "Not?A_Brand";v="99"'
_CHROME_132 = '"Chromium";v="132", "Google Chrome";v="132", "Not?A_Brand";v="99"'
_CHROME_131 = '"Chromium";v="131", "Google Chrome";v="131", "Not?A_Brand";v="99"'

BROWSER_PROFILES: List[BrowserProfile] = [
    BrowserProfile(
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/133.0.0.0 Safari/537.36",
        _CHROME_133, '"Windows"', (1920, 1080), "en-US,en;q=0.9",
    ),
    BrowserProfile(
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/132.0.0.0 Safari/537.36",
        _CHROME_132, '"Windows"', (1366, 768), "en-US,en;q=0.9",
    ),
    BrowserProfile(
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
        _CHROME_131, '"Windows"', (1440, 900), "en-US,en;q=0.9,es;q=0.8",
    ),
    BrowserProfile(
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/133.0.0.0 Safari/537.36",
        _CHROME_133, '"macOS"', (1440, 900), "en-US,en;q=0.9", host_os="Darwin",
    ),
    BrowserProfile(
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/132.0.0.0 Safari/537.36",
        _CHROME_132, '"macOS"', (1680, 1050), "en-CA,en;q=0.9,fr;q=0.8", host_os="Darwin",
    ),
    BrowserProfile(
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/133.0.0.0 Safari/537.36",
        _CHROME_133, '"Linux"', (1920, 1080), "en-US,en;q=0.9", host_os="Linux",
    ),
    BrowserProfile(
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
        _CHROME_131, '"Linux"', (1536, 864), "en-CA,en;q=0.9", host_os="Linux",
    ),
]


def pick_profile(*, host_os: Optional[str] = None, rng: Optional[random.Random] = None) -> BrowserProfile:
    host_os = host_os or platform.system()
    # Never claim an OS we are not running on when the profile is OS-specific.
    candidates = [p for p in BROWSER_PROFILES if p.host_os is None or p.host_os == host_os]
    profile = (rng or random).choice(candidates)

    user_agent = os.getenv("CHECKER_USER_AGENT")
    if user_agent:
        profile = BrowserProfile(
            user_agent,
            profile.sec_ch_ua,
            profile.platform,
            profile.viewport,
            profile.accept_language,
            profile.host_os,
        )
    return profile


def build_chrome_options(*, headless: bool, profile: Optional[BrowserProfile] = None) -> Options:
    profile = profile or pick_profile()
    options = Options()
    if headless:
        options.add_argument("--headless=new")

    options.add_argument("--no-sandbox")
    options.add_argument("--disable-setuid-sandbox")
    options.add_argument("--disable-dev-shm-usage")
    options.add_argument("--disable-gpu")
    options.add_argument("--disable-extensions")
    options.add_argument("--disable-blink-features=AutomationControlled")
    options.add_argument("--no-first-run")
    options.add_argument("--no-default-browser-check")
    options.add_argument("--disable-background-networking")
    options.add_argument("--disable-sync")
    options.add_argument("--mute-audio")
    options.add_argument("--log-level=3")
    width, height = profile.viewport
    options.add_argument(f"--window-size={width},{height}")
    options.add_argument(f"--lang={profile.accept_language.split(',')[0]}")

    minimal_browser = os.getenv("MINIMAL_BROWSER", "true").lower() == "true"
    prefs = {
        "profile.default_content_setting_values": {
            "images": 2 if minimal_browser else 0,
            "plugins": 2,
            "popups": 2,
            "geolocation": 2,
            "notifications": 2,
            "media_stream": 2,
        },
        "intl.accept_languages": profile.accept_language,
    }
    options.add_experimental_option("prefs", prefs)

    options.add_argument(f"--user-agent={profile.user_agent}")
    options.add_experimental_option("excludeSwitches", ["enable-automation"])
    options.add_experimental_option("useAutomationExtension", False)
    return options
