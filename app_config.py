import configparser
import os
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional

from models import (
    DEFAULT_CHECK_INTERVAL_SECONDS,
    DEFAULT_COUNTRY,
    DEFAULT_MAX_RELOGIN_ATTEMPTS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    IntervalPhase,
    JobConfig,
)

TRANSPORTS = ("http", "browser")


def _read_defaults(path: str) -> Dict[str, str]:
    parser = configparser.ConfigParser()
    parser.optionxform = str
    parser.read(path)
    return {k.upper(): v for k, v in parser["DEFAULT"].items()}


def _to_bool(value: str) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _to_int(key: str, value: str, *, minimum: Optional[int] = None) -> int:
    try:
        number = int(str(value).strip())
    except ValueError as exc:  # noqa: B904
        raise ValueError(f"Invalid configuration: {key} must be an integer") from exc
    if minimum is not None and number < minimum:
        raise ValueError(f"Invalid configuration: {key} must be at least {minimum}")
    return number


def _to_float(key: str, value: str) -> float:
    try:
        return float(str(value).strip())
    except ValueError as exc:  # noqa: B904
        raise ValueError(f"Invalid configuration: {key} must be a number") from exc


@dataclass
class AppConfig:
    database_url: str = "sqlite:///data/scheduler.db"
    transport: str = "http"
    headless: bool = True
    browser_pool_size: int = 2
    callback_url: str = ""
    callback_secret: str = ""
    host: str = "127.0.0.1"
    port: int = 3456
    log_retention_days: int = 7
    selectors_path: str = "selectors.yml"
    debug: bool = False
    json_logs: bool = False
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_pass: str = ""
    notify_email: str = ""

    @classmethod
    def load(cls, path: str = "config.ini") -> "AppConfig":
        """Read the [DEFAULT] section of ``path``; environment variables win. A missing file is fine."""
        raw_defaults = _read_defaults(path)

        def _get(key: str, fallback: str = "") -> str:
            return str(os.getenv(key, raw_defaults.get(key, fallback))).strip()

        transport = _get("TRANSPORT", "http").lower()
        if transport not in TRANSPORTS:
            raise ValueError(f"Invalid configuration: TRANSPORT must be one of {', '.join(TRANSPORTS)}")

        smtp_user = _get("SMTP_USER")
        return cls(
            database_url=_get("DATABASE_URL", cls.database_url),
            transport=transport,
            headless=_to_bool(_get("HEADLESS", "True")),
            browser_pool_size=_to_int("BROWSER_POOL_SIZE", _get("BROWSER_POOL_SIZE", "2"), minimum=1),
            callback_url=_get("CALLBACK_URL"),
            callback_secret=_get("CALLBACK_SECRET"),
            host=_get("HOST", cls.host),
            port=_to_int("PORT", _get("PORT", "3456"), minimum=1),
            log_retention_days=_to_int("LOG_RETENTION_DAYS", _get("LOG_RETENTION_DAYS", "7"), minimum=1),
            selectors_path=_get("SELECTORS_PATH", cls.selectors_path),
            debug=_to_bool(_get("DEBUG", "False")),
            json_logs=_to_bool(_get("JSON_LOGS", "False")),
            smtp_server=_get("SMTP_SERVER", cls.smtp_server),
            smtp_port=_to_int("SMTP_PORT", _get("SMTP_PORT", "587"), minimum=1),
            smtp_user=smtp_user,
            smtp_pass=_get("SMTP_PASS"),
            notify_email=_get("NOTIFY_EMAIL") or smtp_user,
        )

    def is_smtp_configured(self) -> bool:
        if not self.smtp_user or not self.smtp_pass or not self.notify_email:
            return False
        user = self.smtp_user.lower()
        password = self.smtp_pass.lower()
        if "your_email" in user or "your_app_password" in password:
            return False
        return True

    def masked_summary(self) -> str:
        return (
            f"transport={self.transport} | database={self.database_url} | "
            f"notify={JobConfig._mask(self.notify_email)} | callback={'set' if self.callback_secret else 'unset'}"
        )


def parse_interval_schedule(raw: str) -> List[IntervalPhase]:
    """Parse "10:5, 60:55" into phases of (seconds, duration minutes)."""
    phases = []
    for chunk in (raw or "").split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        seconds, sep, minutes = chunk.partition(":")
        if not sep:
            raise ValueError(f"Invalid configuration: INTERVAL_SCHEDULE entry '{chunk}' must look like seconds:minutes")
        try:
            phases.append(IntervalPhase(seconds=int(seconds), duration_minutes=float(minutes)))
        except ValueError as exc:  # noqa: B904
            raise ValueError(f"Invalid configuration: INTERVAL_SCHEDULE entry '{chunk}' is not numeric") from exc
    return phases


JOB_REQUIRED_KEYS = ["EMAIL", "PASSWORD", "SCHEDULE_ID", "FACILITY_IDS", "START_DATE", "END_DATE"]


def load_job_file(path: str, *, job_id: Optional[str] = None) -> JobConfig:
    parser = configparser.ConfigParser()
    parser.optionxform = str
    if not parser.read(path):
        raise FileNotFoundError(f"Unable to load job definition. Expected file at '{path}'.")

    raw = {k.upper(): v.strip() for k, v in parser["DEFAULT"].items()}
    missing = [key for key in JOB_REQUIRED_KEYS if not raw.get(key)]
    if missing:
        raise KeyError("Job definition missing required keys: " + ", ".join(sorted(missing)))

    facility_ids = [fid.strip() for fid in raw["FACILITY_IDS"].split(",") if fid.strip()]
    if not facility_ids:
        raise ValueError("Invalid configuration: FACILITY_IDS needs at least one facility id")

    return JobConfig.from_dict(
        {
            "job_id": job_id or uuid.uuid4().hex[:8],
            "name": raw.get("NAME") or None,
            "email": raw["EMAIL"],
            "password": raw["PASSWORD"],
            "schedule_id": raw["SCHEDULE_ID"],
            "country": raw.get("COUNTRY") or DEFAULT_COUNTRY,
            "facility_ids": facility_ids,
            "start_date": raw["START_DATE"],
            "end_date": raw["END_DATE"],
            "check_interval_seconds": _to_int(
                "CHECK_INTERVAL_SECONDS",
                raw.get("CHECK_INTERVAL_SECONDS") or str(DEFAULT_CHECK_INTERVAL_SECONDS),
                minimum=1,
            ),
            "interval_schedule": parse_interval_schedule(raw.get("INTERVAL_SCHEDULE", "")),
            "auto_book": _to_bool(raw.get("AUTO_BOOK", "True")),
            "max_retries": _to_int("MAX_RETRIES", raw.get("MAX_RETRIES") or str(DEFAULT_MAX_RETRIES), minimum=1),
            "request_timeout_seconds": _to_float(
                "REQUEST_TIMEOUT_SECONDS",
                raw.get("REQUEST_TIMEOUT_SECONDS") or str(DEFAULT_REQUEST_TIMEOUT_SECONDS),
            ),
            "max_relogin_attempts": _to_int(
                "MAX_RELOGIN_ATTEMPTS",
                raw.get("MAX_RELOGIN_ATTEMPTS") or str(DEFAULT_MAX_RELOGIN_ATTEMPTS),
                minimum=1,
            ),
        }
    )
