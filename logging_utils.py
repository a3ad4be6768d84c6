import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_DIR = Path("logs")
LOG_PATH = LOG_DIR / "visa_scheduler.log"

ARTIFACTS_DIR = Path("artifacts")
MAX_ARTIFACTS = 50

NOISY_LOGGERS = [
    "selenium",
    "selenium.webdriver.remote.remote_connection",
    "urllib3",
    "urllib3.connectionpool",
    "requests",
    "werkzeug",
    "sqlalchemy.engine",
    "WDM",
]


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        job_id = getattr(record, "job_id", None)
        if job_id:
            payload["job_id"] = job_id
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(*, debug: bool = False, json_logs: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO
    LOG_DIR.mkdir(exist_ok=True)
    stream_handler = logging.StreamHandler()
    file_handler = RotatingFileHandler(LOG_PATH, maxBytes=5 * 1024 * 1024, backupCount=5)
    handlers = [file_handler, stream_handler]

    if json_logs:
        formatter = JsonLogFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")

    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    for noisy_logger in NOISY_LOGGERS:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


class JobLogger:
    """Per-job log lines: always to the Python log, and to the job's stored log unless debug."""

    LEVELS = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "success": logging.INFO,
        "warn": logging.WARNING,
        "error": logging.ERROR,
    }

    def __init__(self, job_id: str, store=None) -> None:
        self.job_id = job_id
        self.store = store

    def log(self, level: str, message: str) -> None:
        py_level = self.LEVELS.get(level, logging.INFO)
        logging.log(py_level, "[Job:%s] %s", self.job_id, message, extra={"job_id": self.job_id})
        if level == "debug" or self.store is None:
            return
        try:
            self.store.append_log(self.job_id, level, message)
        except Exception as exc:  # noqa: BLE001
            logging.debug("Failed to persist job log line for %s: %s", self.job_id, exc)

    def debug(self, message: str) -> None:
        self.log("debug", message)

    def info(self, message: str) -> None:
        self.log("info", message)

    def success(self, message: str) -> None:
        self.log("success", message)

    def warn(self, message: str) -> None:
        self.log("warn", message)

    def error(self, message: str) -> None:
        self.log("error", message)


def _cleanup_artifacts(directory: Path, keep: int = MAX_ARTIFACTS) -> None:
    try:
        files = sorted(directory.glob("*.html"), key=lambda path: path.stat().st_mtime)
        for file_path in files[:-keep] if len(files) > keep else []:
            try:
                file_path.unlink()
            except OSError as exc:
                logging.debug("Failed to remove old artifact %s: %s", file_path, exc)
    except OSError as exc:
        logging.debug("Artifact cleanup failed: %s", exc)


def capture_artifact(label: str, body: str, *, directory: Optional[Path] = None) -> Optional[Path]:
    directory = directory or ARTIFACTS_DIR
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S-%f")
    safe_label = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in label)
    path = directory / f"{timestamp}_{safe_label}.html"

    try:
        directory.mkdir(parents=True, exist_ok=True)
        path.write_text(body or "", encoding="utf-8")
    except Exception as exc:  # noqa: BLE001
        logging.debug("Failed to persist response artifact: %s", exc)
        return None

    _cleanup_artifacts(directory)
    return path
