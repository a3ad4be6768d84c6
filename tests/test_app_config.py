from pathlib import Path
import sys
from typing import Dict, Optional

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app_config import AppConfig, load_job_file, parse_interval_schedule
from models import IntervalPhase
from page_parsers import PageSelectors
from selector_registry import apply_selector_overrides, load_selector_registry


def _write_job(path: Path, overrides: Optional[Dict[str, str]] = None, drop=()) -> Path:
    values = {
        "NAME": "Toronto watch",
        "EMAIL": "user@example.com",
        "PASSWORD": "secret-pass",
        "SCHEDULE_ID": "12345678",
        "COUNTRY": "en-ca",
        "FACILITY_IDS": "94, 95",
        "START_DATE": "2026-11-01",
        "END_DATE": "2026-12-31",
        "CHECK_INTERVAL_SECONDS": "45",
        "INTERVAL_SCHEDULE": "10:5, 60:55",
        "AUTO_BOOK": "False",
    }
    if overrides:
        values.update(overrides)
    for key in drop:
        values.pop(key, None)
    content = "[DEFAULT]\n" + "\n".join(f"{k} = {v}" for k, v in values.items()) + "\n"
    path.write_text(content, encoding="utf-8")
    return path


def test_job_file_load_smoke(tmp_path: Path) -> None:
    cfg = load_job_file(str(_write_job(tmp_path / "job.ini")), job_id="abc12345")
    assert cfg.job_id == "abc12345"
    assert cfg.name == "Toronto watch"
    assert cfg.facility_ids == ("94", "95")
    assert cfg.check_interval_seconds == 45
    assert cfg.interval_schedule == (IntervalPhase(10, 5), IntervalPhase(60, 55))
    assert cfg.auto_book is False
    assert cfg.max_relogin_attempts == 5


def test_job_file_gets_generated_id(tmp_path: Path) -> None:
    cfg = load_job_file(str(_write_job(tmp_path / "job.ini")))
    assert len(cfg.job_id) == 8


def test_job_file_validation_error_is_clear(tmp_path: Path) -> None:
    job_path = _write_job(tmp_path / "job.ini", {"START_DATE": "2027-01-10", "END_DATE": "2027-01-01"})
    with pytest.raises(ValueError, match="Invalid configuration"):
        load_job_file(str(job_path))


@pytest.mark.parametrize(
    "overrides",
    [
        {"START_DATE": "01-11-2026"},
        {"CHECK_INTERVAL_SECONDS": "0"},
        {"REQUEST_TIMEOUT_SECONDS": "soon"},
        {"INTERVAL_SCHEDULE": "10"},
        {"FACILITY_IDS": " , "},
    ],
)
def test_job_file_rejects_bad_values(tmp_path: Path, overrides: Dict[str, str]) -> None:
    with pytest.raises(ValueError, match="Invalid configuration"):
        load_job_file(str(_write_job(tmp_path / "job.ini", overrides)))


def test_job_file_missing_keys(tmp_path: Path) -> None:
    job_path = _write_job(tmp_path / "job.ini", drop=("PASSWORD", "SCHEDULE_ID"))
    with pytest.raises(KeyError, match="PASSWORD, SCHEDULE_ID"):
        load_job_file(str(job_path))


def test_job_file_missing(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_job_file(str(tmp_path / "absent.ini"))


def test_parse_interval_schedule() -> None:
    assert parse_interval_schedule("") == []
    assert parse_interval_schedule("30:2.5") == [IntervalPhase(30, 2.5)]


def test_app_config_defaults_without_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ("TRANSPORT", "PORT", "DATABASE_URL", "SMTP_USER", "SMTP_PASS", "NOTIFY_EMAIL"):
        monkeypatch.delenv(key, raising=False)
    cfg = AppConfig.load(str(tmp_path / "missing.ini"))
    assert cfg.transport == "http"
    assert cfg.port == 3456
    assert cfg.database_url == "sqlite:///data/scheduler.db"
    assert cfg.is_smtp_configured() is False


def test_app_config_environment_wins(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.ini"
    config_path.write_text("[DEFAULT]\nTRANSPORT = browser\nPORT = 8000\nSMTP_USER = me@example.com\n", encoding="utf-8")
    monkeypatch.setenv("PORT", "9000")
    monkeypatch.setenv("SMTP_PASS", "app-pass")
    monkeypatch.delenv("TRANSPORT", raising=False)
    monkeypatch.delenv("NOTIFY_EMAIL", raising=False)
    monkeypatch.delenv("SMTP_USER", raising=False)

    cfg = AppConfig.load(str(config_path))
    assert cfg.transport == "browser"
    assert cfg.port == 9000
    assert cfg.notify_email == "me@example.com"
    assert cfg.is_smtp_configured() is True


def test_app_config_rejects_unknown_transport(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRANSPORT", "carrier-pigeon")
    with pytest.raises(ValueError, match="Invalid configuration"):
        AppConfig.load(str(tmp_path / "missing.ini"))


def test_selector_overrides_go_first(tmp_path: Path) -> None:
    registry_path = tmp_path / "selectors.yml"
    registry_path.write_text(
        "FACILITY_SELECT:\n"
        "  - 'select#facility'\n"
        "  - by: CSS_SELECTOR\n"
        "    value: 'select.location'\n"
        "  - by: XPATH\n"
        "    value: '//select'\n"
        "UNKNOWN_KEY:\n"
        "  - 'div'\n",
        encoding="utf-8",
    )

    class Selectors:
        FACILITY_SELECT = list(PageSelectors.FACILITY_SELECT)

    assert load_selector_registry(str(registry_path))["FACILITY_SELECT"] == ["select#facility", "select.location"]

    apply_selector_overrides(Selectors, str(registry_path))
    assert Selectors.FACILITY_SELECT[:2] == ["select#facility", "select.location"]
    assert Selectors.FACILITY_SELECT[2:] == PageSelectors.FACILITY_SELECT
    assert not hasattr(Selectors, "UNKNOWN_KEY")

    apply_selector_overrides(Selectors, str(registry_path))
    assert len(Selectors.FACILITY_SELECT) == 2 + len(PageSelectors.FACILITY_SELECT)
