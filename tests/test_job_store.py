from datetime import timedelta
from pathlib import Path
import sys

import pytest
import requests

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from conftest import make_config
from job_store import RemoteJobStore, SqlJobStore
from models import FacilityLocation, IntervalPhase, JobState
from scheduler_errors import JobNotFoundError
from store_models import JobLog, utcnow


@pytest.fixture
def store(tmp_path: Path) -> SqlJobStore:
    store = SqlJobStore(f"sqlite:///{tmp_path / 'data' / 'jobs.db'}")
    yield store
    store.close()


def test_create_and_load_round_trip(store: SqlJobStore) -> None:
    cfg = make_config(interval_schedule=[IntervalPhase(10, 5), IntervalPhase(60, 55)], auto_book=False)
    job_id = store.create_job(cfg)

    loaded = store.load_job_config(job_id)
    assert loaded == cfg
    row = store.get_job(job_id)
    assert row["status"] == "idle"
    assert row["total_checks"] == 0
    assert row["created_at"] is not None


def test_sqlite_parent_directory_is_created(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "dir" / "jobs.db"
    SqlJobStore(f"sqlite:///{target}").close()
    assert target.parent.is_dir()


def test_unknown_job(store: SqlJobStore) -> None:
    assert store.get_job("nope") is None
    with pytest.raises(JobNotFoundError):
        store.load_job_config("nope")


def test_health_update_ignores_unknown_fields(store: SqlJobStore) -> None:
    job_id = store.create_job(make_config())
    store.update_health_and_status(
        job_id,
        {"status": JobState.RUNNING, "total_checks": 4, "password": "hijack", "bogus": 1},
    )

    row = store.get_job(job_id)
    assert row["status"] == "running"
    assert row["total_checks"] == 4
    assert row["password"] == "secret-pass"


def test_logs_newest_first_with_level_filter(store: SqlJobStore) -> None:
    job_id = store.create_job(make_config())
    store.append_log(job_id, "info", "first")
    store.append_log(job_id, "error", "second")
    store.append_log(job_id, "shout", "third")

    assert [log["message"] for log in store.get_logs(job_id)] == ["third", "second", "first"]
    assert [log["message"] for log in store.get_logs(job_id, level="error")] == ["second"]
    assert store.get_logs(job_id, limit=1)[0]["level"] == "info"


def test_facility_cache_merges(store: SqlJobStore) -> None:
    job_id = store.create_job(make_config())
    store.cache_facilities(job_id, [FacilityLocation("95", "Vancouver"), FacilityLocation("94", "Toronto")])
    store.cache_facilities(job_id, [FacilityLocation("94", "Toronto (CA)")])

    assert store.read_cached_facilities(job_id) == [
        FacilityLocation("94", "Toronto (CA)"),
        FacilityLocation("95", "Vancouver"),
    ]


def test_record_and_reset_booking(store: SqlJobStore) -> None:
    job_id = store.create_job(make_config())
    store.update_health_and_status(job_id, {"total_checks": 40, "failed_checks": 3, "last_error": "socket hang up"})
    store.record_booking(job_id, "2026-11-03", "09:00", "Toronto (94)", "2026-10-19T10:00:00+00:00")

    row = store.get_job(job_id)
    assert (row["status"], row["booked_date"], row["booked_time"]) == ("booked", "2026-11-03", "09:00")
    assert row["booked_facility"] == "Toronto (94)"

    store.reset_booking(job_id)
    row = store.get_job(job_id)
    assert row["status"] == "stopped"
    assert row["booked_date"] is None
    assert (row["total_checks"], row["failed_checks"], row["last_error"]) == (0, 0, None)


def test_mark_interrupted_jobs_stopped(store: SqlJobStore) -> None:
    running = store.create_job(make_config(job_id="run1"))
    booked = store.create_job(make_config(job_id="book1"))
    store.update_health_and_status(running, {"status": "running"})
    store.update_health_and_status(booked, {"status": "booked"})

    assert store.mark_interrupted_jobs_stopped() == 1
    assert store.get_job(running)["status"] == "stopped"
    assert store.get_job(booked)["status"] == "booked"


def test_cleanup_old_logs(store: SqlJobStore) -> None:
    job_id = store.create_job(make_config())
    store.append_log(job_id, "info", "fresh")
    session = store.SessionLocal()
    session.add(JobLog(job_id=job_id, level="info", message="stale", created_at=utcnow() - timedelta(days=8)))
    session.commit()
    session.close()

    assert store.cleanup_old_logs(days=7) == 1
    assert [log["message"] for log in store.get_logs(job_id)] == ["fresh"]


class FakeResponse:
    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code


class FakeSession:
    def __init__(self, error: Exception = None, status_code: int = 200) -> None:
        self.posts = []
        self.error = error
        self.status_code = status_code

    def post(self, url, json=None, headers=None, timeout=None):
        self.posts.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return FakeResponse(self.status_code)


def test_remote_store_posts_to_callbacks() -> None:
    session = FakeSession()
    cfg = make_config()
    remote = RemoteJobStore(cfg, callback_url="https://main.example/", callback_secret="s3cret", session=session)

    remote.append_log("job1", "warn", "hello")
    remote.update_health_and_status("job1", {"status": JobState.RUNNING, "total_checks": 2})

    log_post, status_post = session.posts
    assert log_post["url"] == "https://main.example/api/callback/log"
    assert log_post["json"] == {"job_id": "job1", "level": "warn", "message": "hello"}
    assert log_post["headers"] == {"X-Callback-Secret": "s3cret"}
    assert status_post["url"] == "https://main.example/api/callback/status"
    assert status_post["json"] == {"job_id": "job1", "status": "running", "total_checks": 2}
    assert remote.load_job_config("job1") is cfg


def test_remote_store_survives_callback_failures() -> None:
    remote = RemoteJobStore(
        make_config(),
        callback_url="https://main.example",
        callback_secret="s3cret",
        session=FakeSession(error=requests.ConnectionError("down")),
    )
    remote.append_log("job1", "info", "still running")
    remote.record_booking("job1", "2026-11-03", "09:00", "Toronto (94)", "now")

    with pytest.raises(JobNotFoundError):
        remote.load_job_config("other")


def test_remote_store_keeps_facilities_in_memory() -> None:
    remote = RemoteJobStore(make_config(), callback_url="https://x", callback_secret="s", session=FakeSession())
    remote.cache_facilities("job1", [FacilityLocation("94", "Toronto")])
    assert remote.read_cached_facilities("job1") == [FacilityLocation("94", "Toronto")]
