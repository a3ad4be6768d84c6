import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import requests
from sqlalchemy import create_engine, delete, select, update
from sqlalchemy.orm import sessionmaker

from models import FacilityLocation, JobConfig, JobState
from scheduler_errors import JobNotFoundError
from store_models import Base, CachedLocation, Job, JobLog, utcnow

DEFAULT_DATABASE_URL = "sqlite:///data/scheduler.db"
LOG_LEVELS = ("debug", "info", "success", "warn", "error")

# Columns a running job (or a remote worker) may write back.
MUTABLE_JOB_FIELDS = {
    "status",
    "booked_date",
    "booked_time",
    "booked_facility",
    "booked_at",
    "total_checks",
    "successful_checks",
    "failed_checks",
    "consecutive_failures",
    "relogin_count",
    "last_error",
    "last_check_at",
    "started_at",
}


class JobStore(ABC):
    """Durable side of a job: config in, logs/health/bookings out."""

    @abstractmethod
    def load_job_config(self, job_id: str) -> JobConfig:
        raise NotImplementedError

    @abstractmethod
    def append_log(self, job_id: str, level: str, message: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def update_health_and_status(self, job_id: str, fields: Mapping[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def cache_facilities(self, job_id: str, facilities: Sequence[FacilityLocation]) -> None:
        raise NotImplementedError

    @abstractmethod
    def read_cached_facilities(self, job_id: str) -> List[FacilityLocation]:
        raise NotImplementedError

    @abstractmethod
    def record_booking(self, job_id: str, date: str, time: str, facility_label: str, timestamp: str) -> None:
        raise NotImplementedError


def _job_to_dict(job: Job) -> Dict[str, Any]:
    return {
        "job_id": job.id,
        "name": job.name,
        "email": job.email,
        "password": job.password,
        "schedule_id": job.schedule_id,
        "country": job.country,
        "facility_ids": list(job.facility_ids or []),
        "start_date": job.start_date,
        "end_date": job.end_date,
        "check_interval_seconds": job.check_interval_seconds,
        "interval_schedule": list(job.interval_schedule or []),
        "auto_book": job.auto_book,
        "max_retries": job.max_retries,
        "request_timeout_seconds": job.request_timeout_seconds,
        "max_relogin_attempts": job.max_relogin_attempts,
        "status": job.status,
        "booked_date": job.booked_date,
        "booked_time": job.booked_time,
        "booked_facility": job.booked_facility,
        "booked_at": job.booked_at,
        "total_checks": job.total_checks,
        "successful_checks": job.successful_checks,
        "failed_checks": job.failed_checks,
        "consecutive_failures": job.consecutive_failures,
        "relogin_count": job.relogin_count,
        "last_error": job.last_error,
        "last_check_at": job.last_check_at,
        "started_at": job.started_at,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "updated_at": job.updated_at.isoformat() if job.updated_at else None,
    }


class SqlJobStore(JobStore):
    def __init__(self, database_url: str = DEFAULT_DATABASE_URL) -> None:
        if database_url.startswith("sqlite:///") and ":memory:" not in database_url:
            Path(database_url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_engine(database_url, echo=False, connect_args=self._connect_args(database_url))
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine)
        self._lock = threading.RLock()
        Base.metadata.create_all(bind=self.engine)

    @staticmethod
    def _connect_args(database_url: str) -> Dict[str, Any]:
        # Job threads share the engine; SQLite connections must be allowed to cross threads.
        if database_url.startswith("sqlite"):
            return {"check_same_thread": False}
        return {}

    def create_job(self, config: JobConfig) -> str:
        data = config.to_dict()
        job_id = config.job_id or uuid.uuid4().hex[:8]
        with self._lock:
            session = self.SessionLocal()
            try:
                session.add(
                    Job(
                        id=job_id,
                        name=data["name"] or f"Job {job_id}",
                        email=data["email"],
                        password=data["password"],
                        schedule_id=data["schedule_id"],
                        country=data["country"],
                        facility_ids=data["facility_ids"],
                        start_date=data["start_date"],
                        end_date=data["end_date"],
                        check_interval_seconds=data["check_interval_seconds"],
                        interval_schedule=data["interval_schedule"],
                        auto_book=data["auto_book"],
                        max_retries=data["max_retries"],
                        request_timeout_seconds=data["request_timeout_seconds"],
                        max_relogin_attempts=data["max_relogin_attempts"],
                        status=JobState.IDLE.value,
                    )
                )
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()
        logging.info("Job %s stored (%s)", job_id, config.masked_summary())
        return job_id

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        session = self.SessionLocal()
        try:
            job = session.get(Job, job_id)
            return _job_to_dict(job) if job else None
        finally:
            session.close()

    def list_jobs(self) -> List[Dict[str, Any]]:
        session = self.SessionLocal()
        try:
            jobs = session.execute(select(Job).order_by(Job.created_at.desc())).scalars().all()
            return [_job_to_dict(job) for job in jobs]
        finally:
            session.close()

    def load_job_config(self, job_id: str) -> JobConfig:
        row = self.get_job(job_id)
        if row is None:
            raise JobNotFoundError(job_id)
        return JobConfig.from_dict(row)

    def append_log(self, job_id: str, level: str, message: str) -> None:
        if level not in LOG_LEVELS:
            level = "info"
        with self._lock:
            session = self.SessionLocal()
            try:
                session.add(JobLog(job_id=job_id, level=level, message=message))
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def get_logs(self, job_id: str, *, limit: int = 200, level: Optional[str] = None) -> List[Dict[str, Any]]:
        session = self.SessionLocal()
        try:
            stmt = select(JobLog).where(JobLog.job_id == job_id)
            if level:
                stmt = stmt.where(JobLog.level == level)
            stmt = stmt.order_by(JobLog.id.desc()).limit(limit)
            return [
                {
                    "id": log.id,
                    "level": log.level,
                    "message": log.message,
                    "created_at": log.created_at.isoformat(),
                }
                for log in session.execute(stmt).scalars().all()
            ]
        finally:
            session.close()

    def update_health_and_status(self, job_id: str, fields: Mapping[str, Any]) -> None:
        values = {key: value for key, value in fields.items() if key in MUTABLE_JOB_FIELDS}
        ignored = set(fields) - set(values)
        if ignored:
            logging.debug("Ignoring unknown job fields for %s: %s", job_id, ", ".join(sorted(ignored)))
        if not values:
            return
        if isinstance(values.get("status"), JobState):
            values["status"] = values["status"].value
        values["updated_at"] = utcnow()

        with self._lock:
            session = self.SessionLocal()
            try:
                session.execute(update(Job).where(Job.id == job_id).values(**values))
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def cache_facilities(self, job_id: str, facilities: Sequence[FacilityLocation]) -> None:
        with self._lock:
            session = self.SessionLocal()
            try:
                for facility in facilities:
                    session.merge(CachedLocation(job_id=job_id, facility_id=facility.id, name=facility.name, cached_at=utcnow()))
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def read_cached_facilities(self, job_id: str) -> List[FacilityLocation]:
        session = self.SessionLocal()
        try:
            rows = session.execute(
                select(CachedLocation).where(CachedLocation.job_id == job_id).order_by(CachedLocation.facility_id)
            ).scalars().all()
            return [FacilityLocation(id=row.facility_id, name=row.name) for row in rows]
        finally:
            session.close()

    def record_booking(self, job_id: str, date: str, time: str, facility_label: str, timestamp: str) -> None:
        self.update_health_and_status(
            job_id,
            {
                "status": JobState.BOOKED.value,
                "booked_date": date,
                "booked_time": time,
                "booked_facility": facility_label,
                "booked_at": timestamp,
            },
        )

    def reset_booking(self, job_id: str) -> None:
        if self.get_job(job_id) is None:
            raise JobNotFoundError(job_id)
        with self._lock:
            session = self.SessionLocal()
            try:
                session.execute(
                    update(Job)
                    .where(Job.id == job_id)
                    .values(
                        status=JobState.STOPPED.value,
                        booked_date=None,
                        booked_time=None,
                        booked_facility=None,
                        booked_at=None,
                        total_checks=0,
                        successful_checks=0,
                        failed_checks=0,
                        consecutive_failures=0,
                        relogin_count=0,
                        last_error=None,
                        last_check_at=None,
                        started_at=None,
                        updated_at=utcnow(),
                    )
                )
                session.commit()
            finally:
                session.close()

    def mark_interrupted_jobs_stopped(self) -> int:
        with self._lock:
            session = self.SessionLocal()
            try:
                result = session.execute(
                    update(Job)
                    .where(Job.status == JobState.RUNNING.value)
                    .values(status=JobState.STOPPED.value, updated_at=utcnow())
                )
                session.commit()
                count = result.rowcount or 0
            finally:
                session.close()
        if count:
            logging.info("Marked %s interrupted job(s) as stopped", count)
        return count

    def cleanup_old_logs(self, days: int = 7) -> int:
        cutoff = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=days)
        with self._lock:
            session = self.SessionLocal()
            try:
                result = session.execute(delete(JobLog).where(JobLog.created_at < cutoff))
                session.commit()
                count = result.rowcount or 0
            finally:
                session.close()
        if count:
            logging.info("Removed %s job log line(s) older than %s days", count, days)
        return count

    def close(self) -> None:
        self.engine.dispose()


class RemoteJobStore(JobStore):
    """Store used on a remote worker: everything is pushed to the main service's callback API."""

    def __init__(
        self,
        config: JobConfig,
        *,
        callback_url: str,
        callback_secret: str,
        timeout_seconds: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.config = config
        self.callback_url = callback_url.rstrip("/")
        self.callback_secret = callback_secret
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self._facilities: List[FacilityLocation] = []

    def _post(self, path: str, payload: Dict[str, Any]) -> None:
        try:
            response = self.session.post(
                f"{self.callback_url}{path}",
                json=payload,
                headers={"X-Callback-Secret": self.callback_secret},
                timeout=self.timeout_seconds,
            )
            if response.status_code >= 400:
                logging.warning("Callback %s rejected with HTTP %s", path, response.status_code)
        except requests.RequestException as exc:
            logging.warning("Callback %s failed: %s", path, exc)

    def load_job_config(self, job_id: str) -> JobConfig:
        if job_id != self.config.job_id:
            raise JobNotFoundError(job_id)
        return self.config

    def append_log(self, job_id: str, level: str, message: str) -> None:
        self._post("/api/callback/log", {"job_id": job_id, "level": level, "message": message})

    def update_health_and_status(self, job_id: str, fields: Mapping[str, Any]) -> None:
        payload = {key: (value.value if isinstance(value, JobState) else value) for key, value in fields.items()}
        payload["job_id"] = job_id
        self._post("/api/callback/status", payload)

    def cache_facilities(self, job_id: str, facilities: Sequence[FacilityLocation]) -> None:
        self._facilities = list(facilities)

    def read_cached_facilities(self, job_id: str) -> List[FacilityLocation]:
        return list(self._facilities)

    def record_booking(self, job_id: str, date: str, time: str, facility_label: str, timestamp: str) -> None:
        self.update_health_and_status(
            job_id,
            {
                "status": JobState.BOOKED.value,
                "booked_date": date,
                "booked_time": time,
                "booked_facility": facility_label,
                "booked_at": timestamp,
            },
        )
