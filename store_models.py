"""
SQLAlchemy ORM models for jobs, their logs and the per-job facility cache.
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship

from models import (
    DEFAULT_CHECK_INTERVAL_SECONDS,
    DEFAULT_COUNTRY,
    DEFAULT_MAX_RELOGIN_ATTEMPTS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    JobState,
)

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Job(Base):
    __tablename__ = "jobs"

    id = Column(String(16), primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    password = Column(String, nullable=False)
    schedule_id = Column(String, nullable=False)
    country = Column(String, nullable=False, default=DEFAULT_COUNTRY)
    facility_ids = Column(JSON, nullable=False, default=list)
    start_date = Column(String(10), nullable=False)
    end_date = Column(String(10), nullable=False)
    check_interval_seconds = Column(Integer, nullable=False, default=DEFAULT_CHECK_INTERVAL_SECONDS)
    interval_schedule = Column(JSON, nullable=False, default=list)
    auto_book = Column(Boolean, nullable=False, default=True)
    max_relogin_attempts = Column(Integer, nullable=False, default=DEFAULT_MAX_RELOGIN_ATTEMPTS)
    request_timeout_seconds = Column(Float, nullable=False, default=DEFAULT_REQUEST_TIMEOUT_SECONDS)
    max_retries = Column(Integer, nullable=False, default=DEFAULT_MAX_RETRIES)

    status = Column(String, nullable=False, default=JobState.IDLE.value)
    booked_date = Column(String)
    booked_time = Column(String)
    booked_facility = Column(String)
    booked_at = Column(String)

    # Health snapshot, written behind the in-memory counters of a running job.
    total_checks = Column(Integer, nullable=False, default=0)
    successful_checks = Column(Integer, nullable=False, default=0)
    failed_checks = Column(Integer, nullable=False, default=0)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    relogin_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    last_check_at = Column(String)
    started_at = Column(String)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    logs = relationship("JobLog", back_populates="job", cascade="all, delete-orphan")
    locations = relationship("CachedLocation", back_populates="job", cascade="all, delete-orphan")


class JobLog(Base):
    __tablename__ = "job_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(16), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    level = Column(String(16), nullable=False, index=True)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    job = relationship("Job", back_populates="logs")


class CachedLocation(Base):
    __tablename__ = "locations_cache"

    job_id = Column(String(16), ForeignKey("jobs.id", ondelete="CASCADE"), primary_key=True)
    facility_id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    cached_at = Column(DateTime, nullable=False, default=utcnow)

    job = relationship("Job", back_populates="locations")
