import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from job_store import SqlJobStore
from models import JobConfig, JobState
from scheduler_engine import STOP_JOIN_TIMEOUT_SECONDS, ClientFactory, SchedulerInstance
from scheduler_errors import JobAlreadyRunningError, JobNotFoundError

DEFAULT_LOG_RETENTION_DAYS = 7

InstanceFactory = Callable[[str], SchedulerInstance]


class JobManager:
    """Owns the live SchedulerInstance of every started job.

    An instance stays registered until its worker thread has exited, so a job
    whose stop timed out mid-request still counts as running and cannot be
    started a second time.
    """

    def __init__(
        self,
        store: SqlJobStore,
        client_factory: ClientFactory,
        *,
        notifier=None,
        log_retention_days: int = DEFAULT_LOG_RETENTION_DAYS,
        instance_factory: Optional[InstanceFactory] = None,
        stop_timeout: float = STOP_JOIN_TIMEOUT_SECONDS,
    ) -> None:
        self.store = store
        self.client_factory = client_factory
        self.notifier = notifier
        self.log_retention_days = log_retention_days
        self.stop_timeout = stop_timeout
        self.instances: Dict[str, SchedulerInstance] = {}
        self._lock = threading.Lock()
        self._instance_factory = instance_factory or self._new_instance

    def _new_instance(self, job_id: str) -> SchedulerInstance:
        return SchedulerInstance(job_id, self.store, self.client_factory, notifier=self.notifier)

    def init(self) -> None:
        self.store.mark_interrupted_jobs_stopped()
        self.store.cleanup_old_logs(self.log_retention_days)

    def _require_job(self, job_id: str) -> Dict[str, Any]:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _live_instance(self, job_id: str) -> Optional[SchedulerInstance]:
        instance = self.instances.get(job_id)
        if instance is not None and instance.alive:
            return instance
        return None

    def is_running(self, job_id: str) -> bool:
        return self._live_instance(job_id) is not None

    def start_job(self, job_id: str) -> Dict[str, Any]:
        job = self._require_job(job_id)
        if job["status"] == JobState.BOOKED.value:
            raise ValueError("Job already has a confirmed booking.")
        if not job["email"] or not job["password"] or not job["schedule_id"]:
            raise ValueError("Job is missing email, password, or schedule id.")
        if not job["facility_ids"]:
            raise ValueError("No facility IDs configured for this job.")

        with self._lock:
            if self.is_running(job_id):
                raise JobAlreadyRunningError(f"Job {job_id} is already running.")
            instance = self._instance_factory(job_id)
            self.instances[job_id] = instance
            instance.start()

        logging.info("Job %s started", job_id)
        return self.get_status(job_id)

    def stop_job(self, job_id: str) -> Dict[str, Any]:
        self._require_job(job_id)
        with self._lock:
            instance = self.instances.get(job_id)
        if instance is not None:
            instance.stop(self.stop_timeout)
            with self._lock:
                if not instance.alive and self.instances.get(job_id) is instance:
                    del self.instances[job_id]
            if instance.alive:
                logging.warning("Job %s is still finishing its current request", job_id)
        else:
            job = self.store.get_job(job_id)
            if job and job["status"] == JobState.RUNNING.value:
                self.store.update_health_and_status(job_id, {"status": JobState.STOPPED.value})
        logging.info("Job %s stopped", job_id)
        return self.get_status(job_id)

    def get_status(self, job_id: str) -> Dict[str, Any]:
        job = dict(self._require_job(job_id))
        job["password"] = JobConfig._mask(job.get("password") or "")
        live = self._live_instance(job_id)
        job["running"] = live is not None
        if live is not None and live.cfg is not None:
            status = live.get_status()
            job.update(status["health"])
            job["status"] = status["state"]
        return job

    def list_jobs(self) -> List[Dict[str, Any]]:
        return [self.get_status(job["job_id"]) for job in self.store.list_jobs()]

    def reset_booking(self, job_id: str) -> Dict[str, Any]:
        self._require_job(job_id)
        with self._lock:
            if self.is_running(job_id):
                raise JobAlreadyRunningError("Stop the job before resetting its booking.")
            self.instances.pop(job_id, None)
        self.store.reset_booking(job_id)
        return self.get_status(job_id)

    def shutdown(self) -> None:
        with self._lock:
            instances = list(self.instances.values())
            self.instances.clear()
        for instance in instances:
            try:
                instance.stop(self.stop_timeout)
            except Exception as exc:  # noqa: BLE001
                logging.warning("Failed to stop job %s cleanly: %s", instance.job_id, exc)
