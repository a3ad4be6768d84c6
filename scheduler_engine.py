import logging
import random
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from ais_client import AisClient
from job_store import JobStore
from logging_utils import JobLogger, capture_artifact
from models import (
    AvailabilityDate,
    BookingFailure,
    BookingResult,
    CycleOutcome,
    FacilityLocation,
    HealthStats,
    JobConfig,
    JobState,
)
from page_parsers import filter_dates_in_range, nearest_upcoming_date
from scheduler_errors import (
    CsrfExpiredError,
    JobAlreadyRunningError,
    RateLimitedError,
    SchedulerError,
    SessionExpiredError,
    TransportError,
)
from scheduling_utils import IntervalSchedule, block_cooldown_seconds

SleepFn = Callable[[float], bool]
ClientFactory = Callable[[JobConfig, SleepFn], AisClient]

HEALTH_FLUSH_EVERY_CYCLES = 5
MAX_BOOKING_DATES = 3
MAX_BOOKING_ATTEMPTS = 3
BOOKING_PAUSE_SECONDS = 0.5
RATE_LIMIT_PAUSE_SECONDS = 5 * 60
FACILITY_PAUSE_RANGE_SECONDS = (0.100, 0.130)
SOCKET_PAUSE_RANGE_SECONDS = (8.0, 12.0)
LOGIN_RETRY_SECONDS = 60
LOGIN_COOLDOWN_SECONDS = 5 * 60
MAX_CONSECUTIVE_FAILURES = 10
FAILURE_COOLDOWN_SECONDS = 5 * 60
STOP_JOIN_TIMEOUT_SECONDS = 5.0


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class SchedulerInstance:
    """One job's polling loop: login, check cycles, cooldowns, auto-booking.

    Health counters live in memory and are written behind to the store every
    few cycles and on every state transition, so stored health may lag the
    live numbers by up to HEALTH_FLUSH_EVERY_CYCLES cycles.
    """

    def __init__(
        self,
        job_id: str,
        store: JobStore,
        client_factory: ClientFactory,
        *,
        notifier=None,
        sleep: Optional[Callable[[float], Any]] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.job_id = job_id
        self.store = store
        self.notifier = notifier
        self.log = JobLogger(job_id, store)
        self.health = HealthStats()
        self.state = JobState.IDLE
        self.cfg: Optional[JobConfig] = None
        self.client: Optional[AisClient] = None
        self.schedule: Optional[IntervalSchedule] = None
        self.block_count = 0

        self._client_factory = client_factory
        self._sleep_override = sleep
        self._rng = rng or random.Random()
        self._clock = clock
        self._stop_event = threading.Event()
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._facility_names: Dict[str, str] = {}

    # ── lifecycle plumbing ──

    @property
    def running(self) -> bool:
        return self._running and not self._stop_event.is_set()

    @property
    def alive(self) -> bool:
        """True while the worker thread exists, including after a stop request it has not yet honored."""
        return self._thread is not None and self._thread.is_alive()

    def sleep(self, seconds: float) -> bool:
        """Cancelable wait. Returns False when a stop was requested before or during the wait."""
        if self._stop_event.is_set():
            return False
        if self._sleep_override is not None:
            self._sleep_override(seconds)
            return not self._stop_event.is_set()
        return not self._stop_event.wait(max(0.0, seconds))

    def _flush_health(self, extra: Optional[Dict[str, Any]] = None) -> None:
        fields = self.health.as_fields()
        if extra:
            fields.update(extra)
        try:
            self.store.update_health_and_status(self.job_id, fields)
        except Exception as exc:  # noqa: BLE001
            logging.debug("Health flush failed for job %s: %s", self.job_id, exc)

    def _set_state(self, state: JobState, **extra: Any) -> None:
        self.state = state
        self._flush_health({"status": state.value, **extra})

    def _facility_name(self, facility_id: str) -> str:
        return self._facility_names.get(facility_id) or f"Facility {facility_id}"

    def _load_cached_facilities(self) -> None:
        try:
            cached = self.store.read_cached_facilities(self.job_id)
        except Exception as exc:  # noqa: BLE001
            logging.debug("Could not read cached facilities for job %s: %s", self.job_id, exc)
            return
        self._facility_names.update({item.id: item.name for item in cached})

    def _refresh_facilities(self) -> List[FacilityLocation]:
        facilities = self.client.fetch_facilities()
        if facilities:
            self._facility_names.update({item.id: item.name for item in facilities})
            try:
                self.store.cache_facilities(self.job_id, facilities)
            except Exception as exc:  # noqa: BLE001
                logging.debug("Could not cache facilities for job %s: %s", self.job_id, exc)
        return facilities

    def _relogin(self) -> bool:
        try:
            self.client.login()
        except Exception as exc:  # noqa: BLE001
            self.log.error(f"Re-login failed: {exc}")
            return False
        self.health.relogin_count += 1
        return True

    # ── check cycle ──

    def run_check_cycle(self) -> CycleOutcome:
        if not self.running:
            return CycleOutcome.STOPPED

        self.health.total_checks += 1
        self.health.last_check_at = _utcnow()

        facility_ids: Sequence[str] = self.cfg.facility_ids
        if not facility_ids:
            self.log.warn("No facility IDs configured. Skipping cycle.")
            return CycleOutcome.CONTINUE

        any_success = False
        socket_failures = 0
        relogins = 0
        last_error: Optional[str] = None
        index = 0

        while index < len(facility_ids):
            if not self.running:
                return CycleOutcome.STOPPED

            facility_id = facility_ids[index]
            name = self._facility_name(facility_id)

            if index > 0:
                pause = self._rng.uniform(*FACILITY_PAUSE_RANGE_SECONDS)
                if not self.sleep(pause):
                    return CycleOutcome.STOPPED

            try:
                days = self.client.fetch_open_days(facility_id)
            except SessionExpiredError as exc:
                last_error = str(exc)
                if relogins >= self.cfg.max_relogin_attempts:
                    self.log.error(f"Session keeps expiring after {relogins} re-login(s) this cycle.")
                    self.health.record_failure(last_error)
                    return CycleOutcome.LOGIN_FAILED
                self.log.warn(f"{name}: session expired. Re-logging in...")
                relogins += 1
                if not self._relogin():
                    self.health.record_failure(last_error)
                    return CycleOutcome.LOGIN_FAILED
                continue
            except RateLimitedError as exc:
                last_error = str(exc)
                self.log.warn(f"{name}: rate limited (429). Waiting {RATE_LIMIT_PAUSE_SECONDS // 60} minutes...")
                if not self.sleep(RATE_LIMIT_PAUSE_SECONDS):
                    return CycleOutcome.STOPPED
            except CsrfExpiredError as exc:
                last_error = str(exc)
                self.log.warn(f"{name}: CSRF token expired. Refreshing...")
                try:
                    self._refresh_facilities()
                except Exception as refresh_exc:  # noqa: BLE001
                    self.log.debug(f"Facility refresh after CSRF expiry failed: {refresh_exc}")
            except TransportError as exc:
                last_error = str(exc)
                if exc.socket_error and exc.retries_exhausted:
                    socket_failures += 1
                    self.log.warn(
                        f"{name}: socket error after all retries "
                        f"({socket_failures}/{len(facility_ids)} facilities affected)"
                    )
                    if socket_failures >= len(facility_ids):
                        self.log.error("All facilities returning socket errors - IP-level block detected.")
                        self.health.record_failure(CycleOutcome.IP_BLOCKED.value)
                        self._flush_health()
                        return CycleOutcome.IP_BLOCKED
                    if not self.sleep(self._rng.uniform(*SOCKET_PAUSE_RANGE_SECONDS)):
                        return CycleOutcome.STOPPED
                else:
                    self.log.error(f"{name}: {exc}")
            except Exception as exc:  # noqa: BLE001
                last_error = str(exc)
                self.log.error(f"{name}: {exc}")
            else:
                any_success = True
                socket_failures = 0
                outcome = self._handle_open_days(facility_id, name, days)
                if outcome is not None:
                    return outcome

            index += 1

        if not self.running:
            return CycleOutcome.STOPPED

        if any_success:
            self.health.record_success()
        else:
            self.health.record_failure(last_error)

        if self.health.total_checks % HEALTH_FLUSH_EVERY_CYCLES == 0:
            self._flush_health()

        return CycleOutcome.CONTINUE

    def _handle_open_days(
        self, facility_id: str, name: str, days: Sequence[AvailabilityDate]
    ) -> Optional[CycleOutcome]:
        matching = filter_dates_in_range(days, self.cfg.start_date, self.cfg.end_date)
        if not matching:
            nearest = nearest_upcoming_date(days)
            self.log.info(f"{name}: {len(days)} total dates, 0 in range. Nearest: {nearest or 'none'}")
            return None

        preview = ", ".join(item.date for item in matching[:5])
        self.log.success(f"{name}: {len(matching)} date(s) in range! -> {preview}")
        if not self.cfg.auto_book:
            self.log.info("Auto-book disabled; leaving the slot for manual booking.")
            return None
        return self._auto_book(facility_id, name, matching)

    def _auto_book(
        self, facility_id: str, name: str, matching: Sequence[AvailabilityDate]
    ) -> Optional[CycleOutcome]:
        for target in matching[:MAX_BOOKING_DATES]:
            for attempt in range(1, MAX_BOOKING_ATTEMPTS + 1):
                if not self.running:
                    return CycleOutcome.STOPPED
                try:
                    self.log.info(f"Getting time slots for {target.date}...")
                    times = self.client.fetch_open_times(facility_id, target.date)
                    if not times:
                        self.log.warn(f"No time slots for {target.date}")
                        break
                    self.log.info(f"Booking attempt #{attempt}: {target.date} {times[0]} at {name}")
                    result = self.client.submit_booking(facility_id, target.date, times[0], attempt=attempt)
                except SessionExpiredError as exc:
                    self.log.error(f"Booking error (attempt #{attempt}): {exc}")
                    self._relogin()
                except Exception as exc:  # noqa: BLE001
                    self.log.error(f"Booking error (attempt #{attempt}): {exc}")
                else:
                    if result.booked:
                        self._record_booking(facility_id, name, result)
                        return CycleOutcome.BOOKED
                    self._report_failed_booking(attempt, result)
                    if result.session_expired:
                        self._relogin()

                if attempt < MAX_BOOKING_ATTEMPTS and not self.sleep(BOOKING_PAUSE_SECONDS):
                    return CycleOutcome.STOPPED

        self.log.warn(f"All booking attempts failed for {name}")
        return None

    def _report_failed_booking(self, attempt: int, result: BookingResult) -> None:
        self.log.warn(f"Booking attempt #{attempt} failed: {result.failure_reason or 'unknown'}")
        if result.failure is BookingFailure.AMBIGUOUS:
            body = getattr(self.client, "last_booking_body", None) or ""
            path = capture_artifact(f"booking_ambiguous_{self.job_id}", body)
            self.log.warn(
                f"Booking result unclear for {result.date} {result.time}; "
                f"check the AIS account before the next attempt (response saved to {path})"
            )

    def _record_booking(self, facility_id: str, name: str, result: BookingResult) -> None:
        label = f"{name} ({facility_id})"
        booked_at = _utcnow()
        self.log.success("APPOINTMENT BOOKED & VERIFIED!")
        self.log.success(f"Location: {name} | Date: {result.date} | Time: {result.time}")
        try:
            self.store.record_booking(self.job_id, result.date, result.time, label, booked_at)
        except Exception as exc:  # noqa: BLE001
            logging.error("Failed to persist booking for job %s: %s", self.job_id, exc)
        self._set_state(
            JobState.BOOKED,
            booked_date=result.date,
            booked_time=result.time,
            booked_facility=label,
            booked_at=booked_at,
        )
        if self.notifier is not None:
            try:
                self.notifier.booking_confirmed(self.cfg.name or self.job_id, label, result.date, result.time)
            except Exception as exc:  # noqa: BLE001
                logging.debug("Booking notification failed: %s", exc)

    # ── run loop ──

    def _cool_down_after_block(self) -> None:
        cooldown = block_cooldown_seconds(self.block_count)
        self.block_count += 1
        minutes = cooldown // 60
        self.log.warn(f"IP block #{self.block_count} - cooling down for {minutes} min...")
        self._flush_health({"last_error": f"IP blocked - cooldown {minutes}min (#{self.block_count})"})
        if not self.sleep(cooldown):
            return

        self.log.info("Cooldown done. Re-establishing session...")
        if self._relogin():
            self.log.success("Session refreshed after cooldown.")
            self.health.consecutive_failures = 0
        self.schedule.reset()

    def _recover_login(self) -> None:
        if self.health.consecutive_failures >= self.cfg.max_relogin_attempts:
            self.log.warn(f"Max re-login attempts reached. Cooling down {LOGIN_COOLDOWN_SECONDS // 60} minutes...")
            self.health.consecutive_failures = 0
            pause = LOGIN_COOLDOWN_SECONDS
        else:
            self.log.warn(f"Will retry login in {LOGIN_RETRY_SECONDS} seconds...")
            pause = LOGIN_RETRY_SECONDS
        if not self.sleep(pause):
            return

        if self._relogin():
            self.log.success("Re-login succeeded.")
            self.health.consecutive_failures = 0
        else:
            self.health.consecutive_failures += 1

    def _run_loop(self) -> None:
        while self.running:
            try:
                outcome = self.run_check_cycle()
                if outcome is CycleOutcome.BOOKED:
                    self.log.success("Appointment booked! Stopping.")
                    break
                if outcome is CycleOutcome.STOPPED:
                    break
                if outcome is CycleOutcome.IP_BLOCKED:
                    self._cool_down_after_block()
                    continue
                if outcome is CycleOutcome.LOGIN_FAILED:
                    self._recover_login()
                    continue
            except Exception as exc:  # noqa: BLE001
                logging.exception("Unexpected error in job %s loop", self.job_id)
                self.log.error(f"Unexpected error (recovered): {exc}")
                self.health.consecutive_failures += 1
                self.health.last_error = str(exc)
                if self.health.consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                    self.log.warn(f"Too many failures. Cooling down {FAILURE_COOLDOWN_SECONDS // 60} minutes...")
                    if not self.sleep(FAILURE_COOLDOWN_SECONDS):
                        break
                    if self._relogin():
                        self.health.consecutive_failures = 0

            if not self.running:
                break

            wait_seconds = self.schedule.next_wait_seconds()
            self.log.debug(f"Next check in {wait_seconds:.1f}s")
            self.sleep(wait_seconds)

    def run(self) -> JobState:
        """Run the whole job lifecycle on the calling thread and return the final state."""
        try:
            self.cfg = self.store.load_job_config(self.job_id)
        except Exception as exc:  # noqa: BLE001
            self.log.error(f"Could not load job configuration: {exc}")
            self._running = False
            self.health.last_error = str(exc)
            self._set_state(JobState.ERROR)
            return self.state

        self._running = True
        self.health = HealthStats(started_at=_utcnow())
        self.block_count = 0
        self.schedule = IntervalSchedule(
            self.cfg.check_interval_seconds,
            self.cfg.interval_schedule,
            clock=self._clock,
            rng=self._rng,
        )
        self._set_state(JobState.RUNNING)
        self.log.info(f"Starting scheduler ({self.cfg.masked_summary()})")

        try:
            self.client = self._client_factory(self.cfg, self.sleep)
            try:
                self.client.login()
            except Exception as exc:  # noqa: BLE001
                self.log.error(f"Initial login failed: {exc}")
                self.health.last_error = str(exc)
                self._set_state(JobState.ERROR)
                if self.notifier is not None:
                    try:
                        self.notifier.job_failed(self.cfg.name or self.job_id, str(exc))
                    except Exception as notify_exc:  # noqa: BLE001
                        logging.debug("Failure notification failed: %s", notify_exc)
                return self.state
            self.log.success("Login successful.")

            self._load_cached_facilities()
            try:
                facilities = self._refresh_facilities()
                self.log.success(f"Found {len(facilities)} locations.")
            except Exception as exc:  # noqa: BLE001
                self.log.warn(f"Failed to fetch locations: {exc}")

            self.log.success("Monitoring started.")
            self._run_loop()
        finally:
            self._running = False
            if self.client is not None:
                try:
                    self.client.close()
                except Exception as exc:  # noqa: BLE001
                    logging.debug("Client close raised; ignoring to continue cleanup: %s", exc)
            if self.state is JobState.RUNNING:
                self._set_state(JobState.STOPPED)
            else:
                self._flush_health()
        return self.state

    def _thread_main(self) -> None:
        try:
            self.run()
        except Exception as exc:  # noqa: BLE001
            logging.exception("Job %s crashed", self.job_id)
            self.health.last_error = str(exc)
            self._set_state(JobState.ERROR)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            raise JobAlreadyRunningError(f"Job {self.job_id} is already running")
        self._stop_event.clear()
        self._running = True
        self._thread = threading.Thread(target=self._thread_main, name=f"job-{self.job_id}", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = STOP_JOIN_TIMEOUT_SECONDS) -> None:
        thread = self._thread
        if not self._running and (thread is None or not thread.is_alive()):
            return

        self.log.info("Stopping scheduler...")
        self._running = False
        self._stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                self.log.warn(f"Current cycle did not finish within {timeout:.0f}s; it will exit on its own.")

        if self.state in (JobState.BOOKED, JobState.ERROR):
            self._flush_health()
        else:
            self._set_state(JobState.STOPPED)
        self.log.info("Scheduler stopped.")

    def wait(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def get_status(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "state": self.state.value,
            "running": self.running,
            "health": self.health.as_fields(),
        }
