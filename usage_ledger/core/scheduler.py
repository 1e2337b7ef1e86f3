"""
Background sync scheduler.

A timer thread fires at the configured interval and starts an ingestion run
on a worker thread. At most one run is in flight; ticks that arrive while a
run is active are dropped, not queued. After too many consecutive failures
the scheduler suspends itself until an operator resets it.
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional

from usage_ledger.config.loader import SyncConfig
from .cancellation import CancellationToken
from .errors import SyncError, SyncErrorKind
from .pipeline import IngestionPipeline, SyncReport, SyncType

LOGGER = logging.getLogger(__name__)

# A timer older than this is recreated after returning from the background
MAX_TIMER_AGE_SECONDS = 3600.0


class SyncState(Enum):
    """Scheduler state machine."""
    IDLE = "idle"
    PREPARING = "preparing"
    SYNCING = "syncing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class TimerHealth:
    """Counters describing how reliably the timer fires and runs succeed."""
    total_fires: int = 0
    skipped_fires: int = 0
    late_fires: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    consecutive_failures: int = 0
    drift_samples: int = 0
    total_drift: float = 0.0
    max_drift: float = 0.0

    @property
    def average_drift(self) -> float:
        return self.total_drift / self.drift_samples if self.drift_samples else 0.0

    @property
    def success_rate(self) -> float:
        runs = self.successful_runs + self.failed_runs
        return self.successful_runs / runs if runs else 0.0

    def record_drift(self, drift: float) -> None:
        self.drift_samples += 1
        self.total_drift += drift
        self.max_drift = max(self.max_drift, drift)


@dataclass(frozen=True)
class SchedulerStatus:
    """Snapshot returned by SyncScheduler.get_status."""
    state: SyncState
    is_running: bool
    is_suspended: bool
    is_paused: bool
    last_error: Optional[str]
    last_sync_time: Optional[datetime]
    next_sync_time: Optional[datetime]
    last_report: Optional[SyncReport]
    health: TimerHealth


StatusListener = Callable[[SchedulerStatus], None]


class SyncScheduler:
    """Interval-driven, single-flight sync supervisor.

    Args:
        pipeline: Runs the actual ingestion
        config: Interval, enablement and health thresholds
        sync_type: Kind of run started by timer ticks
        clock: Monotonic time source
    """

    def __init__(
        self,
        pipeline: IngestionPipeline,
        config: SyncConfig,
        sync_type: SyncType = SyncType.FULL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.pipeline = pipeline
        self.config = config
        self.sync_type = sync_type
        self._clock = clock

        self._lock = threading.RLock()
        self._state = SyncState.IDLE
        self._health = TimerHealth()
        self._last_error: Optional[str] = None
        self._last_sync_time: Optional[datetime] = None
        self._last_report: Optional[SyncReport] = None
        self._suspended = False
        self._paused = False

        self._timer_thread: Optional[threading.Thread] = None
        self._timer_stop: Optional[threading.Event] = None
        self._timer_started_at: Optional[float] = None
        self._next_fire: Optional[float] = None
        self._backgrounded_at: Optional[float] = None

        self._run_in_flight = False
        self._run_token: Optional[CancellationToken] = None
        self._idle = threading.Event()
        self._idle.set()
        self._listeners: List[StatusListener] = []

    # Lifecycle

    @property
    def is_running(self) -> bool:
        return self._timer_thread is not None

    @property
    def interval(self) -> float:
        return self.config.interval_seconds

    def start(self, run_immediately: bool = False) -> None:
        """Arm the recurring timer.

        Args:
            run_immediately: Also start a run right away

        Raises:
            SyncError: If sync is disabled, the interval is not positive, or
                the scheduler is suspended
        """
        if not self.config.enabled:
            raise SyncError(SyncErrorKind.CONFIG_INVALID, "Auto-sync is disabled in the configuration")
        if self.config.interval_seconds <= 0:
            raise SyncError(
                SyncErrorKind.INTERVAL_INVALID,
                f"Sync interval must be > 0, got {self.config.interval_seconds}",
            )
        with self._lock:
            if self._suspended:
                raise SyncError(SyncErrorKind.SUSPENDED, self._last_error or "Auto-sync is suspended")
            if self.is_running:
                return
            self._arm_timer()
        LOGGER.info(
            "Auto-sync started: every %.0fs (tolerance %.1fs)",
            self.interval, self.config.timer_tolerance,
        )
        if run_immediately:
            self.tick()

    def stop(self) -> None:
        """Disarm the timer and cancel any in-flight run."""
        with self._lock:
            self._disarm_timer()
            token = self._run_token
            if not self._run_in_flight and self._state is not SyncState.IDLE:
                self._state = SyncState.IDLE
        if token is not None:
            token.cancel()
        LOGGER.info("Auto-sync stopped")
        self._notify()

    def pause(self) -> None:
        """Hold the in-flight run at its next checkpoint and skip new ticks."""
        with self._lock:
            self._paused = True
            if self._run_token is not None:
                self._run_token.pause()
                self._state = SyncState.PAUSED
        self._notify()

    def resume(self) -> None:
        with self._lock:
            self._paused = False
            if self._run_token is not None:
                self._run_token.resume()
                if self._state is SyncState.PAUSED:
                    self._state = SyncState.SYNCING
        self._notify()

    def cancel(self) -> bool:
        """Request cooperative cancellation of the in-flight run.

        Returns:
            True if a run was in flight
        """
        with self._lock:
            token = self._run_token
        if token is None:
            return False
        token.cancel()
        return True

    def reset_health(self) -> None:
        """Clear failure counters and a suspension; the timer is not restarted."""
        with self._lock:
            self._health = TimerHealth()
            self._suspended = False
            self._last_error = None
        self._notify()

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no run is in flight."""
        return self._idle.wait(timeout)

    # Triggers

    def tick(self, scheduled_at: Optional[float] = None) -> bool:
        """Handle one timer fire.

        Args:
            scheduled_at: Clock value the fire was planned for, used for drift

        Returns:
            True if a run was started, False if the tick was dropped
        """
        fired_at = self._clock()
        with self._lock:
            self._health.total_fires += 1
            if scheduled_at is not None:
                drift = max(0.0, fired_at - scheduled_at)
                self._health.record_drift(drift)
                # Fires inside the tolerance window count as on schedule
                if drift > self.config.timer_tolerance:
                    self._health.late_fires += 1
                if drift > self.config.drift_warning_seconds:
                    LOGGER.warning("Sync timer fired %.1fs late", drift)

            if self._suspended or self._paused or self._run_in_flight:
                self._health.skipped_fires += 1
                LOGGER.info("Skipping sync tick: %s", self._skip_reason())
                return False
            token = self._claim_run()

        worker = threading.Thread(
            target=self._execute_run,
            args=(token, self.sync_type),
            name="usage-sync-run",
            daemon=True,
        )
        worker.start()
        return True

    def trigger_manual_sync(
        self,
        sync_type: Optional[SyncType] = None,
        wait: bool = True,
    ) -> Optional[SyncReport]:
        """Start a run outside the timer schedule.

        Args:
            sync_type: Kind of run; defaults to the scheduler's
            wait: Run on the calling thread and return its report

        Returns:
            The run's report when waiting and the run succeeded, else None

        Raises:
            SyncError: If a run is already in flight or the scheduler is suspended
        """
        with self._lock:
            if self._suspended:
                raise SyncError(SyncErrorKind.SUSPENDED, self._last_error or "Auto-sync is suspended")
            if self._run_in_flight:
                raise SyncError(SyncErrorKind.IN_PROGRESS, "A sync is already in progress")
            token = self._claim_run()

        kind = sync_type or self.sync_type
        if wait:
            self._execute_run(token, kind)
            return self._last_report if self._state is SyncState.COMPLETED else None
        threading.Thread(
            target=self._execute_run, args=(token, kind), name="usage-sync-manual", daemon=True
        ).start()
        return None

    # Background handling

    def record_background_time(self) -> None:
        """Remember when the host process was suspended or backgrounded."""
        with self._lock:
            self._backgrounded_at = self._clock()

    def should_restart_after_background(self) -> bool:
        """True when the timer cannot be trusted after a suspension.

        That is the case when the suspension lasted more than two intervals
        or the timer has been alive for over an hour.
        """
        with self._lock:
            if not self.is_running:
                return False
            now = self._clock()
            if self._backgrounded_at is not None and now - self._backgrounded_at > 2 * self.interval:
                return True
            return self._timer_started_at is not None and now - self._timer_started_at > MAX_TIMER_AGE_SECONDS

    def handle_foreground(self) -> bool:
        """Recreate the timer if needed after returning from the background.

        Returns:
            True if the timer was recreated
        """
        restart = self.should_restart_after_background()
        with self._lock:
            self._backgrounded_at = None
            if restart:
                self._disarm_timer()
                self._arm_timer()
        if restart:
            LOGGER.info("Recreated sync timer after background suspension")
        return restart

    # Status

    def get_status(self) -> SchedulerStatus:
        with self._lock:
            next_sync_time = None
            if self._next_fire is not None and self.is_running:
                remaining = max(0.0, self._next_fire - self._clock())
                next_sync_time = datetime.now(timezone.utc) + timedelta(seconds=remaining)
            return SchedulerStatus(
                state=self._state,
                is_running=self.is_running,
                is_suspended=self._suspended,
                is_paused=self._paused,
                last_error=self._last_error,
                last_sync_time=self._last_sync_time,
                next_sync_time=next_sync_time,
                last_report=self._last_report,
                health=replace(self._health),
            )

    # Internals

    def _skip_reason(self) -> str:
        if self._suspended:
            return "auto-sync suspended"
        if self._paused:
            return "paused"
        return "a sync is already in progress"

    def _claim_run(self) -> CancellationToken:
        """Mark a run in flight; caller holds the lock."""
        token = CancellationToken()
        if self._paused:
            token.pause()
        self._run_in_flight = True
        self._run_token = token
        self._idle.clear()
        self._state = SyncState.PREPARING
        return token

    def _execute_run(self, token: CancellationToken, sync_type: SyncType) -> None:
        self._notify()
        try:
            with self._lock:
                if self._state is SyncState.PREPARING:
                    self._state = SyncState.PAUSED if token.paused else SyncState.SYNCING
            self._notify()
            report = self.pipeline.run(sync_type, token)
        except SyncError as e:
            if e.kind is SyncErrorKind.CANCELLED:
                self._finish_cancelled()
            else:
                self._finish_failed(e)
        except Exception as e:
            self._finish_failed(e)
        else:
            self._finish_completed(report)
        finally:
            with self._lock:
                self._run_in_flight = False
                self._run_token = None
                self._idle.set()
            self._notify()

    def _finish_completed(self, report: SyncReport) -> None:
        with self._lock:
            self._state = SyncState.COMPLETED
            self._health.successful_runs += 1
            self._health.consecutive_failures = 0
            self._last_error = None
            self._last_report = report
            self._last_sync_time = datetime.now(timezone.utc)

    def _finish_cancelled(self) -> None:
        LOGGER.info("Sync cancelled")
        with self._lock:
            self._state = SyncState.CANCELLED

    def _finish_failed(self, error: Exception) -> None:
        with self._lock:
            self._state = SyncState.FAILED
            self._health.failed_runs += 1
            self._health.consecutive_failures += 1
            failures = self._health.consecutive_failures

            if failures >= self.config.max_consecutive_failures:
                self._suspended = True
                self._disarm_timer()
                self._last_error = (
                    f"Auto-sync suspended after {failures} consecutive failures; "
                    f"last error: {error}"
                )
                LOGGER.error("%s", self._last_error)
                return

            retry = ""
            if self.is_running and self._next_fire is not None:
                retry_at = datetime.now(timezone.utc) + timedelta(
                    seconds=max(0.0, self._next_fire - self._clock())
                )
                retry = f"; next retry at {retry_at.isoformat(timespec='seconds')}"
            self._last_error = f"Sync failed: {error}{retry}"
        LOGGER.error("%s", self._last_error)

    def _arm_timer(self) -> None:
        """Start the timer thread; caller holds the lock."""
        stop = threading.Event()
        now = self._clock()
        self._timer_stop = stop
        self._timer_started_at = now
        self._next_fire = now + self.interval
        self._timer_thread = threading.Thread(
            target=self._timer_loop, args=(stop,), name="usage-sync-timer", daemon=True
        )
        self._timer_thread.start()

    def _disarm_timer(self) -> None:
        """Stop the timer thread; caller holds the lock."""
        if self._timer_stop is not None:
            self._timer_stop.set()
        self._timer_thread = None
        self._timer_stop = None
        self._timer_started_at = None
        self._next_fire = None

    def _timer_loop(self, stop: threading.Event) -> None:
        while True:
            with self._lock:
                if stop.is_set() or self._next_fire is None:
                    return
                scheduled = self._next_fire
            if stop.wait(max(0.0, scheduled - self._clock())):
                return
            with self._lock:
                if stop.is_set():
                    return
                # Reschedule from the actual fire time so missed ticks never pile up
                self._next_fire = self._clock() + self.interval
            self.tick(scheduled_at=scheduled)

    def _notify(self) -> None:
        if not self._listeners:
            return
        status = self.get_status()
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                LOGGER.exception("Sync status listener failed")
