"""Recurring reconciliation with at-most-one run in flight."""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Generator, Optional

from .errors import AlreadySyncing, ServiceUnavailable, ValidationError
from .history import RunStatistics, SyncHistory
from .models import RunTrigger, SchedulerState, SyncResult
from .reconciler import Reconciler

logger = logging.getLogger("vpnsync.scheduler")

MIN_INTERVAL_MINUTES = 1
MAX_INTERVAL_MINUTES = 60
DEFAULT_INTERVAL_MINUTES = 15


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_interval(minutes: object) -> int:
    if isinstance(minutes, bool) or not isinstance(minutes, int):
        raise ValidationError("Interval must be a whole number of minutes")
    if not MIN_INTERVAL_MINUTES <= minutes <= MAX_INTERVAL_MINUTES:
        raise ValidationError(
            f"Interval must be between {MIN_INTERVAL_MINUTES} and {MAX_INTERVAL_MINUTES} minutes"
        )
    return minutes


def schedule_expression(minutes: int) -> str:
    """Cron-style expression equivalent to running every ``minutes`` minutes."""

    if minutes == 60:
        return "0 * * * *"
    if minutes == 1:
        return "* * * * *"
    return f"*/{minutes} * * * *"


class Scheduler:
    """Owns the reconciliation timer and the single-run guard.

    ``start``/``stop`` arm and disarm the timer; they never interrupt a run
    that is already executing. Every run, scheduled or manual, goes through
    :meth:`run_now`, which rejects a second concurrent run with
    :class:`AlreadySyncing` instead of queueing it.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        *,
        interval_minutes: int = DEFAULT_INTERVAL_MINUTES,
        history: SyncHistory | None = None,
        seconds_per_minute: float = 60.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._reconciler = reconciler
        self._interval = validate_interval(interval_minutes)
        self._history = history or SyncHistory()
        self._seconds_per_minute = seconds_per_minute
        self._clock = clock

        self._state_lock = threading.RLock()
        self._run_lock = threading.Lock()
        self._syncing = False
        self._timer_event: Optional[threading.Event] = None
        self._timer_thread: Optional[threading.Thread] = None
        self._next_fire: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def history(self) -> SyncHistory:
        return self._history

    @property
    def is_running(self) -> bool:
        with self._state_lock:
            return self._timer_event is not None

    @property
    def is_syncing(self) -> bool:
        with self._state_lock:
            return self._syncing

    @property
    def interval_minutes(self) -> int:
        with self._state_lock:
            return self._interval

    @property
    def schedule_expression(self) -> str:
        return schedule_expression(self.interval_minutes)

    def state(self) -> SchedulerState:
        with self._state_lock:
            return SchedulerState(
                is_running=self._timer_event is not None,
                is_syncing=self._syncing,
                interval_minutes=self._interval,
                schedule_expression=schedule_expression(self._interval),
                last_run=self._history.latest(),
                next_fire_time=self._next_fire,
            )

    def statistics(self) -> RunStatistics:
        return self._history.statistics()

    def reset_stats(self) -> None:
        self._history.clear()
        logger.info("Scheduler statistics reset")

    # ------------------------------------------------------------------
    # Timer control
    # ------------------------------------------------------------------
    def start(self, *, run_immediately: bool = False) -> bool:
        with self._state_lock:
            if self._timer_event is not None:
                logger.warning("Sync scheduler is already running")
                return False
            self._arm_locked(run_immediately=run_immediately)
        logger.info(
            "Sync scheduler started (interval=%d minutes, expression=%s)",
            self._interval,
            schedule_expression(self._interval),
        )
        return True

    def stop(self, *, wait: bool = False, timeout: float | None = None) -> bool:
        with self._state_lock:
            if self._timer_event is None:
                logger.warning("Sync scheduler is not running")
                return False
            thread = self._disarm_locked()
        if self.is_syncing:
            logger.info("Sync scheduler stopped; the run in progress will be allowed to finish")
        else:
            logger.info("Sync scheduler stopped")
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        return True

    def update_interval(self, minutes: object) -> SchedulerState:
        validated = validate_interval(minutes)
        with self._state_lock:
            self._interval = validated
            if self._timer_event is not None:
                self._disarm_locked()
                self._arm_locked(run_immediately=False)
        logger.info(
            "Sync interval updated to %d minutes (expression=%s)",
            validated,
            schedule_expression(validated),
        )
        return self.state()

    def _arm_locked(self, *, run_immediately: bool) -> None:
        period = self._interval * self._seconds_per_minute
        event = threading.Event()
        thread = threading.Thread(
            target=self._loop,
            args=(event, period, run_immediately),
            name="vpnsync-scheduler",
            daemon=True,
        )
        self._timer_event = event
        self._timer_thread = thread
        self._next_fire = self._clock() if run_immediately else self._clock() + timedelta(seconds=period)
        thread.start()

    def _disarm_locked(self) -> Optional[threading.Thread]:
        thread = self._timer_thread
        if self._timer_event is not None:
            self._timer_event.set()
        self._timer_event = None
        self._timer_thread = None
        self._next_fire = None
        return thread

    def _loop(self, event: threading.Event, period: float, run_immediately: bool) -> None:
        if run_immediately:
            self._fire(event, "startup")
        while True:
            with self._state_lock:
                if event is self._timer_event:
                    self._next_fire = self._clock() + timedelta(seconds=period)
            if event.wait(period):
                return
            self._fire(event, "scheduled")

    def run_in_background(self, *, trigger: RunTrigger = "startup") -> threading.Thread:
        """Fire a single run on a daemon thread without arming the timer."""

        thread = threading.Thread(
            target=self._fire,
            args=(threading.Event(), trigger),
            name=f"vpnsync-{trigger}-run",
            daemon=True,
        )
        thread.start()
        return thread

    def _fire(self, event: threading.Event, trigger: RunTrigger) -> None:
        if event.is_set():
            return
        try:
            self.run_now(trigger=trigger)
        except AlreadySyncing:
            logger.warning("Sync already in progress, skipping %s execution", trigger)
        except ServiceUnavailable as exc:
            logger.error("Scheduled user synchronisation aborted: %s", exc)
        except Exception:
            logger.exception("Scheduled user synchronisation failed unexpectedly")

    # ------------------------------------------------------------------
    # Run guard
    # ------------------------------------------------------------------
    @contextmanager
    def exclusive(self) -> Generator[None, None, None]:
        """Hold the single-run guard or raise :class:`AlreadySyncing` at once."""

        if not self._run_lock.acquire(blocking=False):
            raise AlreadySyncing()
        with self._state_lock:
            self._syncing = True
        try:
            yield
        finally:
            with self._state_lock:
                self._syncing = False
            self._run_lock.release()

    def run_now(
        self,
        *,
        dry_run: bool = False,
        delete_orphaned: bool = False,
        trigger: RunTrigger = "manual",
    ) -> SyncResult:
        with self.exclusive():
            try:
                result = self._reconciler.run(
                    dry_run=dry_run,
                    delete_orphaned=delete_orphaned,
                    trigger=trigger,
                )
            except ServiceUnavailable as exc:
                if exc.partial_run is not None:
                    self._history.append(exc.partial_run)
                raise
            self._history.append(result.run)
            return result


__all__ = [
    "Scheduler",
    "validate_interval",
    "schedule_expression",
    "MIN_INTERVAL_MINUTES",
    "MAX_INTERVAL_MINUTES",
    "DEFAULT_INTERVAL_MINUTES",
]
