"""Background worker deciding when the next sync cycle runs."""

import logging
import threading
import time
from typing import Callable, Optional

from northstar_sync.exceptions import SyncError
from northstar_sync.models.schema import SyncState, TriggerReason
from northstar_sync.sync.engine import SyncEngine

logger = logging.getLogger(__name__)

# Triggers that cut an ongoing backoff short
_URGENT = (TriggerReason.MANUAL, TriggerReason.RECONNECT)


class SyncWorker:
    """Single thread owning the sync engine.

    Triggers only set a pending flag under a condition variable, so at most
    one cycle runs at a time and any number of triggers arriving during a
    cycle collapse into one follow-up cycle. While the engine is backing
    off, mutation and periodic triggers wait for the backoff timer; manual
    and reconnect triggers run right away.
    """

    def __init__(
        self,
        engine: SyncEngine,
        interval: float = 0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.engine = engine
        self.interval = interval
        self._clock = clock
        self._cond = threading.Condition()
        self._thread: Optional[threading.Thread] = None
        self._stopping = False
        self._pending = False
        self._urgent = False
        self._retry_at: Optional[float] = None
        self._next_periodic: Optional[float] = None
        self._cycles_started = 0
        self._cycles_completed = 0

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the worker thread and run an initial cycle."""
        with self._cond:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stopping = False
            self._pending = True
            self._retry_at = None
            self._schedule_periodic()
            self._thread = threading.Thread(
                target=self._run, name="northstar-sync-worker", daemon=True
            )
            self._thread.start()
        logger.info(
            f"Sync worker started (interval={self.interval}s)"
            if self.interval
            else "Sync worker started (no periodic sync)"
        )

    def stop(self, timeout: Optional[float] = 30.0) -> None:
        """Stop the worker, letting an in-flight cycle finish."""
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
            thread = self._thread
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Sync worker did not stop within timeout")
        self._thread = None
        logger.info("Sync worker stopped")

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # =========================================================================
    # Triggers
    # =========================================================================

    def trigger(self, reason: TriggerReason = TriggerReason.MUTATION) -> int:
        """Request a cycle.

        Returns:
            The number of cycles that must have completed for this request
            to be served; see :meth:`wait_for_cycle`.
        """
        with self._cond:
            self._pending = True
            if reason in _URGENT:
                self._urgent = True
            # A running cycle may have read the queue already: serve with the next one
            target = self._cycles_started + 1
            self._cond.notify_all()
        logger.debug(f"Sync triggered ({reason.value})")
        return target

    def wait_for_cycle(self, target: int, timeout: Optional[float] = None) -> bool:
        """Block until ``target`` cycles have completed."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while self._cycles_completed < target:
                if self._stopping:
                    return False
                remaining = None if deadline is None else deadline - self._clock()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True

    def sync_now(self, timeout: Optional[float] = 60.0) -> bool:
        """Trigger a manual cycle and wait for it."""
        return self.wait_for_cycle(self.trigger(TriggerReason.MANUAL), timeout)

    @property
    def cycles_completed(self) -> int:
        with self._cond:
            return self._cycles_completed

    # =========================================================================
    # Worker loop
    # =========================================================================

    def _schedule_periodic(self) -> None:
        self._next_periodic = self._clock() + self.interval if self.interval > 0 else None

    def _due(self, now: float) -> bool:
        if self._urgent:
            return True
        if self._retry_at is not None:
            # Backing off: only the backoff timer (or an urgent trigger) runs a cycle
            return now >= self._retry_at
        if self._pending:
            return True
        return self._next_periodic is not None and now >= self._next_periodic

    def _wait_time(self, now: float) -> Optional[float]:
        deadline = self._retry_at if self._retry_at is not None else self._next_periodic
        if deadline is None:
            return None
        return max(0.0, deadline - now)

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._stopping and not self._due(self._clock()):
                    self._cond.wait(self._wait_time(self._clock()))
                if self._stopping:
                    return
                self._pending = False
                self._urgent = False
                self._cycles_started += 1

            try:
                self.engine.run_cycle()
            except SyncError as e:
                logger.error(f"Sync cycle could not run: {e}")
            except Exception:
                # The worker must survive anything a cycle throws
                logger.exception("Unexpected error in sync cycle")

            with self._cond:
                self._cycles_completed += 1
                if self.engine.state == SyncState.BACKING_OFF:
                    self._retry_at = self._clock() + self.engine.current_backoff()
                else:
                    self._retry_at = None
                self._schedule_periodic()
                self._cond.notify_all()
