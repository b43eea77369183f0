"""Tests for the background sync worker."""
import threading
import time

from northstar_sync.exceptions import ErrorCode, SyncError
from northstar_sync.models.schema import SyncResult, SyncState, TriggerReason
from northstar_sync.sync.scheduler import SyncWorker


class StubEngine:
    """Counts cycles and can hold them open or pretend to back off."""

    def __init__(self):
        self.state = SyncState.IDLE
        self.backoff = 0.0
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self.release = threading.Event()
        self.release.set()
        self.started = threading.Event()
        self.fail_with = None
        self._lock = threading.Lock()

    def run_cycle(self):
        with self._lock:
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.started.set()
        try:
            self.release.wait(5)
            if self.fail_with is not None:
                raise self.fail_with
            return SyncResult(state=self.state)
        finally:
            with self._lock:
                self.active -= 1

    def current_backoff(self):
        return self.backoff


def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestSyncWorker:
    """Tests for SyncWorker scheduling."""

    def setup_method(self):
        self.engine = StubEngine()
        self.worker = SyncWorker(self.engine)

    def teardown_method(self):
        self.engine.release.set()
        self.worker.stop(timeout=5)

    def test_start_runs_initial_cycle(self):
        self.worker.start()
        assert self.worker.wait_for_cycle(1, timeout=5)
        assert self.engine.calls == 1
        assert self.worker.is_alive

    def test_triggers_during_a_cycle_collapse_into_one(self):
        self.engine.release.clear()
        self.worker.start()
        assert self.engine.started.wait(5)

        targets = [self.worker.trigger(TriggerReason.MUTATION) for _ in range(5)]
        assert set(targets) == {2}
        self.engine.release.set()

        assert self.worker.wait_for_cycle(2, timeout=5)
        time.sleep(0.2)
        assert self.engine.calls == 2
        assert self.engine.max_active == 1

    def test_concurrent_triggers_never_overlap_cycles(self):
        self.worker.start()
        threads = [
            threading.Thread(target=self.worker.sync_now, kwargs={"timeout": 5})
            for _ in range(8)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)
        assert self.engine.max_active == 1
        assert 2 <= self.engine.calls <= 9

    def test_sync_now_waits_for_a_fresh_cycle(self):
        self.worker.start()
        assert self.worker.wait_for_cycle(1, timeout=5)
        assert self.worker.sync_now(timeout=5)
        assert self.engine.calls == 2

    def test_backoff_holds_mutation_triggers(self):
        self.engine.state = SyncState.BACKING_OFF
        self.engine.backoff = 30.0
        self.worker.start()
        assert self.worker.wait_for_cycle(1, timeout=5)

        self.worker.trigger(TriggerReason.MUTATION)
        time.sleep(0.3)
        assert self.engine.calls == 1

        # Manual and reconnect triggers cut the backoff short
        assert self.worker.sync_now(timeout=5)
        assert self.engine.calls == 2
        self.worker.trigger(TriggerReason.RECONNECT)
        assert _wait_until(lambda: self.engine.calls == 3)

    def test_backoff_timer_retries(self):
        self.engine.state = SyncState.BACKING_OFF
        self.engine.backoff = 0.1
        self.worker.start()
        assert _wait_until(lambda: self.engine.calls >= 3)

    def test_periodic_trigger(self):
        self.worker.interval = 0.05
        self.worker.start()
        assert _wait_until(lambda: self.engine.calls >= 3)

    def test_worker_survives_failing_cycles(self):
        self.engine.fail_with = RuntimeError("boom")
        self.worker.start()
        assert self.worker.wait_for_cycle(1, timeout=5)
        self.engine.fail_with = SyncError("busy", code=ErrorCode.SYNC_ALREADY_RUNNING)
        assert self.worker.sync_now(timeout=5)
        self.engine.fail_with = None
        assert self.worker.sync_now(timeout=5)
        assert self.worker.is_alive

    def test_stop(self):
        self.worker.start()
        assert self.worker.wait_for_cycle(1, timeout=5)
        self.worker.stop(timeout=5)
        assert not self.worker.is_alive
        # A stopped worker no longer serves requests
        assert not self.worker.wait_for_cycle(5, timeout=0.1)
