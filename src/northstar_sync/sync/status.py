"""Process-wide sync status observed passively by the UI."""

import datetime
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from northstar_sync.models.schema import SyncResult, SyncState, utc_now
from northstar_sync.observability import _sanitize_error_message

logger = logging.getLogger(__name__)

StatusListener = Callable[[Dict[str, Any]], None]


class SyncStatus:
    """Thread-safe record of what the background sync is doing and how it went.

    Background failures end up here instead of being raised: the last error
    and its time, the backoff counter and per-entity push failures.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._listeners: List[StatusListener] = []
        self.state = SyncState.IDLE
        self.last_error: Optional[str] = None
        self.last_error_at: Optional[datetime.datetime] = None
        self.last_success_at: Optional[datetime.datetime] = None
        self.consecutive_failures = 0
        self.next_retry_at: Optional[datetime.datetime] = None
        self.entity_failures: Dict[int, str] = {}
        self.last_result: Optional[SyncResult] = None

    def set_state(self, state: SyncState) -> None:
        with self._lock:
            if self.state == state:
                return
            self.state = state
        logger.debug(f"Sync state -> {state.value}")
        self._notify()

    def record_error(self, error: str, failures: int, retry_in: Optional[float] = None) -> None:
        with self._lock:
            self.last_error = _sanitize_error_message(error)
            self.last_error_at = utc_now()
            self.consecutive_failures = failures
            self.next_retry_at = (
                self.last_error_at + datetime.timedelta(seconds=retry_in)
                if retry_in is not None
                else None
            )
        self._notify()

    def record_success(self, result: SyncResult) -> None:
        with self._lock:
            self.last_success_at = utc_now()
            self.consecutive_failures = 0
            self.next_retry_at = None
            self.last_result = result
        self._notify()

    def record_entity_failure(self, local_id: int, error: str) -> None:
        with self._lock:
            self.entity_failures[local_id] = _sanitize_error_message(error) or ""
        self._notify()

    def clear_entity_failure(self, local_id: int) -> None:
        with self._lock:
            removed = self.entity_failures.pop(local_id, None)
        if removed is not None:
            self._notify()

    def restore(
        self,
        failures: int,
        last_error: Optional[str],
        last_error_at: Optional[datetime.datetime],
        last_success_at: Optional[datetime.datetime],
    ) -> None:
        """Seed the status from the persisted sync-state row."""
        with self._lock:
            self.consecutive_failures = failures
            self.last_error = last_error
            self.last_error_at = last_error_at
            self.last_success_at = last_success_at

    def reset(self) -> None:
        with self._lock:
            self.state = SyncState.IDLE
            self.last_error = None
            self.last_error_at = None
            self.last_success_at = None
            self.consecutive_failures = 0
            self.next_retry_at = None
            self.entity_failures.clear()
            self.last_result = None
        self._notify()

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "state": self.state.value,
                "last_error": self.last_error,
                "last_error_at": self.last_error_at.isoformat() if self.last_error_at else None,
                "last_success_at": (
                    self.last_success_at.isoformat() if self.last_success_at else None
                ),
                "consecutive_failures": self.consecutive_failures,
                "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
                "entity_failures": dict(self.entity_failures),
                "last_result": self.last_result.to_dict() if self.last_result else None,
            }

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        if not listeners:
            return
        snapshot = self.snapshot()
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(f"Sync status listener failed: {e}")
