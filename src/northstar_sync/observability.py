"""Logging setup and metrics for the Northstar sync engine.

Two kinds of numbers are kept: per-operation timings for tool calls and
service methods, and running totals of what sync cycles moved (pushed,
rejected, pulled, conflicts). Both survive restarts through a JSON file.
"""
import functools
import json
import logging
import re
import time
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

DEFAULT_LOG_DIR = Path.home() / ".northstar" / "logs"
DEFAULT_METRICS_FILE = Path.home() / ".northstar" / "metrics.json"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

ROOT_LOGGER_NAME = "northstar_sync"

F = TypeVar("F", bound=Callable[..., Any])

# Cycle counters copied from a sync result into the running totals
_CYCLE_COUNTERS = (
    "pushed", "rejected", "held", "pulled", "applied", "conflicts", "skipped", "seeded"
)


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console: bool = True,
) -> Path:
    """Send the package's log records to ``northstar.log`` (rotated) and the console.

    Calling it again does not stack handlers.

    Returns:
        The log directory.
    """
    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = log_path / "northstar.log"

    package_logger = logging.getLogger(ROOT_LOGGER_NAME)
    package_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    handlers = package_logger.handlers
    if not any(isinstance(h, RotatingFileHandler) for h in handlers):
        file_handler = RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    has_console = any(
        type(h) is logging.StreamHandler for h in handlers
    )
    if console and not has_console:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        package_logger.addHandler(stream_handler)

    package_logger.info(f"Logging to {log_file}")
    return log_path


def _sanitize_error_message(message: Optional[str], max_length: int = 200) -> Optional[str]:
    """Make an error message safe to persist and show.

    Replaces the home directory with ``~``, flattens newlines and truncates
    to ``max_length`` characters (ending with an ellipsis).
    """
    if message is None:
        return None
    home = str(Path.home())
    sanitized = message.replace(home, "~") if home and home != "/" else message
    sanitized = re.sub(r"[\r\n]+", " ", sanitized)
    if len(sanitized) > max_length:
        sanitized = sanitized[: max_length - 3] + "..."
    return sanitized


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class OperationStats:
    """Timing and outcome of one named operation."""
    count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0
    max_duration_ms: float = 0.0
    min_duration_ms: Optional[float] = None
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None

    def add(self, duration_ms: float, success: bool, error: Optional[str]) -> None:
        self.count += 1
        self.total_duration_ms += duration_ms
        self.max_duration_ms = max(self.max_duration_ms, duration_ms)
        if self.min_duration_ms is None or duration_ms < self.min_duration_ms:
            self.min_duration_ms = duration_ms
        if success:
            self.success_count += 1
        else:
            self.error_count += 1
            self.last_error = _sanitize_error_message(error)
            self.last_error_time = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_error_time"] = (
            self.last_error_time.isoformat() if self.last_error_time else None
        )
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OperationStats":
        known = {f.name for f in fields(cls)}
        stats = cls(**{k: v for k, v in data.items() if k in known})
        stats.last_error_time = _parse_time(data.get("last_error_time"))
        return stats

    def report(self) -> Dict[str, Any]:
        avg = self.total_duration_ms / self.count if self.count else 0.0
        return {
            "count": self.count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "success_rate": self.success_count / self.count if self.count else 0,
            "avg_duration_ms": round(avg, 2),
            "min_duration_ms": round(self.min_duration_ms or 0.0, 2),
            "max_duration_ms": round(self.max_duration_ms, 2),
            "last_error": self.last_error,
            "last_error_time": (
                self.last_error_time.isoformat() if self.last_error_time else None
            ),
        }


@dataclass
class SyncTotals:
    """Running totals over all sync cycles."""
    cycles: int = 0
    failed_cycles: int = 0
    pushed: int = 0
    rejected: int = 0
    held: int = 0
    pulled: int = 0
    applied: int = 0
    conflicts: int = 0
    skipped: int = 0
    seeded: int = 0
    last_cycle_ms: float = 0.0
    last_cycle_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_cycle_at"] = self.last_cycle_at.isoformat() if self.last_cycle_at else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncTotals":
        known = {f.name for f in fields(cls)}
        totals = cls(**{k: v for k, v in data.items() if k in known})
        totals.last_cycle_at = _parse_time(data.get("last_cycle_at"))
        return totals


class MetricsCollector:
    """Thread-safe collector for operation timings and sync cycle totals.

    Saved to ``metrics_file`` every ``auto_save_interval`` recordings
    (0 disables auto-save) and loaded back on construction.
    """

    def __init__(
        self,
        metrics_file: Optional[Union[str, Path]] = None,
        auto_save_interval: int = 100,
    ):
        self._lock = Lock()
        self._metrics_file = Path(metrics_file) if metrics_file else DEFAULT_METRICS_FILE
        self._auto_save_interval = auto_save_interval
        self._clear()
        self._load_metrics()

    def _clear(self) -> None:
        self._operations: Dict[str, OperationStats] = defaultdict(OperationStats)
        self._sync = SyncTotals()
        self._start_time = datetime.now(timezone.utc)
        self._unsaved = 0

    def _recorded(self) -> None:
        # Called with the lock held
        self._unsaved += 1
        if 0 < self._auto_save_interval <= self._unsaved:
            self._save_metrics_unlocked()

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        """Record one run of ``operation`` (e.g. ``ns_create_note``, ``restore``)."""
        with self._lock:
            self._operations[operation].add(duration_ms, success, error)
            self._recorded()

    def record_sync_cycle(self, result: Any, duration_ms: float) -> None:
        """Add a finished cycle's counters to the sync totals.

        Args:
            result: The cycle's ``SyncResult``.
            duration_ms: Wall time of the cycle.
        """
        counters = result.to_dict()
        with self._lock:
            totals = self._sync
            totals.cycles += 1
            for name in _CYCLE_COUNTERS:
                setattr(totals, name, getattr(totals, name) + counters.get(name, 0))
            totals.last_cycle_ms = round(duration_ms, 2)
            totals.last_cycle_at = datetime.now(timezone.utc)
            if counters.get("error"):
                totals.failed_cycles += 1
                totals.last_error = _sanitize_error_message(counters["error"])
            self._operations["sync_cycle"].add(
                duration_ms, not counters.get("error"), counters.get("error")
            )
            self._recorded()

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Per-operation report keyed by operation name."""
        with self._lock:
            return {name: stats.report() for name, stats in self._operations.items()}

    def get_sync_metrics(self) -> Dict[str, Any]:
        """Sync cycle totals."""
        with self._lock:
            return self._sync.to_dict()

    def get_summary(self) -> Dict[str, Any]:
        """Aggregate health figures across all operations plus the sync totals."""
        with self._lock:
            total = sum(s.count for s in self._operations.values())
            ok = sum(s.success_count for s in self._operations.values())
            return {
                "uptime_seconds": (datetime.now(timezone.utc) - self._start_time).total_seconds(),
                "total_operations": total,
                "total_success": ok,
                "total_errors": total - ok,
                "overall_success_rate": ok / total if total else 1.0,
                "operations_tracked": list(self._operations),
                "sync": self._sync.to_dict(),
            }

    def reset(self) -> None:
        """Forget everything recorded so far."""
        with self._lock:
            self._clear()

    def _load_metrics(self) -> bool:
        try:
            if not self._metrics_file.exists():
                return False
            data = json.loads(self._metrics_file.read_text(encoding="utf-8"))
            for name, raw in data.get("operations", {}).items():
                self._operations[name] = OperationStats.from_dict(raw)
            self._sync = SyncTotals.from_dict(data.get("sync", {}))
            if data.get("start_time"):
                self._start_time = datetime.fromisoformat(data["start_time"])
        except (OSError, json.JSONDecodeError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable metrics file {self._metrics_file}: {e}")
            self._clear()
            return False
        logger.debug(f"Loaded metrics from {self._metrics_file}")
        return True

    def _save_metrics_unlocked(self) -> bool:
        data = {
            "start_time": self._start_time.isoformat(),
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "operations": {name: s.to_dict() for name, s in self._operations.items()},
            "sync": self._sync.to_dict(),
        }
        try:
            self._metrics_file.parent.mkdir(parents=True, exist_ok=True)
            # Write then rename so a crash never leaves half a file
            temp_file = self._metrics_file.with_suffix(".tmp")
            temp_file.write_text(json.dumps(data, indent=2), encoding="utf-8")
            temp_file.replace(self._metrics_file)
        except OSError as e:
            logger.error(f"Failed to save metrics to {self._metrics_file}: {e}")
            return False
        self._unsaved = 0
        return True

    def save_metrics(self) -> bool:
        """Write the metrics file now. Returns False on I/O failure."""
        with self._lock:
            return self._save_metrics_unlocked()


metrics = MetricsCollector()


@contextmanager
def timed_operation(operation: str, **context):
    """Time a block, record it in :data:`metrics` and log start and end.

    Yields a dict for result details that end up in the END log line::

        with timed_operation("ns_list", table="notes") as op:
            op["result_count"] = len(entities)
    """
    correlation_id = uuid.uuid4().hex[:8]
    details: Dict[str, Any] = {}
    context_str = ", ".join(f"{k}={v}" for k, v in context.items())
    logger.debug(f"[{correlation_id}] START {operation} ({context_str})")

    started = time.perf_counter()
    error: Optional[str] = None
    try:
        yield details
    except Exception as e:
        error = str(e)
        raise
    finally:
        duration_ms = (time.perf_counter() - started) * 1000
        metrics.record_operation(operation, duration_ms, error is None, error)
        outcome = "OK" if error is None else f"ERROR: {error}"
        details_str = ", ".join(f"{k}={v}" for k, v in details.items())
        logger.debug(
            f"[{correlation_id}] END {operation} ({duration_ms:.2f}ms) [{outcome}] {details_str}"
        )


def traced(operation_name: Optional[str] = None) -> Callable[[F], F]:
    """Decorator running the function inside :func:`timed_operation`.

    ``local_id`` or ``table`` keyword arguments are logged as context.
    """
    def decorator(func: F) -> F:
        name = operation_name or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            context = {k: kwargs[k] for k in ("local_id", "table") if k in kwargs}
            with timed_operation(name, **context) as op:
                result = func(*args, **kwargs)
                if hasattr(result, "__len__"):
                    op["result_count"] = len(result)
                return result

        return wrapper  # type: ignore
    return decorator
