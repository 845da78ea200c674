"""Logging and operation metrics for Notekeeper.

Store replacements, adapter calls and sync passes run inside
:func:`timed_operation`, which logs START/END lines under a short
correlation id and records the outcome in the global ``metrics``
collector. Metrics are persisted to JSON so ``notekeeper metrics`` can
report on earlier runs.
"""
import dataclasses
import functools
import json
import logging
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

NOTEKEEPER_HOME = Path.home() / ".notekeeper"
LOG_FILE_NAME = "notekeeper.log"

# ISO 8601 timestamps
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

F = TypeVar("F", bound=Callable[..., Any])


def _sanitize_error_message(
    message: Optional[str], max_length: int = 200
) -> Optional[str]:
    """Shorten an error message for the metrics file.

    The home directory becomes ``~`` and line breaks become spaces.
    """
    if message is None:
        return None
    flat = message.replace(str(Path.home()), "~").replace("\r", "\n")
    flat = " ".join(flat.split("\n"))
    if len(flat) <= max_length:
        return flat
    return flat[: max_length - 3] + "..."


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console: bool = True,
) -> Path:
    """Send the ``notekeeper`` loggers to a rotating file.

    Args:
        log_dir: Directory for ``notekeeper.log``. Defaults to
            ~/.notekeeper/logs/
        level: Level for the package logger and its handlers.
        max_bytes: Size at which the log file rotates (default: 10 MB).
        backup_count: Rotated files to keep.
        console: Also log to stderr, unless a console handler is already
            attached.

    Returns:
        The log directory.
    """
    log_path = Path(log_dir) if log_dir else NOTEKEEPER_HOME / "logs"
    log_path.mkdir(parents=True, exist_ok=True)

    package_logger = logging.getLogger("notekeeper")
    package_logger.setLevel(level)

    handlers = [
        RotatingFileHandler(
            log_path / LOG_FILE_NAME,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
    ]
    if console and not any(
        type(h) is logging.StreamHandler for h in package_logger.handlers
    ):
        handlers.append(logging.StreamHandler())

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)

    package_logger.info(f"Logging to {log_path / LOG_FILE_NAME}")
    return log_path


@dataclasses.dataclass
class OperationStats:
    """Running totals for one operation name."""
    count: int = 0
    errors: int = 0
    total_ms: float = 0.0
    min_ms: Optional[float] = None
    max_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_at: Optional[str] = None

    def add(self, duration_ms: float, failed: bool, error: Optional[str]) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = duration_ms if self.min_ms is None else min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)
        if failed:
            self.errors += 1
            self.last_error = _sanitize_error_message(error)
            self.last_error_at = datetime.now(timezone.utc).isoformat()

    def snapshot(self) -> Dict[str, Any]:
        successes = self.count - self.errors
        return {
            "count": self.count,
            "success_count": successes,
            "error_count": self.errors,
            "success_rate": successes / self.count if self.count else 0,
            "avg_duration_ms": round(self.total_ms / self.count, 2) if self.count else 0,
            "min_duration_ms": round(self.min_ms or 0.0, 2),
            "max_duration_ms": round(self.max_ms, 2),
            "last_error": self.last_error,
            "last_error_time": self.last_error_at,
        }


class MetricsCollector:
    """Per-operation timings and failures, shared across threads.

    Args:
        metrics_file: JSON file the totals persist to. Defaults to
            ~/.notekeeper/metrics.json
        auto_save_interval: Write the file every N recorded operations
            (0 disables).
    """

    def __init__(
        self,
        metrics_file: Optional[Union[str, Path]] = None,
        auto_save_interval: int = 100,
    ):
        self._lock = Lock()
        self._stats: Dict[str, OperationStats] = {}
        self._metrics_file = (
            Path(metrics_file) if metrics_file else NOTEKEEPER_HOME / "metrics.json"
        )
        self._auto_save_interval = auto_save_interval
        self._unsaved = 0
        self._load()

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            stats = self._stats.setdefault(operation, OperationStats())
            stats.add(duration_ms, failed=not success, error=error)
            self._unsaved += 1
            if self._auto_save_interval and self._unsaved >= self._auto_save_interval:
                self._write()

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every operation's totals, keyed by operation name."""
        with self._lock:
            return {name: stats.snapshot() for name, stats in self._stats.items()}

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._unsaved = 0

    def save_metrics(self) -> bool:
        """Write the totals to disk. Returns False if the write failed."""
        with self._lock:
            return self._write()

    def _load(self) -> None:
        try:
            data = json.loads(self._metrics_file.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable metrics file {self._metrics_file}: {e}")
            return
        operations = data.get("operations") if isinstance(data, dict) else None
        if not isinstance(operations, dict):
            return

        known = {f.name for f in dataclasses.fields(OperationStats)}
        for name, values in operations.items():
            if isinstance(values, dict):
                self._stats[name] = OperationStats(
                    **{k: v for k, v in values.items() if k in known}
                )
        logger.debug(f"Loaded metrics for {len(self._stats)} operations")

    def _write(self) -> bool:
        # Caller holds the lock
        document = {
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "operations": {
                name: dataclasses.asdict(stats) for name, stats in self._stats.items()
            },
        }
        temp_file = self._metrics_file.with_suffix(".tmp")
        try:
            self._metrics_file.parent.mkdir(parents=True, exist_ok=True)
            temp_file.write_text(json.dumps(document, indent=2), encoding="utf-8")
            temp_file.replace(self._metrics_file)
        except OSError as e:
            logger.error(f"Failed to save metrics to {self._metrics_file}: {e}")
            return False
        self._unsaved = 0
        return True


metrics = MetricsCollector()


def _describe(values: Dict[str, Any]) -> str:
    return ", ".join(f"{k}={v}" for k, v in values.items())


@contextmanager
def timed_operation(operation: str, **context):
    """Time a block, log it and record the outcome in ``metrics``.

    Yields a dict the block can fill with result details (record counts)
    that are appended to the END log line.

    Example:
        with timed_operation("webdav.fetch_all", kind="notes") as op:
            records = self._download(path)
            op["record_count"] = len(records)
    """
    correlation_id = uuid.uuid4().hex[:8]
    details: Dict[str, Any] = {}
    logger.debug(f"[{correlation_id}] START {operation} ({_describe(context)})")
    started = time.perf_counter()
    error: Optional[str] = None
    try:
        yield details
    except Exception as e:
        error = str(e) or type(e).__name__
        raise
    finally:
        duration_ms = (time.perf_counter() - started) * 1000
        metrics.record_operation(operation, duration_ms, error is None, error)
        status = "OK" if error is None else f"ERROR: {error}"
        logger.debug(
            f"[{correlation_id}] END {operation} ({duration_ms:.2f}ms) "
            f"[{status}] {_describe(details)}"
        )


def traced(operation_name: Optional[str] = None) -> Callable[[F], F]:
    """Run the decorated function inside :func:`timed_operation`.

    Example:
        @traced("notes.create")
        def create_note(self, title=None, ...):
            ...
    """
    def decorator(func: F) -> F:
        name = operation_name or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with timed_operation(name) as op:
                result = func(*args, **kwargs)
                if isinstance(result, (list, tuple, dict)):
                    op["result_count"] = len(result)
                return result

        return wrapper  # type: ignore
    return decorator
