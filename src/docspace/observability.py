"""Logging setup and operation metrics for the Docspace workspace core.

Every workspace operation (open, write, search, reconciliation, git
exchange) runs inside :func:`timed_operation`, which logs a start/end
pair under one correlation ID and feeds the process-wide
:data:`metrics` collector. The collector is saved to disk on shutdown.
"""
import functools
import json
import logging
import time
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

DOCSPACE_HOME = Path.home() / ".docspace"
DEFAULT_LOG_DIR = DOCSPACE_HOME / "logs"
DEFAULT_METRICS_FILE = DOCSPACE_HOME / "metrics.json"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

# Operations slower than this are logged at WARNING (full rebuilds of large trees)
SLOW_OPERATION_MS = 2000.0

F = TypeVar('F', bound=Callable[..., Any])


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console: bool = True,
) -> Path:
    """Send the ``docspace`` logger hierarchy to a rotating file.

    Calling this twice for the same directory does not attach a second
    file handler.

    Args:
        log_dir: Directory for ``docspace.log``. Defaults to ~/.docspace/logs/
        level: Logging level for the hierarchy and its handlers
        max_bytes: Size at which the file is rotated
        backup_count: Rotated files to keep
        console: Also attach a stderr handler

    Returns:
        The log directory.
    """
    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = log_path / "docspace.log"

    package_logger = logging.getLogger("docspace")
    package_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    has_file = any(
        isinstance(h, RotatingFileHandler) and Path(h.baseFilename) == log_file.resolve()
        for h in package_logger.handlers
    )
    if not has_file:
        file_handler = RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    has_console = any(
        type(h) is logging.StreamHandler for h in package_logger.handlers
    )
    if console and not has_console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        package_logger.addHandler(console_handler)

    package_logger.info(f"Logging to {log_file} (rotate at {max_bytes} bytes, keep {backup_count})")
    return log_path


@dataclass
class OperationStats:
    """Running totals for one operation name."""
    count: int = 0
    errors: int = 0
    total_ms: float = 0.0
    min_ms: Optional[float] = None
    max_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    def record(self, duration_ms: float, error: Optional[str]) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = duration_ms if self.min_ms is None else min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)
        if error is not None:
            self.errors += 1
            self.last_error = error[:200]
            self.last_error_at = datetime.now(timezone.utc)

    def snapshot(self) -> Dict[str, Any]:
        successes = self.count - self.errors
        return {
            'count': self.count,
            'success_count': successes,
            'error_count': self.errors,
            'success_rate': successes / self.count if self.count else 0,
            'avg_duration_ms': round(self.total_ms / self.count, 2) if self.count else 0,
            'min_duration_ms': round(self.min_ms or 0.0, 2),
            'max_duration_ms': round(self.max_ms, 2),
            'last_error': self.last_error,
            'last_error_time': self.last_error_at.isoformat() if self.last_error_at else None,
        }


class MetricsCollector:
    """Thread-safe per-operation timing and error counts."""

    def __init__(self, metrics_file: Optional[Union[str, Path]] = None):
        self._stats: Dict[str, OperationStats] = defaultdict(OperationStats)
        self._lock = Lock()
        self._started = datetime.now(timezone.utc)
        self._metrics_file = Path(metrics_file) if metrics_file else DEFAULT_METRICS_FILE

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None
    ) -> None:
        """Add one run of ``operation`` to its totals."""
        if not success and error is None:
            error = "unknown error"
        with self._lock:
            self._stats[operation].record(duration_ms, None if success else error)

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every operation seen so far, keyed by name."""
        with self._lock:
            return {name: stats.snapshot() for name, stats in self._stats.items()}

    def get_summary(self) -> Dict[str, Any]:
        """Totals across all operations plus the per-operation snapshot."""
        operations = self.get_metrics()
        total = sum(op['count'] for op in operations.values())
        errors = sum(op['error_count'] for op in operations.values())
        uptime = datetime.now(timezone.utc) - self._started
        return {
            'uptime_seconds': round(uptime.total_seconds(), 1),
            'total_operations': total,
            'total_errors': errors,
            'operations': operations,
        }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._started = datetime.now(timezone.utc)

    def save_metrics(self) -> bool:
        """Write the summary to the metrics file.

        Returns:
            False if the file could not be written.
        """
        data = {
            "start_time": self._started.isoformat(),
            "saved_at": datetime.now(timezone.utc).isoformat(),
            **self.get_summary(),
        }
        temp_file = self._metrics_file.with_suffix(".tmp")
        try:
            self._metrics_file.parent.mkdir(parents=True, exist_ok=True)
            temp_file.write_text(json.dumps(data, indent=2), encoding="utf-8")
            temp_file.replace(self._metrics_file)
        except (OSError, TypeError) as e:
            logger.error(f"Failed to save metrics to {self._metrics_file}: {e}")
            return False
        return True


metrics = MetricsCollector()


@contextmanager
def timed_operation(operation: str, **context):
    """Time a block, log it, and record it in :data:`metrics`.

    The yielded dict collects result details that are appended to the
    end-of-operation log line::

        with timed_operation("search", query=q) as op:
            results = index.search(q)
            op["result_count"] = len(results)
    """
    correlation_id = uuid.uuid4().hex[:8]
    details: Dict[str, Any] = {}
    described = ', '.join(f'{k}={v}' for k, v in context.items())
    logger.debug(f"[{correlation_id}] START {operation} ({described})")

    error: Optional[str] = None
    started = time.perf_counter()
    try:
        yield details
    except Exception as e:
        error = str(e) or type(e).__name__
        raise
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        metrics.record_operation(operation, elapsed_ms, error is None, error)

        outcome = 'OK' if error is None else f'ERROR: {error}'
        extra = ', '.join(f'{k}={v}' for k, v in details.items())
        message = f"[{correlation_id}] END {operation} ({elapsed_ms:.2f}ms) [{outcome}] {extra}"
        if elapsed_ms > SLOW_OPERATION_MS:
            logger.warning(f"Slow operation: {message}")
        else:
            logger.debug(message)


def traced(operation_name: Optional[str] = None) -> Callable[[F], F]:
    """Run a method inside :func:`timed_operation`.

    A ``path`` keyword, or a string first argument after ``self``, is
    logged as the operation's path.
    """
    def decorator(func: F) -> F:
        name = operation_name or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            context = {}
            if 'path' in kwargs:
                context['path'] = kwargs['path']
            elif len(args) > 1 and isinstance(args[1], str):
                context['path'] = args[1]

            with timed_operation(name, **context) as op:
                result = func(*args, **kwargs)
                if isinstance(result, (list, tuple, dict)):
                    op['result_count'] = len(result)
                return result

        return wrapper  # type: ignore
    return decorator
