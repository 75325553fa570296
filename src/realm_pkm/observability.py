"""Observability for the Realm PKM service.

Request ids, per-operation timing and error-code counters, and the
rotating log setup used by the server entry point.
"""
import functools
import json
import logging
import time
import uuid
from collections import Counter, defaultdict
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

DEFAULT_LOG_DIR = Path.home() / ".realm" / "logs"
DEFAULT_METRICS_FILE = Path.home() / ".realm" / "metrics.json"

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(request_id)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

ROOT_LOGGER_NAME = "realm_pkm"

# Keyword arguments echoed into trace lines. Never add secrets here.
_TRACE_CONTEXT_KEYS = ("note_id", "user_id", "link_id", "source_id", "target_id")

F = TypeVar('F', bound=Callable[..., Any])

request_id_var: ContextVar[Optional[str]] = ContextVar("realm_request_id", default=None)


def new_request_id() -> str:
    return uuid.uuid4().hex[:12]


def current_request_id() -> Optional[str]:
    """Id of the HTTP request being served, if any."""
    return request_id_var.get()


class RequestIdFilter(logging.Filter):
    """Stamp every record with the active request id ("-" outside requests)."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get() or "-"
        return True


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console: bool = True,
) -> Path:
    """Attach rotating file and console handlers to the ``realm_pkm`` logger.

    Handlers are only added once, so calling this again (tests, reloads)
    just adjusts the level.

    Args:
        log_dir: Directory for ``realm.log``. Defaults to ~/.realm/logs/
        level: Logging level for the package logger and its handlers
        max_bytes: Size at which ``realm.log`` rotates
        backup_count: Number of rotated files kept
        console: Also log to stderr

    Returns:
        The log directory
    """
    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)

    package_logger = logging.getLogger(ROOT_LOGGER_NAME)
    package_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    handlers = package_logger.handlers

    log_file = log_path / "realm.log"
    if not any(isinstance(h, RotatingFileHandler) for h in handlers):
        file_handler = RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        file_handler.addFilter(RequestIdFilter())
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    has_console = any(type(h) is logging.StreamHandler for h in handlers)
    if console and not has_console:
        console_handler = logging.StreamHandler()
        console_handler.addFilter(RequestIdFilter())
        console_handler.setFormatter(formatter)
        package_logger.addHandler(console_handler)

    for handler in package_logger.handlers:
        handler.setLevel(level)

    package_logger.info(f"Logging to {log_file} (rotating at {max_bytes} bytes, {backup_count} kept)")
    return log_path


@dataclass
class OperationStats:
    """Running totals for one named operation."""
    count: int = 0
    errors: int = 0
    total_ms: float = 0.0
    fastest_ms: Optional[float] = None
    slowest_ms: float = 0.0
    error_codes: Counter = field(default_factory=Counter)
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    def observe(self, duration_ms: float, error: Optional[str], error_code: Optional[str]) -> None:
        self.count += 1
        self.total_ms += duration_ms
        if self.fastest_ms is None or duration_ms < self.fastest_ms:
            self.fastest_ms = duration_ms
        self.slowest_ms = max(self.slowest_ms, duration_ms)
        if error is not None:
            self.errors += 1
            self.last_error = error
            self.last_error_at = datetime.now(timezone.utc)
            self.error_codes[error_code or "UNCLASSIFIED"] += 1

    @property
    def successes(self) -> int:
        return self.count - self.errors

    def snapshot(self) -> Dict[str, Any]:
        avg = self.total_ms / self.count if self.count else 0.0
        return {
            'count': self.count,
            'success_count': self.successes,
            'error_count': self.errors,
            'success_rate': self.successes / self.count if self.count else 0,
            'avg_duration_ms': round(avg, 2),
            'min_duration_ms': round(self.fastest_ms or 0.0, 2),
            'max_duration_ms': round(self.slowest_ms, 2),
            'error_codes': dict(self.error_codes),
            'last_error': self.last_error,
            'last_error_time': self.last_error_at.isoformat() if self.last_error_at else None,
        }


class MetricsCollector:
    """Thread-safe operation metrics, periodically flushed to a JSON file."""

    def __init__(
        self,
        metrics_file: Optional[Union[str, Path]] = None,
        auto_save_interval: int = 100,
    ):
        """
        Args:
            metrics_file: Where snapshots are written. Defaults to ~/.realm/metrics.json
            auto_save_interval: Flush after this many operations (0 disables)
        """
        self._stats: Dict[str, OperationStats] = defaultdict(OperationStats)
        self._lock = Lock()
        self._started = datetime.now(timezone.utc)
        self._metrics_file = Path(metrics_file) if metrics_file else DEFAULT_METRICS_FILE
        self._auto_save_interval = auto_save_interval
        self._unsaved = 0

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> None:
        """Count one run of ``operation``; failures keep their message and code."""
        with self._lock:
            failure = None if success else (error or "unknown error")
            self._stats[operation].observe(duration_ms, failure, error_code)
            self._unsaved += 1
            if self._auto_save_interval > 0 and self._unsaved >= self._auto_save_interval:
                self._write_unlocked()

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {name: stats.snapshot() for name, stats in self._stats.items()}

    def get_summary(self) -> Dict[str, Any]:
        """Totals across all operations, used by the health endpoint."""
        with self._lock:
            total = sum(s.count for s in self._stats.values())
            errors = sum(s.errors for s in self._stats.values())
            codes: Counter = Counter()
            for stats in self._stats.values():
                codes.update(stats.error_codes)
            return {
                'uptime_seconds': (datetime.now(timezone.utc) - self._started).total_seconds(),
                'total_operations': total,
                'total_success': total - errors,
                'total_errors': errors,
                'overall_success_rate': (total - errors) / total if total else 1.0,
                'error_codes': dict(codes),
                'operations_tracked': list(self._stats),
            }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._started = datetime.now(timezone.utc)
            self._unsaved = 0

    def _write_unlocked(self) -> bool:
        payload = {
            "start_time": self._started.isoformat(),
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "operations": {name: stats.snapshot() for name, stats in self._stats.items()},
        }
        try:
            self._metrics_file.parent.mkdir(parents=True, exist_ok=True)
            temp_file = self._metrics_file.with_suffix(".tmp")
            temp_file.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            temp_file.replace(self._metrics_file)
        except OSError as e:
            logger.error(f"Failed to save metrics to {self._metrics_file}: {e}")
            return False
        self._unsaved = 0
        return True

    def save_metrics(self) -> bool:
        with self._lock:
            return self._write_unlocked()

    def get_metrics_file(self) -> Path:
        return self._metrics_file


metrics = MetricsCollector()


def _error_code_of(exc: BaseException) -> Optional[str]:
    code = getattr(exc, "code", None)
    if code is None:
        return type(exc).__name__
    return getattr(code, "name", str(code))


@contextmanager
def timed_operation(operation: str, **context) -> Iterator[Dict[str, Any]]:
    """Time a block, log START/END lines and record the outcome in ``metrics``.

    Inside an HTTP request the request id tags the log lines; otherwise a
    fresh short id is used. The yielded dict collects result details that
    are appended to the END line.

    Example:
        with timed_operation('search', user_id=user_id) as op:
            hits = run_search()
            op['result_count'] = len(hits)
    """
    trace_id = current_request_id() or new_request_id()[:8]
    details: Dict[str, Any] = {}
    context_str = ', '.join(f'{k}={v}' for k, v in context.items())
    logger.debug(f"[{trace_id}] START {operation} ({context_str})")

    started = time.perf_counter()
    failure: Optional[BaseException] = None
    try:
        yield details
    except Exception as e:
        failure = e
        raise
    finally:
        duration_ms = (time.perf_counter() - started) * 1000
        if failure is None:
            metrics.record_operation(operation, duration_ms, True)
            outcome = 'OK'
        else:
            code = _error_code_of(failure)
            metrics.record_operation(operation, duration_ms, False, str(failure), code)
            outcome = f'ERROR {code}: {failure}'
        detail_str = ', '.join(f'{k}={v}' for k, v in details.items())
        logger.debug(f"[{trace_id}] END {operation} ({duration_ms:.2f}ms) [{outcome}] {detail_str}")


def traced(operation_name: Optional[str] = None) -> Callable[[F], F]:
    """Wrap a service method in :func:`timed_operation`.

    Args:
        operation_name: Metric name; defaults to the function name.
    """
    def decorator(func: F) -> F:
        op_name = operation_name or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            context = {k: kwargs[k] for k in _TRACE_CONTEXT_KEYS if k in kwargs}
            with timed_operation(op_name, **context) as op:
                result = func(*args, **kwargs)
                if isinstance(result, (list, tuple, dict, set)):
                    op['result_count'] = len(result)
                elif result is not None:
                    op['has_result'] = True
                return result

        return wrapper  # type: ignore
    return decorator
