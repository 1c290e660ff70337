"""
Logging, sync run ids and timing metrics for salesync.

Usage:
    from salesync.observability import setup_logging, get_logger, sync_context

    # At process start:
    setup_logging()

    # In modules:
    logger = get_logger(__name__)

    # Around one orchestration run:
    with sync_context() as run_id:
        logger.info("Syncing brand", extra={"brand": "kivos"})
"""
import asyncio
import functools
import json
import logging
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

# Run id shared by every log line emitted inside one sync/KPI run
_run_id: ContextVar[Optional[str]] = ContextVar("run_id", default=None)

_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "asctime", "taskName",
}


def get_run_id() -> Optional[str]:
    """Get the current sync run id from context."""
    return _run_id.get()


def generate_run_id() -> str:
    """Generate a short run id."""
    return str(uuid.uuid4())[:8]


class sync_context:
    """Context manager binding a run id to everything logged inside it."""

    def __init__(self, run_id: Optional[str] = None):
        self.run_id = run_id or generate_run_id()
        self.token = None

    def __enter__(self) -> str:
        self.token = _run_id.set(self.run_id)
        return self.run_id

    def __exit__(self, *args):
        _run_id.reset(self.token)


def _extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        k: v for k, v in record.__dict__.items()
        if k not in _STANDARD_ATTRS and not k.startswith("_")
    }


class StructuredFormatter(logging.Formatter):
    """JSON formatter: timestamp, level, logger, message, run_id and extras."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        run_id = get_run_id()
        if run_id:
            log_entry["run_id"] = run_id

        log_entry.update(_extras(record))

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Plain formatter.

    Format: TIMESTAMP - LEVEL - LOGGER [RUN_ID] - MESSAGE | {extras}
    """

    def format(self, record: logging.LogRecord) -> str:
        run_id = get_run_id()
        run_str = f" [{run_id}]" if run_id else ""
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        base_msg = f"{timestamp} - {record.levelname:8} - {record.name}{run_str} - {record.getMessage()}"

        extras = _extras(record)
        if extras:
            base_msg += f" | {extras}"

        if record.exc_info:
            base_msg += f"\n{self.formatException(record.exc_info)}"

        return base_msg


def setup_logging(level: str = "INFO", json_format: bool = False) -> None:
    """
    Configure the root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ...)
        json_format: Emit JSON lines instead of human-readable text
    """
    formatter = StructuredFormatter() if json_format else HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper()))

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(name)


# ═══════════════════════════════════════════════════════════════════════════════
# TIMING
# ═══════════════════════════════════════════════════════════════════════════════

class Timer:
    """
    Context manager for timing a block.

    Usage:
        with Timer("replicate_products", logger) as t:
            result = await replicator.replicate("products", watermark)
        metrics.record_timing("replicate", t.elapsed_ms)
    """

    def __init__(self, name: str, logger: Optional[logging.Logger] = None,
                 warn_threshold_ms: float = 1000):
        self.name = name
        self.logger = logger
        self.warn_threshold_ms = warn_threshold_ms
        self.start_time: float = 0
        self.elapsed_ms: float = 0

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.elapsed_ms = (time.perf_counter() - self.start_time) * 1000

        if self.logger:
            level = logging.WARNING if self.elapsed_ms > self.warn_threshold_ms else logging.DEBUG
            self.logger.log(
                level,
                f"{self.name} completed",
                extra={"duration_ms": round(self.elapsed_ms, 2)}
            )


def timed(name: Optional[str] = None, warn_threshold_ms: float = 1000):
    """Decorator logging how long an async function took."""
    def decorator(func: Callable) -> Callable:
        operation_name = name or func.__name__
        func_logger = get_logger(func.__module__)

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            finally:
                elapsed_ms = (time.perf_counter() - start) * 1000
                level = logging.WARNING if elapsed_ms > warn_threshold_ms else logging.DEBUG
                func_logger.log(
                    level,
                    f"{operation_name} completed",
                    extra={"duration_ms": round(elapsed_ms, 2)}
                )
                metrics.record_timing(operation_name, elapsed_ms)

        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"timed() expects a coroutine function, got {func!r}")
        return wrapper

    return decorator


# ═══════════════════════════════════════════════════════════════════════════════
# METRICS COLLECTOR
# ═══════════════════════════════════════════════════════════════════════════════

class MetricsCollector:
    """
    In-memory counters and timing samples.

    Tracks sync outcomes per collection, cache hits/misses and durations.
    """

    def __init__(self, max_samples: int = 100):
        self._counters: Dict[str, int] = {}
        self._timing_samples: Dict[str, list] = {}
        self._max_samples = max_samples

    def increment(self, name: str, amount: int = 1) -> None:
        self._counters[name] = self._counters.get(name, 0) + amount

    def record_timing(self, operation: str, duration_ms: float) -> None:
        samples = self._timing_samples.setdefault(operation, [])
        samples.append(duration_ms)
        if len(samples) > self._max_samples:
            self._timing_samples[operation] = samples[-self._max_samples:]

    def get_stats(self) -> Dict[str, Any]:
        """Snapshot of counters and timing summaries."""
        stats = {"counters": dict(self._counters), "timing": {}}

        for operation, samples in self._timing_samples.items():
            if samples:
                sorted_samples = sorted(samples)
                stats["timing"][operation] = {
                    "count": len(samples),
                    "avg_ms": round(sum(samples) / len(samples), 2),
                    "min_ms": round(sorted_samples[0], 2),
                    "max_ms": round(sorted_samples[-1], 2),
                    "p50_ms": round(sorted_samples[len(sorted_samples) // 2], 2),
                }

        return stats

    def reset(self) -> None:
        self._counters.clear()
        self._timing_samples.clear()


# Global metrics instance
metrics = MetricsCollector()
