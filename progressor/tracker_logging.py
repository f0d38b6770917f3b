"""Logging and observability utilities for Progressor.

Everything logs under the ``progressor`` logger tree. Structured data rides
on log records as ``extra_fields`` and is flattened into the JSON log file.
Card events fan out to in-process hooks through :class:`ObservabilityHooks`.
"""

from __future__ import annotations

import json
import time
import logging as std_logging
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Union


CARD_STARTED = "card_started"
CARD_STOPPED = "card_stopped"
CARD_COMPLETED = "card_completed"

CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s:%(lineno)d - %(message)s"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _fields(**fields: Any) -> Dict[str, Any]:
    return {"extra_fields": fields}


def setup_logging(log_level: Union[str, int] = std_logging.INFO, log_file: Optional[Path] = None) -> None:
    """Route the ``progressor`` loggers to stderr and, optionally, a JSON-lines file.

    Calling it again replaces the handlers installed by the previous call.
    """
    root = std_logging.getLogger("progressor")
    root.setLevel(log_level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = std_logging.StreamHandler()
    console.setLevel(log_level)
    console.setFormatter(std_logging.Formatter(fmt=CONSOLE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = std_logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(std_logging.DEBUG)
        file_handler.setFormatter(JsonFormatter())
        root.addHandler(file_handler)

    root.info("Progressor logging initialized", extra=_fields(log_file=str(log_file) if log_file else None))


class JsonFormatter(std_logging.Formatter):
    """One JSON object per record, with ``extra_fields`` merged in."""

    BASE_KEYS = ("timestamp", "level", "logger", "module", "function", "line", "message")

    def format(self, record: std_logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: Dict[str, Any] = dict(zip(self.BASE_KEYS, (
            created.isoformat().replace("+00:00", "Z"),
            record.levelname,
            record.name,
            record.module,
            record.funcName,
            record.lineno,
            record.getMessage(),
        )))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        payload.update(getattr(record, "extra_fields", None) or {})
        return json.dumps(payload, default=str)


class PerformanceMonitor:
    """In-memory store of timing samples keyed by metric name.

    Each metric keeps only its most recent ``max_samples`` samples.
    """

    DEFAULT_MAX_SAMPLES = 1000

    def __init__(self, max_samples: int = DEFAULT_MAX_SAMPLES):
        self.max_samples = max_samples
        self.metrics: Dict[str, Deque[Dict[str, Any]]] = {}
        self._logger = std_logging.getLogger("progressor.performance")

    def record_metric(self, name: str, value: Any, tags: Optional[Dict[str, str]] = None) -> None:
        sample = {"timestamp": _utc_now(), "name": name, "value": value, "tags": dict(tags or {})}
        self.metrics.setdefault(name, deque(maxlen=self.max_samples)).append(sample)
        self._logger.debug(f"Metric recorded: {name}={value}", extra={"extra_fields": sample})

    def get_metrics(self, name: Optional[str] = None) -> Dict[str, List[Dict[str, Any]]]:
        if name:
            return {name: list(self.metrics.get(name, []))}
        return {key: list(samples) for key, samples in self.metrics.items()}

    def summary(self, name: str) -> Dict[str, Any]:
        """Count, error count, mean and max of a metric's samples."""
        samples = self.metrics.get(name, [])
        values = [s["value"] for s in samples]
        return {
            "count": len(values),
            "errors": sum(1 for s in samples if s["tags"].get("status") == "error"),
            "mean": sum(values) / len(values) if values else 0.0,
            "max": max(values) if values else 0.0,
        }

    def clear(self) -> None:
        self.metrics.clear()


performance_monitor = PerformanceMonitor()


def log_performance(operation_name: str):
    """Time the wrapped call into ``<operation_name>_duration``; errors are re-raised."""
    metric = f"{operation_name}_duration"

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            logger = std_logging.getLogger("progressor.performance")
            started = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                elapsed = time.perf_counter() - started
                performance_monitor.record_metric(metric, elapsed, {"status": "error", "error_type": type(e).__name__})
                logger.info(
                    f"{operation_name} failed after {elapsed:.3f}s: {e}",
                    extra=_fields(operation=operation_name, duration=elapsed, status="error",
                                  error_type=type(e).__name__),
                )
                raise
            elapsed = time.perf_counter() - started
            performance_monitor.record_metric(metric, elapsed, {"status": "success"})
            logger.debug(
                f"{operation_name} took {elapsed:.3f}s",
                extra=_fields(operation=operation_name, duration=elapsed, status="success"),
            )
            return result

        return wrapper
    return decorator


@contextmanager
def log_operation(operation_name: str, **fields: Any) -> Iterator[None]:
    """Log the start, end and duration of a block under ``progressor.operations``."""
    logger = std_logging.getLogger("progressor.operations")
    logger.debug(f"Starting operation: {operation_name}", extra=_fields(operation=operation_name, status="started", **fields))
    started = time.perf_counter()
    try:
        yield
    except Exception as e:
        elapsed = time.perf_counter() - started
        logger.warning(
            f"Failed operation: {operation_name} after {elapsed:.3f}s - {e}",
            extra=_fields(operation=operation_name, status="failed", duration=elapsed,
                          error_type=type(e).__name__, error_message=str(e), **fields),
        )
        raise
    elapsed = time.perf_counter() - started
    logger.info(
        f"Completed operation: {operation_name} in {elapsed:.3f}s",
        extra=_fields(operation=operation_name, status="completed", duration=elapsed, **fields),
    )


class ObservabilityHooks:
    """Synchronous in-process event bus for card events.

    Callbacks are called with the event payload as keyword arguments. A
    failing callback is logged and does not stop the others.
    """

    def __init__(self):
        self.hooks: Dict[str, List[Callable[..., Any]]] = {}
        self.logger = std_logging.getLogger("progressor.events")

    def register_hook(self, event_type: str, callback: Callable[..., Any]) -> None:
        self.hooks.setdefault(event_type, []).append(callback)
        self.logger.debug(f"Registered hook for event: {event_type}")

    def unregister_hook(self, event_type: str, callback: Callable[..., Any]) -> None:
        callbacks = self.hooks.get(event_type, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def trigger_hooks(self, event_type: str, **data: Any) -> None:
        for hook in list(self.hooks.get(event_type, [])):
            try:
                hook(**data)
            except Exception as e:
                self.logger.error(f"Hook failed for event {event_type}: {e}", exc_info=True)

    def publish_event(self, event_type: str, **data: Any) -> None:
        """Log ``event_type`` and pass its payload plus a timestamp to the hooks."""
        payload = {"timestamp": _utc_now(), **data}
        self.logger.info(f"Tracker event: {event_type}", extra=_fields(event_type=event_type, **payload))
        self.trigger_hooks(event_type, **payload)


observability_hooks = ObservabilityHooks()


def log_error_with_context(error: Exception, context: Dict[str, Any], **extra_fields: Any) -> None:
    """Log ``error`` with its traceback and the operation context that produced it."""
    logger = std_logging.getLogger("progressor.errors")
    operation = context.get("operation", "unknown operation")
    logger.error(
        f"Error in {operation}: {error}",
        extra=_fields(
            timestamp=_utc_now(),
            error_type=type(error).__name__,
            error_message=str(error),
            context=context,
            **extra_fields,
        ),
        exc_info=error,
    )


def log_anomaly(kind: str, **fields: Any) -> None:
    """Warn about data that was skipped instead of failing a computation."""
    std_logging.getLogger("progressor.anomalies").warning(
        f"Anomaly detected: {kind}",
        extra=_fields(anomaly=kind, timestamp=_utc_now(), **fields),
    )
