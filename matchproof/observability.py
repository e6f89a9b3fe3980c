"""
Logging, metrics and health checks.

Logs are JSON lines in production and one readable line per record
otherwise; MATCHPROOF_LOG_FORMAT forces either. Records written while an
HTTP request is in flight carry that request's id.

Environment:
- MATCHPROOF_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- MATCHPROOF_LOG_FORMAT: json, text
- MATCHPROOF_PRODUCTION: json logs unless the format is forced

Usage:
    logger = get_logger(__name__)
    logger.info("Anchored match", match_id=match_id, transaction_id=tx_id)
"""

import json
import logging
import os
import sys
import time
import uuid
from collections import Counter, deque
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from .storage import PENDING_STATE_KEY

request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Attributes present on every LogRecord; anything else is a keyword field
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}
_LOGGING_KWARGS = frozenset(("exc_info", "stack_info", "stacklevel", "extra"))
_QUIET_LOGGERS = ("uvicorn.access", "httpx")


@dataclass(frozen=True)
class LogSettings:
    level: int = logging.INFO
    json_output: bool = False

    @classmethod
    def from_env(cls) -> "LogSettings":
        level = logging.getLevelName(os.environ.get("MATCHPROOF_LOG_LEVEL", "INFO").upper())
        log_format = os.environ.get("MATCHPROOF_LOG_FORMAT", "").lower()
        production = os.environ.get("MATCHPROOF_PRODUCTION", "").lower() in ("1", "true", "yes")
        return cls(
            level=level if isinstance(level, int) else logging.INFO,
            json_output=log_format == "json" or (log_format != "text" and production),
        )


def _fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per record.

        {"timestamp": "2025-01-15T10:30:00.123000+00:00", "level": "INFO",
         "logger": "matchproof.api.routes", "message": "Batch flushed",
         "request_id": "3f9c2a1b", "batch_id": "batch-...", "match_count": 12}

    Values json cannot encode are written as their str().
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = request_id_var.get()
        if request_id:
            entry["request_id"] = request_id
        entry.update(_fields(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """`12:30:00 INFO     [3f9c2a1b] logger: message key=value` for terminals."""

    def format(self, record: logging.LogRecord) -> str:
        parts = [time.strftime("%H:%M:%S", time.gmtime(record.created)), f"{record.levelname:<8}"]
        request_id = request_id_var.get()
        if request_id:
            parts.append(f"[{request_id[:8]}]")
        parts.append(f"{record.name}: {record.getMessage()}")
        parts.extend(f"{key}={value}" for key, value in _fields(record).items())

        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """
    Adapter that turns keyword arguments into record fields.

        logger.info("Batch flushed", batch_id=batch_id, match_count=12)
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        fields = {key: kwargs.pop(key) for key in list(kwargs) if key not in _LOGGING_KWARGS}
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {}), **fields}
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), {})


def setup_logging(stream=None, settings: Optional[LogSettings] = None) -> None:
    """
    Replace the root handlers with one stream handler.

    The CLI passes stderr so stdout carries only command output.
    """
    settings = settings or LogSettings.from_env()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredFormatter() if settings.json_output else TextFormatter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(settings.level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


_request_logger = get_logger("matchproof.request")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds a request id for the duration of each request.

    The id comes from the X-Request-ID header when the caller sends one and
    is echoed back on the response. Every request is logged and counted.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        token = request_id_var.set(request_id)
        started = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception as e:
            _request_logger.exception(
                f"{request.method} {request.url.path} raised",
                error=str(e),
            )
            raise
        finally:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            _request_logger.log(
                logging.INFO if status_code < 400 else logging.WARNING,
                f"{request.method} {request.url.path} -> {status_code}",
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_ms=duration_ms,
            )
            get_metrics().record_request(duration_ms, status_code < 500)
            request_id_var.reset(token)


LATENCY_SAMPLES = 1000

_COUNTERS = (
    "anchors_submitted",
    "anchors_failed",
    "transaction_retries",
    "verifications_passed",
    "verifications_failed",
    "batches_flushed",
    "matches_batched",
    "requests_total",
    "requests_failed",
)


def _percentile(samples, fraction: float) -> Optional[float]:
    if not samples:
        return None
    ordered = sorted(samples)
    return round(ordered[min(int(len(ordered) * fraction), len(ordered) - 1)], 2)


class MetricsCollector:
    """
    In-process counters and latency samples served by /api/metrics.

    Only the most recent LATENCY_SAMPLES latencies of each kind are kept.
    """

    def __init__(self):
        self._lock = Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._counts: Counter = Counter()
            self._latencies = {
                "anchor": deque(maxlen=LATENCY_SAMPLES),
                "request": deque(maxlen=LATENCY_SAMPLES),
            }

    def record_anchor(self, latency_ms: float, success: bool, attempts: int = 1) -> None:
        """One anchor submission, direct or batch."""
        with self._lock:
            self._counts["anchors_submitted" if success else "anchors_failed"] += 1
            self._counts["transaction_retries"] += max(attempts - 1, 0)
            if success:
                self._latencies["anchor"].append(latency_ms)

    def record_verification(self, is_valid: bool) -> None:
        with self._lock:
            self._counts["verifications_passed" if is_valid else "verifications_failed"] += 1

    def record_batch(self, match_count: int) -> None:
        with self._lock:
            self._counts["batches_flushed"] += 1
            self._counts["matches_batched"] += match_count

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self._counts["requests_total"] += 1
            if not success:
                self._counts["requests_failed"] += 1
            self._latencies["request"].append(latency_ms)

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            summary: Dict[str, Any] = {name: self._counts[name] for name in _COUNTERS}
            for kind, samples in self._latencies.items():
                summary[f"{kind}_latency_p50_ms"] = _percentile(samples, 0.5)
                summary[f"{kind}_latency_p95_ms"] = _percentile(samples, 0.95)
        return summary


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    return _metrics


@dataclass
class HealthStatus:
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


async def _check_store(store) -> Dict[str, Any]:
    backend = type(store).__name__
    try:
        await store.exists(PENDING_STATE_KEY)
    except Exception as e:
        return {"status": "unhealthy", "backend": backend, "error": str(e)}
    return {"status": "healthy", "backend": backend}


def _check_circuit(circuit_breaker) -> Dict[str, Any]:
    status = circuit_breaker.get_status()
    # Open only pauses anchoring; reads and verification keep working
    return {"status": "degraded" if status["state"] == "open" else "healthy", **status}


async def check_health(store=None, batch_manager=None, circuit_breaker=None) -> HealthStatus:
    """
    Check whichever components are passed.

    Only an unreachable object store makes the service unhealthy.
    """
    started = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}

    if store is not None:
        checks["object_store"] = await _check_store(store)
    if batch_manager is not None:
        checks["batch_manager"] = {
            "status": "healthy",
            "pending": batch_manager.pending_count,
            "state": batch_manager.state.value,
        }
    if circuit_breaker is not None:
        checks["ledger_circuit"] = _check_circuit(circuit_breaker)

    return HealthStatus(
        healthy=all(check["status"] != "unhealthy" for check in checks.values()),
        checks=checks,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
