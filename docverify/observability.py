"""
Observability: logging, request context, metrics and health.

Logging goes through the standard library. Every record picks up the
current request id and organization id from context variables, so
core modules can keep using logging.getLogger(__name__).

CONFIGURATION:
- DOCVERIFY_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- DOCVERIFY_LOG_FORMAT: json | text (default: json in production, text otherwise)
- DOCVERIFY_PRODUCTION: Enable production mode

Usage:
    from docverify.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Anchor confirmed", tx_ref=tx_ref, block=block)
"""

import json
import logging
import os
import sys
import threading
import time
import uuid
from collections import Counter, deque
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
organization_id_var: ContextVar[str] = ContextVar("organization_id", default="")

# Attributes every LogRecord carries; anything else came in through `extra`.
_STANDARD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


# ============================================================
# CONFIGURATION
# ============================================================

def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


@dataclass
class LogSettings:
    """Logging configuration."""
    level: int = logging.INFO
    json_format: bool = False

    @classmethod
    def from_env(cls) -> "LogSettings":
        """Load configuration from environment variables."""
        level = logging.getLevelName(os.environ.get("DOCVERIFY_LOG_LEVEL", "INFO").upper())
        fmt = os.environ.get("DOCVERIFY_LOG_FORMAT", "").lower()
        return cls(
            level=level if isinstance(level, int) else logging.INFO,
            json_format=fmt == "json" or (fmt != "text" and _env_flag("DOCVERIFY_PRODUCTION")),
        )


# ============================================================
# LOGGING
# ============================================================

def _context_fields() -> Dict[str, str]:
    fields = {}
    if request_id_var.get():
        fields["request_id"] = request_id_var.get()
    if organization_id_var.get():
        fields["organization_id"] = organization_id_var.get()
    return fields


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line:

        {"timestamp": "...", "level": "INFO", "logger": "docverify.core.sync",
         "message": "...", "request_id": "...", "organization_id": "...", ...}

    Keyword fields passed to a ContextLogger are included at the top level.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context_fields(),
        }
        entry.update(
            (key, _jsonable(value))
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    def format(self, record: logging.LogRecord) -> str:
        when = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%H:%M:%S")
        context = _context_fields()
        tag = f"[{context['request_id'][:8]}] " if "request_id" in context else ""
        line = f"{when} {record.levelname:<7} {tag}{record.name}: {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class ContextLogger(logging.LoggerAdapter):
    """Adapter that turns keyword arguments into structured fields."""

    _PASSTHROUGH = ("exc_info", "stack_info", "stacklevel", "extra")

    def process(self, msg, kwargs):
        fields = {k: kwargs.pop(k) for k in list(kwargs) if k not in self._PASSTHROUGH}
        kwargs["extra"] = {**kwargs.get("extra", {}), **fields}
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), {})


def setup_logging(settings: Optional[LogSettings] = None) -> None:
    """Install a single stdout handler on the root logger. Safe to call twice."""
    settings = settings or LogSettings.from_env()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter() if settings.json_format else TextFormatter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(settings.level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Tags each request with an id (echoing X-Request-ID when sent), logs
    the outcome with its duration and feeds the request metrics.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        request_id_var.set(request_id)
        logger = get_logger("docverify.request")
        route = f"{request.method} {request.url.path}"
        started = time.perf_counter()

        try:
            response = await call_next(request)
            elapsed = (time.perf_counter() - started) * 1000
            get_metrics().record_request(elapsed, success=response.status_code < 500)
            logger.log(
                logging.INFO if response.status_code < 400 else logging.WARNING,
                f"{route} -> {response.status_code}",
                status_code=response.status_code,
                duration_ms=round(elapsed, 2),
            )
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception:
            elapsed = (time.perf_counter() - started) * 1000
            get_metrics().record_request(elapsed, success=False)
            logger.exception(f"{route} -> 500", status_code=500, duration_ms=round(elapsed, 2))
            raise
        finally:
            request_id_var.set("")
            organization_id_var.set("")


# ============================================================
# METRICS
# ============================================================

class LatencyWindow:
    """The most recent latency samples, for percentiles."""

    def __init__(self, size: int = 1000):
        self._samples: deque = deque(maxlen=size)

    def add(self, value_ms: float) -> None:
        self._samples.append(value_ms)

    def clear(self) -> None:
        self._samples.clear()

    def percentile(self, p: float) -> Optional[float]:
        if not self._samples:
            return None
        ordered = sorted(self._samples)
        return ordered[min(int(len(ordered) * p), len(ordered) - 1)]


class MetricsCollector:
    """
    In-process counters and latency windows.

    Written from request threads and both sync listeners; every access
    holds the lock.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.submissions: Counter = Counter()
        self.events: Counter = Counter()
        self.requests: Counter = Counter()
        self.anchor_latency = LatencyWindow()
        self.request_latency = LatencyWindow()

    def record_submission(self, outcome: str) -> None:
        """Count a write-path outcome: verified, rejected, pending, failed, duplicate."""
        with self._lock:
            self.submissions[outcome] += 1

    def record_anchor(self, latency_ms: float) -> None:
        with self._lock:
            self.anchor_latency.add(latency_ms)

    def record_event(self, outcome: str) -> None:
        """Count an ingested event: appended, duplicate, skipped, failed."""
        with self._lock:
            self.events[outcome] += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.requests["total"] += 1
            if not success:
                self.requests["failed"] += 1
            self.request_latency.add(latency_ms)

    def reset(self) -> None:
        with self._lock:
            for counter in (self.submissions, self.events, self.requests):
                counter.clear()
            self.anchor_latency.clear()
            self.request_latency.clear()

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            summary: Dict[str, Any] = {
                "submissions": dict(self.submissions),
                "requests_total": self.requests["total"],
                "requests_failed": self.requests["failed"],
            }
            for outcome in ("appended", "duplicate", "skipped", "failed"):
                summary[f"events_{outcome}"] = self.events[outcome]
            for p in (50, 95, 99):
                summary[f"anchor_latency_p{p}_ms"] = self.anchor_latency.percentile(p / 100)
            for p in (50, 95):
                summary[f"request_latency_p{p}_ms"] = self.request_latency.percentile(p / 100)
            return summary


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """The process-wide metrics collector."""
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def _check_store(store) -> Dict[str, Any]:
    try:
        return {"status": "healthy", **store.ping()}
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}


def _check_sync(sync_engine) -> Dict[str, Any]:
    """Any checkpoint that is not active (or not yet written) degrades the service."""
    try:
        status = sync_engine.get_sync_status()
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}
    lagging = sorted(
        source for source, info in status["sources"].items()
        if info.get("checkpoint_status") not in (None, "active")
    )
    return {"status": "degraded" if lagging else "healthy", "lagging": lagging, **status}


def check_health(store=None, sync_engine=None) -> HealthStatus:
    """
    Run the health checks for whichever components are given.

    Returns:
        HealthStatus; healthy only if every check reports "healthy"
    """
    started = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}
    if store is not None:
        checks["store"] = _check_store(store)
    if sync_engine is not None:
        checks["sync"] = _check_sync(sync_engine)

    return HealthStatus(
        healthy=all(check["status"] == "healthy" for check in checks.values()),
        checks=checks,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
