"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with request IDs
- Request/response logging middleware
- Ledger metrics (appends, races, retries, failures, repairs, latency)
- Health check utilities

Configuration:
- BLOCKLOG_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- BLOCKLOG_LOG_FORMAT: json, text (default: json in production)
- BLOCKLOG_PRODUCTION: Enable production mode

Usage:
    from blocklog.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Entry appended", sequence_id=42, action="domain_register")
"""

import json
import logging
import os
import sys
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

# Context variables for request tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


# ============================================================
# CONFIGURATION
# ============================================================

def is_production() -> bool:
    return os.environ.get("BLOCKLOG_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("BLOCKLOG_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("BLOCKLOG_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

_STANDARD_RECORD_FIELDS = frozenset((
    "name", "msg", "args", "created", "levelname", "levelno",
    "pathname", "filename", "module", "lineno", "funcName",
    "exc_info", "exc_text", "stack_info", "message", "msecs",
    "relativeCreated", "thread", "threadName", "processName",
    "process", "taskName",
))


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2024-01-15T10:30:00.000Z",
        "level": "WARNING",
        "logger": "blocklog.core.coordinator",
        "message": "Append race detected",
        "request_id": "abc-123",
        "sequence_id": 42,
        ...extra fields...
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _STANDARD_RECORD_FIELDS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = str(value)

        return json.dumps(log_data)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    def format(self, record: logging.LogRecord) -> str:
        prefix = ""
        request_id = request_id_var.get()
        if request_id:
            prefix = f"[{request_id[:8]}] "

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        msg = f"{timestamp} {record.levelname:8} {prefix}{record.name}: {record.getMessage()}"

        # Structured extras, inline
        extras = [
            f"{key}={value}"
            for key, value in record.__dict__.items()
            if key not in _STANDARD_RECORD_FIELDS and not key.startswith("_")
        ]
        if extras:
            msg += " (" + ", ".join(extras) + ")"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that turns keyword arguments into structured fields.

    Usage:
        logger = get_logger(__name__)
        logger.warning("Append race detected", sequence_id=7, attempt=2)
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(kwargs.get("extra") or {})

        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                extra[key] = kwargs.pop(key)

        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """
    Get a structured logger for the given name.

    Args:
        name: Logger name (typically __name__)
    """
    return ContextLogger(logging.getLogger(name), {})


def setup_logging() -> None:
    """
    Configure logging for the application.

    Call this once at application (or CLI) startup.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(_get_log_level())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # stderr keeps CLI stdout clean for JSON output
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(_get_log_level())

    if _use_json_logging():
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root_logger.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that sets up request context for logging.

    Features:
    - Generates unique request ID for each request
    - Logs request/response with timing
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        token = request_id_var.set(request_id)

        logger = get_logger("blocklog.request")
        metrics = get_metrics()
        start_time = time.perf_counter()

        logger.debug(
            f"{request.method} {request.url.path}",
            method=request.method,
            path=request.url.path,
            query=str(request.query_params) if request.query_params else None,
            client_ip=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)

            duration_ms = (time.perf_counter() - start_time) * 1000
            log_level = logging.INFO if response.status_code < 400 else logging.WARNING

            logger.log(
                log_level,
                f"{request.method} {request.url.path} -> {response.status_code}",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )
            metrics.record_request(duration_ms, success=response.status_code < 500)

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            metrics.record_request(duration_ms, success=False)
            logger.exception(
                f"{request.method} {request.url.path} -> 500",
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e),
            )
            raise

        finally:
            request_id_var.reset(token)


# ============================================================
# METRICS
# ============================================================

_MAX_SAMPLES = 1000


@dataclass
class MetricsCollector:
    """
    Simple in-memory metrics collector.

    For production, replace with Prometheus, StatsD, or similar.
    """

    # Counters
    entries_appended: int = 0
    append_races: int = 0
    append_retries: int = 0
    append_failures: int = 0
    chain_forks: int = 0
    repairs_applied: int = 0
    blocks_repaired: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    # Histograms (simplified as lists)
    append_latencies_ms: list = field(default_factory=list)
    request_latencies_ms: list = field(default_factory=list)

    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def record_append(self, latency_ms: float) -> None:
        """Record a completed append."""
        with self._lock:
            self.entries_appended += 1
            self.append_latencies_ms.append(latency_ms)
            if len(self.append_latencies_ms) > _MAX_SAMPLES:
                self.append_latencies_ms = self.append_latencies_ms[-_MAX_SAMPLES:]

    def record_race(self) -> None:
        with self._lock:
            self.append_races += 1

    def record_retry(self) -> None:
        with self._lock:
            self.append_retries += 1

    def record_append_failure(self) -> None:
        with self._lock:
            self.append_failures += 1

    def record_fork(self) -> None:
        with self._lock:
            self.chain_forks += 1

    def record_repair(self, blocks_changed: int) -> None:
        """Record an applied repair run."""
        with self._lock:
            self.repairs_applied += 1
            self.blocks_repaired += blocks_changed

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.requests_total += 1
            if not success:
                self.requests_failed += 1
            self.request_latencies_ms.append(latency_ms)
            if len(self.request_latencies_ms) > _MAX_SAMPLES:
                self.request_latencies_ms = self.request_latencies_ms[-_MAX_SAMPLES:]

    def reset(self) -> None:
        """Zero every counter (for testing only)."""
        with self._lock:
            self.entries_appended = 0
            self.append_races = 0
            self.append_retries = 0
            self.append_failures = 0
            self.chain_forks = 0
            self.repairs_applied = 0
            self.blocks_repaired = 0
            self.requests_total = 0
            self.requests_failed = 0
            self.append_latencies_ms = []
            self.request_latencies_ms = []

    def get_summary(self) -> Dict[str, Any]:
        """Get metrics summary."""
        def percentile(data: list, p: float) -> Optional[float]:
            if not data:
                return None
            sorted_data = sorted(data)
            idx = int(len(sorted_data) * p)
            return sorted_data[min(idx, len(sorted_data) - 1)]

        with self._lock:
            return {
                "entries_appended": self.entries_appended,
                "append_races": self.append_races,
                "append_retries": self.append_retries,
                "append_failures": self.append_failures,
                "chain_forks": self.chain_forks,
                "repairs_applied": self.repairs_applied,
                "blocks_repaired": self.blocks_repaired,
                "requests_total": self.requests_total,
                "requests_failed": self.requests_failed,
                "append_latency_p50_ms": percentile(self.append_latencies_ms, 0.5),
                "append_latency_p95_ms": percentile(self.append_latencies_ms, 0.95),
                "append_latency_p99_ms": percentile(self.append_latencies_ms, 0.99),
                "request_latency_p50_ms": percentile(self.request_latencies_ms, 0.5),
                "request_latency_p95_ms": percentile(self.request_latencies_ms, 0.95),
            }


# Global metrics instance
_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    """Health check result."""
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def check_health(ledger=None, verify: bool = False) -> HealthStatus:
    """
    Run all health checks.

    Args:
        ledger: AuditLedger instance
        verify: Also walk the whole chain (expensive)

    Returns:
        HealthStatus with all check results
    """
    start = time.perf_counter()
    checks = {}
    all_healthy = True

    checks["liveness"] = {"status": "healthy"}

    if ledger is not None:
        try:
            head = ledger.head()
            checks["ledger_store"] = {
                "status": "healthy",
                "head_id": head.sequence_id if head else None,
                "head_hash": head.block_hash[:16] + "..." if head else None,
            }
        except Exception as e:
            checks["ledger_store"] = {
                "status": "unhealthy",
                "error": str(e),
            }
            all_healthy = False

        if verify:
            try:
                report = ledger.verify_chain()
                checks["chain_integrity"] = {
                    "status": "healthy" if report.valid else "unhealthy",
                    "valid": report.valid,
                    "total_checked": report.total_checked,
                    "first_invalid_id": report.first_invalid_id,
                }
                if not report.valid:
                    all_healthy = False
            except Exception as e:
                checks["chain_integrity"] = {
                    "status": "unhealthy",
                    "error": str(e),
                }
                all_healthy = False

    duration_ms = (time.perf_counter() - start) * 1000

    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )
