"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with transaction/account context
- Request/response logging middleware for the HTTP surface
- Metrics collection (cache hit rate, transaction outcomes, event counts)
- Health check utilities

Configuration:
- ELECTRA_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- ELECTRA_LOG_FORMAT: json, text (default: json in production)
- ELECTRA_PRODUCTION: Enable production mode

Usage:
    from electra.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Transaction submitted", tx_id=tx_id, method="vote")
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
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

# Context variables for correlating log lines
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
tx_id_var: ContextVar[str] = ContextVar("tx_id", default="")
account_var: ContextVar[str] = ContextVar("account", default="")

_RESERVED_RECORD_KEYS = (
    "name", "msg", "args", "created", "levelname", "levelno",
    "pathname", "filename", "module", "lineno", "funcName",
    "exc_info", "exc_text", "stack_info", "message", "msecs",
    "relativeCreated", "thread", "threadName", "processName",
    "process", "taskName",
)


# ============================================================
# CONFIGURATION
# ============================================================

def _is_production() -> bool:
    return os.environ.get("ELECTRA_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("ELECTRA_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("ELECTRA_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return _is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2024-01-15T10:30:00.000Z",
        "level": "INFO",
        "logger": "electra.core.transactions",
        "message": "Transaction confirmed",
        "tx_id": "tx_1705311000000_k3j2h1g0f",
        "account": "0xabc...",
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

        tx_id = tx_id_var.get()
        if tx_id:
            log_data["tx_id"] = tx_id

        account = account_var.get()
        if account:
            log_data["account"] = account

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_KEYS or key.startswith("_"):
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
        tx_id = tx_id_var.get()
        if tx_id:
            prefix = f"[{tx_id}] "
        else:
            request_id = request_id_var.get()
            if request_id:
                prefix = f"[{request_id[:8]}] "

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        msg = f"{timestamp} {record.levelname:8} {prefix}{record.name}: {record.getMessage()}"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that automatically includes context fields.

    Usage:
        logger = get_logger(__name__)
        logger.info("Cache invalidated", pattern="voter", removed=3)
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.get("extra", {})

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

    Returns:
        ContextLogger instance with structured output
    """
    logger = logging.getLogger(name)
    return ContextLogger(logger, {})


def setup_logging() -> None:
    """
    Configure logging for the application.

    Call this once at application startup.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(_get_log_level())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(_get_log_level())

    if _use_json_logging():
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("web3").setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that sets up request context for logging.

    Generates a request ID for each request (or reuses X-Request-ID)
    and logs the response status with timing.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        token = request_id_var.set(request_id)

        logger = get_logger("electra.request")
        start_time = time.perf_counter()

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

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
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

@dataclass
class MetricsCollector:
    """
    Simple in-memory metrics collector.

    One instance per ElectionClient; the HTTP surface exposes the
    summary of the client it serves.
    """

    # Counters
    cache_hits: int = 0
    cache_misses: int = 0
    tx_submitted: int = 0
    tx_confirmed: int = 0
    tx_failed: int = 0
    tx_retried: int = 0
    tx_timed_out: int = 0
    events_received: int = 0
    events_duplicated: int = 0
    resubscriptions: int = 0

    # Histograms (simplified as lists)
    confirmation_latencies_ms: list = field(default_factory=list)
    read_latencies_ms: list = field(default_factory=list)

    def record_cache(self, hit: bool) -> None:
        if hit:
            self.cache_hits += 1
        else:
            self.cache_misses += 1

    def record_read(self, latency_ms: float) -> None:
        self.read_latencies_ms.append(latency_ms)
        if len(self.read_latencies_ms) > 1000:
            self.read_latencies_ms = self.read_latencies_ms[-1000:]

    def record_confirmation(self, latency_ms: float) -> None:
        """Record a confirmed transaction."""
        self.tx_confirmed += 1
        self.confirmation_latencies_ms.append(latency_ms)
        # Keep only last 1000 samples
        if len(self.confirmation_latencies_ms) > 1000:
            self.confirmation_latencies_ms = self.confirmation_latencies_ms[-1000:]

    @property
    def cache_hit_rate(self) -> Optional[float]:
        total = self.cache_hits + self.cache_misses
        if total == 0:
            return None
        return round(self.cache_hits / total, 4)

    def get_summary(self) -> Dict[str, Any]:
        """Get metrics summary."""
        def percentile(data: list, p: float) -> Optional[float]:
            if not data:
                return None
            sorted_data = sorted(data)
            idx = int(len(sorted_data) * p)
            return sorted_data[min(idx, len(sorted_data) - 1)]

        return {
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "cache_hit_rate": self.cache_hit_rate,
            "tx_submitted": self.tx_submitted,
            "tx_confirmed": self.tx_confirmed,
            "tx_failed": self.tx_failed,
            "tx_retried": self.tx_retried,
            "tx_timed_out": self.tx_timed_out,
            "events_received": self.events_received,
            "events_duplicated": self.events_duplicated,
            "resubscriptions": self.resubscriptions,
            "confirmation_latency_p50_ms": percentile(self.confirmation_latencies_ms, 0.5),
            "confirmation_latency_p95_ms": percentile(self.confirmation_latencies_ms, 0.95),
            "read_latency_p50_ms": percentile(self.read_latencies_ms, 0.5),
            "read_latency_p95_ms": percentile(self.read_latencies_ms, 0.95),
        }


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    """Health check result."""
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


async def check_health(client=None, include_integrity: bool = False) -> HealthStatus:
    """
    Run all health checks.

    Args:
        client: ElectionClient instance
        include_integrity: Also run the (expensive) snapshot integrity audit

    Returns:
        HealthStatus with all check results
    """
    start = time.perf_counter()
    checks = {}
    all_healthy = True

    # Check 1: Basic liveness
    checks["liveness"] = {"status": "healthy"}

    if client is not None:
        # Check 2: Ledger connectivity
        try:
            block = await client.gateway.block_number()
            checks["ledger"] = {"status": "healthy", "block_number": block}
        except Exception as e:
            checks["ledger"] = {"status": "unhealthy", "error": str(e)}
            all_healthy = False

        # Check 3: Event monitor (degraded polling is still healthy)
        monitor = client.monitor
        checks["event_monitor"] = {
            "status": "healthy",
            "running": monitor.is_running,
            "mode": monitor.mode,
            "subscriptions": monitor.subscription_count,
        }

        # Check 4: Integrity (expensive, only if explicitly requested)
        if include_integrity:
            try:
                report = await client.validate_integrity()
                checks["integrity"] = {
                    "status": "healthy" if report.is_valid else "unhealthy",
                    "issues": [issue.type for issue in report.issues],
                }
                if not report.is_valid:
                    all_healthy = False
            except Exception as e:
                checks["integrity"] = {"status": "unhealthy", "error": str(e)}
                all_healthy = False

    duration_ms = (time.perf_counter() - start) * 1000

    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )
