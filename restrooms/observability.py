"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with request IDs
- Request/response logging middleware
- Metrics collection (hydration runs, candidate outcomes, votes, latency)
- Health check utilities

Configuration:
- RESTROOMS_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- RESTROOMS_LOG_FORMAT: json, text (default: json in production)
- RESTROOMS_PRODUCTION: Enable production mode

Usage:
    from restrooms.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Hydration complete", saved=3, skipped=17)
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

# Context variables for request tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Attributes LogRecord owns; extra fields must not overwrite them
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime"}


# ============================================================
# CONFIGURATION
# ============================================================

def _is_production() -> bool:
    return os.environ.get("RESTROOMS_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("RESTROOMS_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("RESTROOMS_LOG_FORMAT", "").lower()
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
        "timestamp": "2024-01-15T10:30:00.000000+00:00",
        "level": "INFO",
        "logger": "restrooms.core.hydration",
        "message": "Hydration complete",
        "request_id": "abc-123",
        "saved": 3,
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
            if key in _RESERVED_ATTRS or key.startswith("_"):
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

        fields = {
            key: value for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }
        if fields:
            msg += " " + " ".join(f"{k}={v}" for k, v in fields.items())

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that accepts context fields as keyword arguments.

    Usage:
        logger = get_logger(__name__)
        logger.info("Location inserted", location_id=resource.id)
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(kwargs.get("extra") or {})

        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                value = kwargs.pop(key)
                # LogRecord refuses to overwrite its own attributes
                extra[f"field_{key}" if key in _RESERVED_ATTRS else key] = value

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
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that sets up request context for logging.

    - Generates a request ID (or reuses X-Request-ID)
    - Logs request/response with timing
    - Feeds request counters into the metrics collector
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        token = request_id_var.set(request_id)

        logger = get_logger("restrooms.request")
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
            get_metrics().record_request(duration_ms, success=response.status_code < 500)

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            get_metrics().record_request(duration_ms, success=False)
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

    For production, replace with Prometheus, StatsD, or similar.
    """

    # Counters
    requests_total: int = 0
    requests_failed: int = 0
    hydration_runs: int = 0
    hydration_skipped_disabled: int = 0
    candidates_saved: int = 0
    candidates_skipped: int = 0
    candidates_failed: int = 0
    remote_fetch_errors: int = 0
    locations_inserted: int = 0
    votes_recorded: int = 0

    # Histograms (simplified as lists)
    hydration_latencies_ms: list = field(default_factory=list)
    request_latencies_ms: list = field(default_factory=list)

    MAX_SAMPLES = 1000

    def _sample(self, samples: list, value: float) -> list:
        samples.append(value)
        if len(samples) > self.MAX_SAMPLES:
            samples = samples[-self.MAX_SAMPLES:]
        return samples

    def record_hydration(self, latency_ms: float, saved: int, skipped: int, failed: int) -> None:
        """Record a completed hydration batch."""
        self.hydration_runs += 1
        self.candidates_saved += saved
        self.candidates_skipped += skipped
        self.candidates_failed += failed
        self.hydration_latencies_ms = self._sample(self.hydration_latencies_ms, latency_ms)

    def record_hydration_disabled(self) -> None:
        self.hydration_skipped_disabled += 1

    def record_remote_error(self) -> None:
        self.remote_fetch_errors += 1

    def record_insert(self) -> None:
        self.locations_inserted += 1

    def record_vote(self) -> None:
        self.votes_recorded += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        """Record a request."""
        self.requests_total += 1
        if not success:
            self.requests_failed += 1
        self.request_latencies_ms = self._sample(self.request_latencies_ms, latency_ms)

    def get_summary(self) -> Dict[str, Any]:
        """Get metrics summary."""
        def percentile(data: list, p: float) -> Optional[float]:
            if not data:
                return None
            sorted_data = sorted(data)
            idx = int(len(sorted_data) * p)
            return sorted_data[min(idx, len(sorted_data) - 1)]

        return {
            "requests_total": self.requests_total,
            "requests_failed": self.requests_failed,
            "hydration_runs": self.hydration_runs,
            "hydration_skipped_disabled": self.hydration_skipped_disabled,
            "candidates_saved": self.candidates_saved,
            "candidates_skipped": self.candidates_skipped,
            "candidates_failed": self.candidates_failed,
            "remote_fetch_errors": self.remote_fetch_errors,
            "locations_inserted": self.locations_inserted,
            "votes_recorded": self.votes_recorded,
            "hydration_latency_p50_ms": percentile(self.hydration_latencies_ms, 0.5),
            "hydration_latency_p95_ms": percentile(self.hydration_latencies_ms, 0.95),
            "request_latency_p50_ms": percentile(self.request_latencies_ms, 0.5),
            "request_latency_p95_ms": percentile(self.request_latencies_ms, 0.95),
        }

    def reset(self) -> None:
        """Zero every counter (tests)."""
        fresh = MetricsCollector()
        self.__dict__.update(fresh.__dict__)


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


async def check_health(store=None, hydration=None) -> HealthStatus:
    """
    Run all health checks.

    Args:
        store: LocationStore instance
        hydration: HydrationService instance

    Returns:
        HealthStatus with all check results
    """
    start = time.perf_counter()
    checks = {}
    all_healthy = True

    checks["liveness"] = {"status": "healthy"}

    if store is not None:
        try:
            total = await store.count()
            checks["location_store"] = {
                "status": "healthy",
                "driver": type(store).__name__,
                "location_count": total,
            }
        except Exception as e:
            checks["location_store"] = {
                "status": "unhealthy",
                "error": str(e),
            }
            all_healthy = False

    if hydration is not None:
        checks["hydration"] = {
            "status": "healthy",
            "enabled": hydration.enabled,
            "api_url": hydration.api_url,
        }

    duration_ms = (time.perf_counter() - start) * 1000

    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )
