"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with request IDs and caller identity
- Request/response logging middleware
- Ledger metrics (admissions, rejections by code, commit latency)
- Health check utilities

Configuration:
- SPECIES_LEDGER_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- SPECIES_LEDGER_LOG_FORMAT: json, text (default: json in production)
- SPECIES_LEDGER_PRODUCTION: Enable production mode

Usage:
    from species_ledger.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Observation admitted", observation_id=7, species="Bald Eagle")
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

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
caller_id_var: ContextVar[str] = ContextVar("caller_id", default="")

CALLER_HEADER = "X-Caller-Identity"
REQUEST_ID_HEADER = "X-Request-ID"

# Output key -> context variable, in the order they appear in a log line
_CONTEXT_FIELDS = (("request_id", request_id_var), ("caller", caller_id_var))


# ============================================================
# CONFIGURATION
# ============================================================

def is_production() -> bool:
    return os.environ.get("SPECIES_LEDGER_PRODUCTION", "").lower() in ("1", "true", "yes")


def _log_level_from_env() -> int:
    level = logging.getLevelName(os.environ.get("SPECIES_LEDGER_LOG_LEVEL", "INFO").upper())
    # getLevelName answers "Level X" for names it does not know
    return level if isinstance(level, int) else logging.INFO


def _json_logs_from_env() -> bool:
    return {"json": True, "text": False}.get(
        os.environ.get("SPECIES_LEDGER_LOG_FORMAT", "").lower(),
        is_production(),
    )


# ============================================================
# STRUCTURED LOGGING
# ============================================================

# Attributes every LogRecord carries; anything else came in through extra=
_RECORD_ATTRIBUTES = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


def _context_fields() -> Dict[str, str]:
    return {key: var.get() for key, var in _CONTEXT_FIELDS if var.get()}


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
    }


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line.

    {
        "timestamp": "2024-01-15T10:30:00.000000+00:00",
        "level": "WARNING",
        "logger": "species_ledger.core.ledger",
        "message": "Admission rejected",
        "request_id": "abc12345",
        "caller": "user",
        "code": 100,
        ...extra fields...
    }

    Extra values json cannot encode are written as their str().
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context_fields(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(_extra_fields(record))
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """
    Single-line development format, extras appended as key=value:

        2024-01-15 10:30:00 WARNING  [abc12345 user] species_ledger.core.ledger: Admission rejected code=100
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        context = " ".join(_context_fields().values())
        line = f"{timestamp} {record.levelname:8} "
        if context:
            line += f"[{context}] "
        line += f"{record.name}: {record.getMessage()}"

        extras = _extra_fields(record)
        if extras:
            line += " " + " ".join(f"{key}={value!r}" for key, value in extras.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that turns keyword arguments into structured fields.

        logger.warning("Admission rejected", code=102, species="Bald Eagle")
    """

    _PASSTHROUGH = frozenset(("exc_info", "stack_info", "stacklevel", "extra"))

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        fields = {key: kwargs.pop(key) for key in list(kwargs) if key not in self._PASSTHROUGH}
        kwargs["extra"] = {**kwargs.get("extra", {}), **fields}
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), {})


def setup_logging(level: Optional[int] = None, json_logs: Optional[bool] = None) -> None:
    """
    Route all logging to stdout through one handler.

    Args:
        level: Defaults to SPECIES_LEDGER_LOG_LEVEL
        json_logs: Defaults to SPECIES_LEDGER_LOG_FORMAT, else JSON in production
    """
    level = _log_level_from_env() if level is None else level
    json_logs = _json_logs_from_env() if json_logs is None else json_logs

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter() if json_logs else TextFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # Per-request lines come from RequestContextMiddleware
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

_request_logger = get_logger("species_ledger.request")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds the request id and the claimed caller to every log line
    written while a request is handled, then logs its outcome.

    The request id comes from X-Request-ID when the client sends one
    and is echoed back on the response.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:8]
        tokens = [
            (request_id_var, request_id_var.set(request_id)),
            (caller_id_var, caller_id_var.set(request.headers.get(CALLER_HEADER, ""))),
        ]
        route = f"{request.method} {request.url.path}"
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            _request_logger.exception(
                f"{route} -> 500",
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e),
            )
            get_metrics().record_request(duration_ms, success=False)
            raise
        else:
            duration_ms = (time.perf_counter() - start_time) * 1000
            # 4xx rejections are logged by the ledger itself
            _request_logger.log(
                logging.ERROR if response.status_code >= 500 else logging.INFO,
                f"{route} -> {response.status_code}",
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )
            get_metrics().record_request(duration_ms, success=response.status_code < 500)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            for var, token in reversed(tokens):
                var.reset(token)


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
    admissions: int = 0
    corrections: int = 0
    admin_operations: int = 0
    events_committed: int = 0
    requests_total: int = 0
    requests_failed: int = 0
    rejections_by_code: Dict[int, int] = field(default_factory=dict)

    # Histograms (simplified as bounded lists)
    commit_latencies_ms: list = field(default_factory=list)
    request_latencies_ms: list = field(default_factory=list)

    def record_commit(self, latency_ms: float) -> None:
        self.events_committed += 1
        self.commit_latencies_ms.append(latency_ms)
        if len(self.commit_latencies_ms) > _MAX_SAMPLES:
            self.commit_latencies_ms = self.commit_latencies_ms[-_MAX_SAMPLES:]

    def record_admission(self) -> None:
        self.admissions += 1

    def record_correction(self) -> None:
        self.corrections += 1

    def record_admin_operation(self) -> None:
        self.admin_operations += 1

    def record_rejection(self, code: int) -> None:
        code = int(code)
        self.rejections_by_code[code] = self.rejections_by_code.get(code, 0) + 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        self.requests_total += 1
        if not success:
            self.requests_failed += 1
        self.request_latencies_ms.append(latency_ms)
        if len(self.request_latencies_ms) > _MAX_SAMPLES:
            self.request_latencies_ms = self.request_latencies_ms[-_MAX_SAMPLES:]

    def get_summary(self) -> Dict[str, Any]:
        def percentile(data: list, p: float) -> Optional[float]:
            if not data:
                return None
            sorted_data = sorted(data)
            idx = int(len(sorted_data) * p)
            return sorted_data[min(idx, len(sorted_data) - 1)]

        return {
            "admissions": self.admissions,
            "corrections": self.corrections,
            "admin_operations": self.admin_operations,
            "events_committed": self.events_committed,
            "rejections_by_code": {str(k): v for k, v in sorted(self.rejections_by_code.items())},
            "requests_total": self.requests_total,
            "requests_failed": self.requests_failed,
            "commit_latency_p50_ms": percentile(self.commit_latencies_ms, 0.5),
            "commit_latency_p95_ms": percentile(self.commit_latencies_ms, 0.95),
            "commit_latency_p99_ms": percentile(self.commit_latencies_ms, 0.99),
            "request_latency_p50_ms": percentile(self.request_latencies_ms, 0.5),
            "request_latency_p95_ms": percentile(self.request_latencies_ms, 0.95),
        }


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return _metrics


def reset_metrics() -> None:
    """Reset the global metrics collector (for testing only)."""
    global _metrics
    _metrics = MetricsCollector()


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def check_health(ledger=None, event_store=None) -> HealthStatus:
    """
    Run all health checks.

    Args:
        ledger: SpeciesLedger instance
        event_store: EventStore instance
    """
    start = time.perf_counter()
    checks = {}
    all_healthy = True

    checks["liveness"] = {"status": "healthy"}

    head = None
    if event_store is not None:
        try:
            head = event_store.get_head()
            checks["event_store"] = {
                "status": "healthy",
                "event_count": head.next_sequence,
                "last_hash": head.last_event_hash[:16] + "..." if head.last_event_hash else None,
            }
        except Exception as e:
            checks["event_store"] = {"status": "unhealthy", "error": str(e)}
            all_healthy = False

    if ledger is not None:
        try:
            is_valid = ledger.verify_chain_integrity()
            checks["chain_integrity"] = {
                "status": "healthy" if is_valid else "unhealthy",
                "valid": is_valid,
                "event_count": ledger.event_count,
            }
            if not is_valid:
                all_healthy = False
        except Exception as e:
            checks["chain_integrity"] = {"status": "unhealthy", "error": str(e)}
            all_healthy = False

        if head is not None:
            consistent = (
                ledger.last_event_hash == head.last_event_hash
                and ledger.next_sequence_number == head.next_sequence
            )
            checks["head_consistency"] = {
                "status": "healthy" if consistent else "unhealthy",
                "consistent": consistent,
            }
            if not consistent:
                all_healthy = False

    duration_ms = (time.perf_counter() - start) * 1000

    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )
