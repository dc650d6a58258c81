"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging bound to the current request and subject
- Request/response logging middleware
- Registry counters and per-stage latency (verify, upload, broadcast, confirm)
- Claim ledger health probe

Configuration:
- CLAIMGATE_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- CLAIMGATE_LOG_FORMAT: json, text (default: json in production)
- CLAIMGATE_PRODUCTION: Enable production mode

Usage:
    from claimgate.observability import get_logger, RequestContextMiddleware

    logger = get_logger(__name__)
    logger.info("Claim reserved", subject_id=subject_id, payment_id=payment_id)
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

# Bound per request; read by both formatters
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
subject_id_var: ContextVar[str] = ContextVar("subject_id", default="")

REQUEST_ID_HEADER = "X-Request-ID"


# ============================================================
# CONFIGURATION
# ============================================================

@dataclass(frozen=True)
class LoggingSettings:
    level: int = logging.INFO
    json_output: bool = False

    @classmethod
    def from_env(cls) -> "LoggingSettings":
        production = os.environ.get("CLAIMGATE_PRODUCTION", "").lower() in ("1", "true", "yes")
        fmt = os.environ.get("CLAIMGATE_LOG_FORMAT", "").lower()
        level_name = os.environ.get("CLAIMGATE_LOG_LEVEL", "INFO").upper()
        level = logging.getLevelName(level_name)
        return cls(
            level=level if isinstance(level, int) else logging.INFO,
            json_output=fmt == "json" or (fmt != "text" and production),
        )


def redact(secret: Optional[str], keep: int = 16) -> Optional[str]:
    """Shorten a proof, signature or token for logging."""
    if not secret or len(secret) <= keep:
        return secret
    return f"{secret[:keep]}..."


# ============================================================
# STRUCTURED LOGGING
# ============================================================

# Attributes every LogRecord carries; anything else came in through extra=
_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "taskName"}


def _fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value for key, value in vars(record).items()
        if key not in _RESERVED and not key.startswith("_")
    }


def _bound_context() -> Dict[str, str]:
    context = {}
    if request_id_var.get():
        context["request_id"] = request_id_var.get()
    if subject_id_var.get():
        context["subject_id"] = subject_id_var.get()
    return context


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line:

        {"timestamp": "...", "level": "INFO", "logger": "claimgate.core.coordinator",
         "message": "Claim registered", "request_id": "3f2a9c1e",
         "subject_id": "did:x:1", "transaction_hash": "0x..."}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_bound_context())
        entry.update(_fields(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Readable single-line output for development."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S")
        request_id = request_id_var.get()
        tag = f"[{request_id[:8]}] " if request_id else ""
        line = f"{stamp} {record.levelname:<7} {tag}{record.name}: {record.getMessage()}"

        extras = _fields(record)
        if subject_id_var.get() and "subject_id" not in extras:
            extras["subject_id"] = subject_id_var.get()
        if extras:
            line += " | " + " ".join(f"{k}={v}" for k, v in extras.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """
    Accepts structured fields as keyword arguments:

        logger.warning("Post-payment stage failed", stage="upload", payment_id=pid)
    """

    _PASSTHROUGH = ("exc_info", "stack_info", "stacklevel", "extra")

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(kwargs.pop("extra", None) or {})
        for key in [k for k in kwargs if k not in self._PASSTHROUGH]:
            extra[key] = kwargs.pop(key)
        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), {})


def setup_logging(settings: Optional[LoggingSettings] = None) -> None:
    """Install a single stdout handler on the root logger. Call once at startup."""
    settings = settings or LoggingSettings.from_env()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter() if settings.json_output else TextFormatter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(settings.level)

    for noisy in ("uvicorn.access", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds a request id for the duration of a request, echoes it back in
    X-Request-ID, and logs one line per response.

    The submission route binds the subject id; both are cleared here.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:8]
        request_id_var.set(request_id)
        logger = get_logger("claimgate.request")
        route = f"{request.method} {request.url.path}"
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            elapsed = (time.perf_counter() - started) * 1000
            get_metrics().record_request(elapsed, ok=False)
            logger.exception(f"{route} -> 500", duration_ms=round(elapsed, 2))
            request_id_var.set("")
            raise
        finally:
            subject_id_var.set("")

        elapsed = (time.perf_counter() - started) * 1000
        get_metrics().record_request(elapsed, ok=response.status_code < 500)
        # 402 is the normal first leg of a paid submission
        level = logging.INFO if response.status_code in (200, 202, 402) else logging.WARNING
        logger.log(
            level,
            f"{route} -> {response.status_code}",
            status_code=response.status_code,
            duration_ms=round(elapsed, 2),
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        request_id_var.set("")
        return response


# ============================================================
# METRICS
# ============================================================

_MAX_SAMPLES = 1000

COUNTERS = (
    "challenges_issued",
    "submissions_proceeded",
    "registrations",
    "idempotent_replays",
    "payment_rejections",
    "facilitator_outages",
    "conflicts",
    "in_progress_refusals",
    "post_payment_failures",
    "recoveries",
    "requests_total",
    "requests_failed",
)


def _percentile(samples: list, p: float) -> Optional[float]:
    if not samples:
        return None
    ordered = sorted(samples)
    return round(ordered[min(int(len(ordered) * p), len(ordered) - 1)], 3)


@dataclass
class MetricsCollector:
    """
    In-process counters and latency samples, served at GET /metrics.

    Counter names are listed in COUNTERS. Latency is kept per external
    stage and for whole requests, capped at the most recent samples.
    """

    challenges_issued: int = 0
    submissions_proceeded: int = 0
    registrations: int = 0
    idempotent_replays: int = 0
    payment_rejections: int = 0
    facilitator_outages: int = 0
    conflicts: int = 0
    in_progress_refusals: int = 0
    post_payment_failures: int = 0
    recoveries: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    stage_latencies_ms: Dict[str, list] = field(default_factory=dict)
    request_latencies_ms: list = field(default_factory=list)

    _lock: Lock = field(default_factory=Lock, repr=False)

    def incr(self, counter: str, amount: int = 1) -> None:
        if counter not in COUNTERS:
            raise KeyError(f"Unknown counter: {counter}")
        with self._lock:
            setattr(self, counter, getattr(self, counter) + amount)

    @staticmethod
    def _sample(samples: list, value: float) -> None:
        samples.append(value)
        if len(samples) > _MAX_SAMPLES:
            del samples[:-_MAX_SAMPLES]

    def record_stage(self, stage: str, latency_ms: float) -> None:
        with self._lock:
            self._sample(self.stage_latencies_ms.setdefault(stage, []), latency_ms)

    def record_request(self, latency_ms: float, ok: bool) -> None:
        with self._lock:
            self.requests_total += 1
            if not ok:
                self.requests_failed += 1
            self._sample(self.request_latencies_ms, latency_ms)

    def reset(self) -> None:
        """Zero everything. Tests only."""
        with self._lock:
            for name in COUNTERS:
                setattr(self, name, 0)
            self.stage_latencies_ms = {}
            self.request_latencies_ms = []

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            summary: Dict[str, Any] = {name: getattr(self, name) for name in COUNTERS}
            series = {"request": self.request_latencies_ms, **self.stage_latencies_ms}
            for name, samples in sorted(series.items()):
                summary[f"{name}_latency_p50_ms"] = _percentile(samples, 0.5)
                summary[f"{name}_latency_p95_ms"] = _percentile(samples, 0.95)
        return summary


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """The process-wide collector."""
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def check_health(claim_ledger=None) -> HealthStatus:
    """
    Liveness plus a claim ledger probe.

    The probe counts records and pending reservations; any exception from
    the store marks the service unhealthy and is reported in the check.
    """
    started = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}

    if claim_ledger is not None:
        try:
            checks["claim_ledger"] = {
                "status": "healthy",
                "backend": type(claim_ledger).__name__,
                "record_count": claim_ledger.count(),
                "pending_count": len(claim_ledger.list_pending()),
            }
        except Exception as e:
            checks["claim_ledger"] = {"status": "unhealthy", "error": str(e)}

    return HealthStatus(
        healthy=all(check["status"] == "healthy" for check in checks.values()),
        checks=checks,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
