from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, populated by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_PII_KEYS = ("password", "secret", "token", "authorization", "email", "otp")


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential-like and contact values before they reach a sink."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if any(pii in lower_key for pii in _PII_KEYS):
            value = event_dict[key]
            if isinstance(value, str) and len(value) > 4:
                # Keep first/last 2 chars for debugging
                event_dict[key] = value[:2] + "***" + value[-2:]
            elif isinstance(value, str):
                event_dict[key] = "***"
    return event_dict


class Observability:
    """Owns the structlog configuration for one process.

    The runtime calls ``init()`` once during startup and ``shutdown()`` when the
    application stops. Components receive loggers from ``logger()`` instead of
    reaching for module-level state.
    """

    def __init__(
        self,
        *,
        log_level: str = "INFO",
        json_output: bool = True,
        development_mode: bool = False,
    ) -> None:
        self.log_level = log_level.upper()
        self.json_output = json_output
        self.development_mode = development_mode
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def init(self) -> "Observability":
        shared_processors = [
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_correlation_id,
            _redact_pii,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
        ]
        if self.development_mode or not self.json_output:
            processors = shared_processors + [
                structlog.dev.ConsoleRenderer(colors=True),
            ]
        else:
            processors = shared_processors + [
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ]

        structlog.configure(
            processors=processors,
            wrapper_class=structlog.make_filtering_bound_logger(
                getattr(logging, self.log_level, logging.INFO)
            ),
            context_class=dict,
            logger_factory=structlog.PrintLoggerFactory(),
            cache_logger_on_first_use=False,
        )
        self._initialized = True
        self.logger("warden.observability").debug(
            "observability_initialized",
            log_level=self.log_level,
            json_output=self.json_output,
        )
        return self

    def logger(self, name: str) -> structlog.stdlib.BoundLogger:
        return structlog.get_logger(name)

    def shutdown(self) -> None:
        if not self._initialized:
            return
        self.logger("warden.observability").debug("observability_shutdown")
        structlog.contextvars.clear_contextvars()
        self._initialized = False


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger that picks up whatever configuration is active."""
    return structlog.get_logger(name)

