from __future__ import annotations

import ipaddress
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Substrings marking a key as credential-bearing
_SECRET_MARKERS = (
    "password",
    "secret",
    "token",
    "code",
    "authorization",
    "email",
    "signature",
    "credential",
)
# Identifiers and counters that merely share a marker
_SAFE_KEYS = frozenset(
    {"token_id", "token_type", "token_prefix", "email_hash", "error_code", "credential_count"}
)
_IP_KEYS = frozenset({"ip", "ip_address", "client_ip"})


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_request_context(**fields: Any) -> None:
    """Attach user and session identifiers to every later log line of the request."""
    structlog.contextvars.bind_contextvars(
        **{key: value for key, value in fields.items() if value is not None}
    )


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


def redact_value(value: Any) -> Any:
    """Keep two characters at each end of a secret string, mask the rest."""
    if isinstance(value, str) and len(value) > 4:
        return f"{value[:2]}***{value[-2:]}"
    return value


def mask_ip(value: Any) -> Any:
    """Truncate an address to its /24 (IPv4) or /48 (IPv6) network."""
    if not isinstance(value, str):
        return value
    try:
        addr = ipaddress.ip_address(value)
    except ValueError:
        return "invalid"
    prefix = 24 if addr.version == 4 else 48
    return str(ipaddress.ip_network(f"{addr}/{prefix}", strict=False))


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key in list(event_dict):
        lower_key = key.lower()
        if lower_key in _SAFE_KEYS:
            continue
        if any(marker in lower_key for marker in _SECRET_MARKERS):
            event_dict[key] = redact_value(event_dict[key])
    return event_dict


def _mask_addresses(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key in _IP_KEYS & event_dict.keys():
        event_dict[key] = mask_ip(event_dict[key])
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
    mask_addresses: bool = True,
) -> None:
    """Configure structlog for the process.

    Args:
        log_level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        json_output: Render JSON lines; otherwise render for a console
        development_mode: Force the coloured console renderer
        mask_addresses: Truncate client IPs before they reach a sink
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_secrets,
    ]
    if mask_addresses:
        processors.append(_mask_addresses)
    processors += [
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", True),
    development_mode=_env_flag("LOG_DEV_MODE", False),
    mask_addresses=_env_flag("LOG_MASK_IP", True),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_security_event(event: str, logger: Optional[Any] = None, **fields: Any) -> None:
    """Emit an audit-grade security event on the dedicated ``security`` logger."""
    log = logger or get_logger("security")
    log.info("security_event", security_event=event, **fields)
