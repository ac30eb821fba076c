"""
Structured logging for Repair Assist.

Every JSON line carries the bound diagnosis context: request id, and once
known the session id, user id and the pipeline stage being tried. One
/diagnose call can be followed through all of its stages by session_id.

    logger = StructuredLogger(__name__)
    with log_context(stage="database"):
        logger.warning("stage failed", error="no match")
"""

import ipaddress
import json
import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

SERVICE_NAME = "repair-assist"

# Fields promoted to the top level of each JSON line when bound
CONTEXT_FIELDS = ("request_id", "session_id", "user_id", "stage")

_context: ContextVar[dict] = ContextVar("log_context", default={})


def current_context() -> dict:
    return dict(_context.get())


def bind_context(**fields: Any) -> None:
    """Add fields to the context for the rest of the current task."""
    _context.set({**_context.get(), **{k: v for k, v in fields.items() if v is not None}})


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Bind fields for the duration of a block, restoring the outer context after."""
    token = _context.set({**_context.get(), **{k: v for k, v in fields.items() if v is not None}})
    try:
        yield
    finally:
        _context.reset(token)


def get_request_id() -> Optional[str]:
    return _context.get().get("request_id")


def set_request_id(request_id: Optional[str] = None) -> str:
    """Start a fresh context for a request. Returns the request id."""
    request_id = request_id or str(uuid.uuid4())[:8]
    _context.set({"request_id": request_id})
    return request_id


class JSONFormatter(logging.Formatter):
    def __init__(self, service_name: str = SERVICE_NAME):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }
        context = _context.get()
        for name in CONTEXT_FIELDS:
            if name in context:
                entry[name] = context[name]

        fields = getattr(record, "fields", None)
        if fields:
            entry["data"] = fields

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(entry, default=str)


class StructuredLogger(logging.LoggerAdapter):
    """Logger taking structured fields as keyword arguments.

    Keywords other than the logging module's own (exc_info, stack_info,
    stacklevel, extra) end up under "data" in the JSON line.
    """

    _LOGGING_KWARGS = frozenset({"exc_info", "stack_info", "stacklevel", "extra"})

    def __init__(self, name: str):
        super().__init__(logging.getLogger(name), {})

    def process(self, msg, kwargs):
        fields = {k: kwargs.pop(k) for k in list(kwargs) if k not in self._LOGGING_KWARGS}
        extra = dict(kwargs.get("extra") or {})
        if fields:
            extra["fields"] = fields
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logging(
    level: int | str = logging.INFO,
    service_name: str = SERVICE_NAME,
    use_json: bool = True
) -> None:
    """Route the root logger to stderr, as JSON lines unless use_json is False."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    if use_json:
        handler.setFormatter(JSONFormatter(service_name))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    root_logger.addHandler(handler)

    # Provider SDKs log every request at INFO
    for noisy in ("httpx", "httpcore", "google_genai", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


_access_logger = StructuredLogger("repair_assist.access")


def log_request(
    method: str,
    path: str,
    status_code: int,
    duration_ms: float,
    client_ip: Optional[str] = None,
) -> None:
    """Access log line; 5xx at ERROR, 499 (client gone) and 4xx at WARNING."""
    fields = {
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": round(duration_ms, 2),
    }
    if client_ip:
        fields["client_ip"] = _mask_ip(client_ip)

    if status_code >= 500:
        level = logging.ERROR
    elif status_code >= 400:
        level = logging.WARNING
    else:
        level = logging.INFO
    _access_logger.log(level, f"{method} {path} {status_code}", **fields)


def _mask_ip(ip: str) -> str:
    """Keep the network part only: /16 for IPv4, /48 for IPv6."""
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return "xxx"
    if address.version == 4:
        a, b, _, _ = str(address).split(".")
        return f"{a}.{b}.xxx.xxx"
    return str(ipaddress.ip_network(f"{address}/48", strict=False))
