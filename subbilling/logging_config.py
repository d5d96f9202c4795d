"""
Structured JSON logging configuration for the billing engine.

- Uses python's logging + python-json-logger for structured logs.
- Carries a correlation id via ContextVar: the HTTP middleware sets it from
  X-Request-ID, the scheduler sets one per billing run.
- Entry points (app, celery worker, CLI) call configure_logging() at startup.
"""
import logging
from contextvars import ContextVar
from typing import Optional

from pythonjsonlogger import jsonlogger

from subbilling.config import cfg

# Context var to carry the correlation id across threads/async contexts
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="unknown")


class RequestIdFilter(logging.Filter):
    def filter(self, record):
        record.request_id = request_id_ctx.get()
        return True


def configure_logging(level: Optional[str] = None):
    root = logging.getLogger()
    if root.handlers:
        # already configured
        return
    root.setLevel(level or cfg.LOG_LEVEL)
    handler = logging.StreamHandler()
    fmt_fields = [
        "asctime", "levelname", "name", "message", "request_id", "module", "funcName", "lineno"
    ]
    formatter = jsonlogger.JsonFormatter(" ".join(f"%({f})s" for f in fmt_fields))
    handler.setFormatter(formatter)
    handler.addFilter(RequestIdFilter())
    root.addHandler(handler)


def set_request_id(request_id: str):
    return request_id_ctx.set(request_id)


def get_request_id() -> str:
    return request_id_ctx.get()
