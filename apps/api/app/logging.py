from __future__ import annotations

import logging
import sys

import structlog

from app.config import settings

_configured = False


def configure_logging(level: str | None = None, *, json_logs: bool | None = None) -> None:
  global _configured
  if _configured:
    return
  lvl = getattr(logging, (level or settings.log_level or "INFO").upper(), logging.INFO)
  as_json = settings.log_json if json_logs is None else json_logs

  handler = logging.StreamHandler(sys.stderr)
  handler.setFormatter(logging.Formatter("%(message)s"))
  root = logging.getLogger("app")
  root.setLevel(lvl)
  root.addHandler(handler)
  root.propagate = False

  renderer = structlog.processors.JSONRenderer() if as_json else structlog.dev.ConsoleRenderer(colors=False)
  structlog.configure(
    processors=[
      structlog.contextvars.merge_contextvars,
      structlog.stdlib.filter_by_level,
      structlog.stdlib.add_logger_name,
      structlog.stdlib.add_log_level,
      structlog.processors.TimeStamper(fmt="iso"),
      structlog.processors.format_exc_info,
      structlog.processors.UnicodeDecoder(),
      renderer,
    ],
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
  )
  _configured = True
