"""Structured logging for the engine: JSON or text lines tagged with the flow they belong to."""
from __future__ import annotations
import json
import logging
from datetime import datetime, timezone

EXTRA_FIELDS = ("flow", "request_id", "sync", "concept", "action", "frames", "code")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(flow)s] - %(message)s"

# engine trace setting -> level of the "engine" logger
ENGINE_LEVELS = {"off": logging.WARNING, "trace": logging.INFO, "verbose": logging.DEBUG}


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in EXTRA_FIELDS:
            val = record.__dict__.get(key)
            if val is not None and val != "-":
                log[key] = val
        if record.exc_info:
            log["exception"] = self.formatException(record.exc_info)
        return json.dumps(log, ensure_ascii=False, default=str)


class FlowFilter(logging.Filter):
    """Give every record a ``flow`` so the text format never fails on lines outside a flow."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "flow"):
            record.flow = "-"
        return True


def setup_logging(level: str = "INFO", fmt: str = "json", engine_logging: str = "trace") -> logging.Handler:
    """Install the root handler. Calling it again replaces the handler instead of stacking one more."""
    root = logging.getLogger()
    for old in [h for h in root.handlers if getattr(h, "_engine_handler", False)]:
        root.removeHandler(old)
    handler = logging.StreamHandler()
    handler._engine_handler = True
    handler.addFilter(FlowFilter())
    handler.setFormatter(JSONFormatter() if fmt == "json" else logging.Formatter(TEXT_FORMAT))
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    logging.getLogger("engine").setLevel(ENGINE_LEVELS.get(engine_logging, logging.INFO))
    return handler
