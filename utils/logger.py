"""Rotating application log with request correlation and structured extras."""
import json
import logging
import os
import uuid
from logging.handlers import RotatingFileHandler

from flask import g, has_request_context, request

REQUEST_ID_HEADER = "X-Request-ID"

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime", "trace_id"}


class RequestContextFilter(logging.Filter):
    """Stamp records with the id of the HTTP request that produced them."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = getattr(g, "request_id", "-") if has_request_context() else "-"
        return True


class ExtraFieldsFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = {k: v for k, v in vars(record).items() if k not in _RESERVED and not k.startswith("_")}
        if not extras:
            return line
        return f"{line} | {json.dumps(extras, default=str, sort_keys=True)}"


def assign_request_id() -> None:
    """Reuse a sane inbound ``X-Request-ID`` or mint one; stored on ``g``."""
    supplied = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
    g.request_id = supplied[:64] if supplied.replace("-", "").isalnum() else uuid.uuid4().hex


def init_logging(app) -> logging.Logger:
    log_dir = app.config.get("LOG_DIR") or os.path.join(app.instance_path, "logs")
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "app.log")

    level = getattr(logging, (app.config.get("LOG_LEVEL") or "INFO").upper(), logging.INFO)
    formatter = ExtraFieldsFormatter(
        fmt="%(asctime)s | %(levelname)s | %(trace_id)s | %(module)s:%(lineno)d | %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )
    context_filter = RequestContextFilter()

    handlers = [
        RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=5, encoding="utf-8"),
        logging.StreamHandler(),
    ]
    logger = logging.getLogger(app.name)
    logger.setLevel(level)
    # create_app can run several times in one process; old handlers hold open files.
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)
        logger.addHandler(handler)
    logger.propagate = False

    app.logger.handlers = logger.handlers
    app.logger.setLevel(level)

    logger.info("Logging initialized", extra={"path": log_path, "level": logging.getLevelName(level)})
    return logger
