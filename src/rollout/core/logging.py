"""Run logging: console, JSON lines and a per-command log file."""
import sys
import json
import inspect
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger as loguru_logger
from opentelemetry import trace

from src.rollout.core.config import Settings

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[command]}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DDTHH:mm:ss.SSSZ} | {level: <8} | {extra[command]} | {message}"

# Fields every record carries so the formats above never miss a key
DEFAULT_EXTRA = {"command": "-", "version": None, "kind": None}


def current_trace_id() -> Optional[str]:
    """Hex trace id of the active span, None outside a recording span."""
    span = trace.get_current_span()
    if not span.is_recording():
        return None
    context = span.get_span_context()
    return format(context.trace_id, "032x") if context.is_valid else None


class InterceptHandler(logging.Handler):
    """Route standard-library records (httpx, httpcore) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = loguru_logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = inspect.currentframe(), 0
        while frame:
            filename = frame.f_code.co_filename
            if depth > 0 and filename != logging.__file__:
                break
            frame = frame.f_back
            depth += 1

        loguru_logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _json_line(record: Dict[str, Any]) -> str:
    entry = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name,
        "message": record["message"],
        "service": "rollout-controller",
        "module": record["name"],
        "trace_id": current_trace_id(),
    }
    entry.update({k: v for k, v in record["extra"].items() if k != "json" and v is not None})

    if record["exception"]:
        exc = record["exception"]
        entry["exception"] = {
            "type": exc.type.__name__ if exc.type else "Unknown",
            "value": str(exc.value) if exc.value else "",
        }
    return json.dumps(entry, default=str)


def json_formatter(record: Dict[str, Any]) -> str:
    """Loguru format callable emitting one JSON object per line.

    The serialized line is stashed in ``extra`` so loguru never parses the
    JSON braces as format fields.
    """
    record["extra"]["json"] = _json_line(record)
    return "{extra[json]}\n"


def setup_logging(
    settings: Settings,
    verbose: bool = False,
    log_name: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
) -> None:
    """Configure loguru sinks for one controller command.

    Args:
        settings: Loaded settings (ENV, DEBUG and LOG_DIR are used)
        verbose: Force DEBUG level (``--verbose``)
        log_name: File name of the run log under LOG_DIR; no file sink when omitted
        context: Fields bound to every record (command, version, kind)
    """
    log_level = "DEBUG" if (verbose or settings.DEBUG) else "INFO"
    extra = {**DEFAULT_EXTRA, **(context or {})}

    loguru_logger.remove()
    loguru_logger.configure(extra=extra)

    if settings.ENV == "production":
        loguru_logger.add(sys.stderr, format=json_formatter, level=log_level)
    else:
        loguru_logger.add(sys.stderr, format=CONSOLE_FORMAT, level=log_level, colorize=True)

    if settings.LOG_DIR and log_name:
        loguru_logger.add(
            str(Path(settings.LOG_DIR) / log_name),
            format=FILE_FORMAT,
            level="DEBUG",
            rotation="10 MB",
            retention=10,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


logger = loguru_logger
