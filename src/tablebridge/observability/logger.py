import json
import logging
import sys
import time
import uuid

LOGGER_NAME = "tablebridge"

RESET = "\033[0m"

# Outcome suffix of an event type -> ANSI colour
EVENT_COLORS = {
    "FAILED": "\033[31m",
    "WARNING": "\033[33m",
    "STARTED": "\033[34m",
    "COMPLETED": "\033[32m",
    "EVENT": "\033[36m",
}

_color = False


def _build_logger() -> logging.Logger:
    log = logging.getLogger(LOGGER_NAME)
    if not log.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(message)s"))
        log.addHandler(handler)
        log.setLevel(logging.INFO)
        log.propagate = False
    return log


logger = _build_logger()


def configure_logging(level: str = "INFO", color: bool = False) -> None:
    """
    Applied once from Settings by the CLI and the API app.
    Colour is only used when stderr is a terminal.
    """
    global _color
    logger.setLevel(level.upper())
    _color = bool(color) and sys.stderr.isatty()


def event_color(event_type: str) -> str:
    """ANSI colour for READ_COMPLETED, SAVE_FAILED, AUDIT_EVENT and the like."""
    suffix = event_type.rsplit("_", 1)[-1]
    return EVENT_COLORS.get(suffix, "")


def generate_request_id() -> str:
    return str(uuid.uuid4())


def log_event(event_type: str, payload: dict, level: int = logging.INFO) -> None:
    """
    Emit one JSON object per line: {"event_type": ..., **payload}.
    """
    text = json.dumps({"event_type": event_type, **payload}, default=str)
    color = event_color(event_type) if _color else ""
    if color:
        text = f"{color}{text}{RESET}"
    logger.log(level, text)


class RequestTimer:
    def __init__(self):
        self.start_time = time.time()

    def duration(self) -> float:
        return round(time.time() - self.start_time, 4)
