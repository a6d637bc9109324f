import json
import logging
import os
import sys
import typing as _t
from contextvars import ContextVar
from typing import Any, Dict, Optional

# Context var to carry a request id through the request lifecycle
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# structured fields picked up from `extra=` when present on a record
_EXTRA_FIELDS = (
    "path",
    "method",
    "status",
    "duration_ms",
    "client",
    "user_agent",
    "game_id",
    "connection_id",
    "user_session",
    "event",
    "ws_count",
    "revealed_by",
    "count",
    "errors",
    "error",
)


class JsonFormatter(logging.Formatter):
    """JSON-lines formatter for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "time": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        rid = request_id_ctx.get()
        if rid:
            payload["request_id"] = rid
        for key in _EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                payload[key] = val
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ColorFormatter(logging.Formatter):
    """Human-friendly, colorized formatter that uses structured fields when present."""

    RESET = "\033[0m"
    BOLD = "\033[1m"
    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _color(self, text: str, color: str) -> str:
        if not self.use_color:
            return text
        return f"{color}{text}{self.RESET}"

    def _status_str(self, status: Optional[int]) -> Optional[str]:
        if not isinstance(status, int):
            return None
        if 200 <= status < 300:
            return self._color(str(status), "\033[32m")
        if 300 <= status < 400:
            return self._color(str(status), "\033[36m")
        if 400 <= status < 500:
            return self._color(str(status), "\033[33m")
        return self._color(str(status), "\033[31m")

    def _request_line(self, record: logging.LogRecord) -> Optional[str]:
        parts: _t.List[str] = []
        method = getattr(record, "method", None)
        path = getattr(record, "path", None)
        status_str = self._status_str(getattr(record, "status", None))
        duration_ms = getattr(record, "duration_ms", None)
        if method:
            parts.append(self._color(method, self.BOLD))
        if path:
            parts.append(self._color(path, "\033[36m"))
        if status_str:
            parts.append(status_str)
        if duration_ms is not None:
            parts.append(self._color(f"{duration_ms}ms", "\033[90m"))
        return " ".join(parts) if parts else None

    def _context_str(self, record: logging.LogRecord) -> Optional[str]:
        ctx: _t.List[str] = []
        for key in ("game_id", "connection_id", "user_session", "event", "revealed_by", "count", "ws_count", "client", "error"):
            val = getattr(record, key, None)
            if val is not None:
                ctx.append(f"{key}={val}")
        ua = getattr(record, "user_agent", None)
        if ua:
            u = ua if len(ua) <= 64 else ua[:61] + "..."
            ctx.append(f"ua=\"{u}\"")
        return "[" + " ".join(ctx) + "]" if ctx else None

    def format(self, record: logging.LogRecord) -> str:
        level = record.levelname
        rid = request_id_ctx.get()

        parts: _t.List[str] = [
            self._color(level, self.COLORS.get(level, "")),
            self.formatTime(record, datefmt="%H:%M:%S"),
        ]
        if rid:
            parts.append(self._color(f"rid={rid}", "\033[35m"))
        parts.append(self._color(record.name, "\033[34m"))

        req_line = self._request_line(record)
        if req_line:
            parts.append(req_line)

        msg = record.getMessage()
        if msg:
            parts.extend(["-", msg])

        ctx = self._context_str(record)
        if ctx:
            parts.append(self._color(ctx, "\033[90m"))

        if record.exc_info:
            parts.append("\n" + self.formatException(record.exc_info))

        return " ".join(parts)


def _isatty(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except Exception:
        return False


def level_from_env(default: int = logging.INFO) -> int:
    name = os.getenv("LOG_LEVEL", "").upper()
    value = logging.getLevelName(name) if name else default
    return value if isinstance(value, int) else default


def setup_logging(level: Optional[int] = None) -> logging.Logger:
    """Configure root and uvicorn loggers.

    - LOG_FORMAT=pretty forces colorized output, LOG_FORMAT=json forces JSON
    - otherwise: pretty if stdout is a TTY, else JSON
    - LOG_COLOR=0 disables ANSI colors in pretty mode
    - LOG_LEVEL overrides the level when no explicit level is passed
    """
    if level is None:
        level = level_from_env()
    root = logging.getLogger()
    root.setLevel(level)
    for h in root.handlers[:]:
        root.removeHandler(h)

    fmt_env = os.getenv("LOG_FORMAT", "").lower()
    color_env = os.getenv("LOG_COLOR", "1").lower()
    use_pretty = (fmt_env == "pretty") or (fmt_env == "" and _isatty(sys.stdout))
    use_color = use_pretty and color_env not in ("0", "false", "no")

    handler = logging.StreamHandler(sys.stdout)
    if use_pretty:
        handler.setFormatter(ColorFormatter(use_color=use_color))
    else:
        handler.setFormatter(JsonFormatter())
    root.addHandler(handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers = [handler]
        lg.setLevel(level)
        lg.propagate = False

    return root


def get_logger(name: str = "twotruths") -> logging.Logger:
    return logging.getLogger(name)
