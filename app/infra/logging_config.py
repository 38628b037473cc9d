# app/infra/logging_config.py
import logging
import sys
import json
from datetime import datetime, timezone

# Extra fields carried through from `extra={...}` / LogContext
CONTEXT_FIELDS = ("request_id", "job_id", "attempt_id", "cleaner_id", "chat_id")


def mask_chat_id(chat_id: str) -> str:
    """Mask a chat id for logging (keeps first 4 and last 2 chars)"""
    chat_id = str(chat_id)
    if len(chat_id) > 6:
        return chat_id[:4] + "****" + chat_id[-2:]
    return chat_id


def mask_token(token: str | None) -> str:
    """Offer tokens authorise accept/decline, only a prefix is ever logged"""
    if not token:
        return "-"
    return token[:4] + "…"


class JSONFormatter(logging.Formatter):
    """Format logs as JSON for production environments"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for field_name in CONTEXT_FIELDS:
            if hasattr(record, field_name):
                value = getattr(record, field_name)
                if field_name == "chat_id":
                    value = mask_chat_id(value)
                log_data[field_name] = value

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable format for development"""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.COLORS["RESET"])
        reset = self.COLORS["RESET"]

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        # Build context string
        context_parts = []
        if hasattr(record, "job_id"):
            context_parts.append(f"job={record.job_id}")
        if hasattr(record, "attempt_id"):
            context_parts.append(f"attempt={record.attempt_id}")
        if hasattr(record, "cleaner_id"):
            context_parts.append(f"cleaner={record.cleaner_id}")
        if hasattr(record, "chat_id"):
            context_parts.append(f"chat={mask_chat_id(record.chat_id)}")

        context = f" [{' '.join(context_parts)}]" if context_parts else ""

        line = (
            f"{color}[{timestamp}] {record.levelname:8}{reset} "
            f"{record.name}{context} - {record.getMessage()}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str = "INFO", use_json: bool = False) -> None:
    """
    Configure application logging

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: If True, use JSON format (for production)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if use_json:
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(ConsoleFormatter())

    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)

    logging.info(f"Logging configured: level={level}, json={use_json}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name"""
    return logging.getLogger(name)


# Context-aware logging helpers
class LogContext:
    """Add dispatch context (job / attempt / cleaner) to log records"""

    def __init__(
            self,
            logger: logging.Logger,
            job_id: str | None = None,
            attempt_id: str | None = None,
            cleaner_id: str | None = None,
            request_id: str | None = None,
    ):
        self.logger = logger
        self.context = {
            k: v for k, v in {
                "job_id": job_id,
                "attempt_id": attempt_id,
                "cleaner_id": cleaner_id,
                "request_id": request_id,
            }.items() if v is not None
        }

    def bind(self, **fields) -> "LogContext":
        """Return a new context with extra fields (None values are ignored)"""
        merged = {**self.context, **{k: v for k, v in fields.items() if v is not None}}
        ctx = LogContext(self.logger)
        ctx.context = merged
        return ctx

    def _log(self, level: int, msg: str, *args, **kwargs):
        extra = kwargs.pop("extra", {})
        extra.update(self.context)
        self.logger.log(level, msg, *args, extra=extra, **kwargs)

    def debug(self, msg: str, *args, **kwargs):
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs):
        kwargs.setdefault("exc_info", True)
        self._log(logging.ERROR, msg, *args, **kwargs)
