import json
import logging
import sys
import time
from typing import Any, Dict, Iterable, Optional

# Client libraries that log every request at INFO/DEBUG.
NOISY_LOGGERS = ("httpx", "httpcore", "botocore", "boto3", "urllib3", "s3transfer", "asyncio")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created)) + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if isinstance(context, dict):
            payload.update(context)
        if hasattr(record, "extra") and isinstance(record.extra, dict):
            payload.update(record.extra)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ContextFilter(logging.Filter):
    """Stamps process-wide fields (command, lease owner) onto every record."""

    def __init__(self, **context: Any) -> None:
        super().__init__()
        self.context = {k: v for k, v in context.items() if v is not None}

    def filter(self, record: logging.LogRecord) -> bool:
        record.context = self.context
        return True


def setup_logging(
    level: str = "INFO",
    quiet: Iterable[str] = NOISY_LOGGERS,
    **context: Any,
) -> logging.Logger:
    logger = logging.getLogger()
    handler: Optional[logging.Handler] = next(
        (h for h in logger.handlers if isinstance(h.formatter, JsonFormatter)), None
    )
    if handler is None:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
    logger.setLevel(level)
    for name in quiet:
        logging.getLogger(name).setLevel(max(logging.WARNING, logger.level))
    if context:
        for existing in [f for f in handler.filters if isinstance(f, ContextFilter)]:
            handler.removeFilter(existing)
        handler.addFilter(ContextFilter(**context))
    return logger


def log_json(logger: logging.Logger, msg: str, level: int = logging.INFO, exc_info: Any = None, **extra: Any) -> None:
    logger.log(level, msg, exc_info=exc_info, extra={"extra": extra})
