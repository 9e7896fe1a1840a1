import json, logging, sys, time
from pathlib import Path
from typing import Union

_RESERVED = ("msg", "args", "exc_info", "exc_text", "stack_info", "stack_level", "created",
             "msecs", "relativeCreated", "levelno", "levelname", "pathname", "filename",
             "module", "lineno", "funcName", "thread", "threadName", "processName", "process",
             "name", "message", "taskName")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        # Allow extra fields via record.__dict__ (filtered)
        for k, v in record.__dict__.items():
            if k in _RESERVED:
                continue
            try:
                json.dumps({k: v})
                payload[k] = v
            except (TypeError, ValueError):
                payload[k] = str(v)
        return json.dumps(payload)


def get_logger(name: str = "connlog") -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    h = logging.StreamHandler(sys.stdout)
    h.setFormatter(JsonFormatter())
    logger.addHandler(h)
    logger.propagate = False
    return logger


def configure_file_logger(role: str, logger: logging.Logger, log_dir: Union[str, Path]) -> Path:
    """Mirror ``logger`` into ``<log_dir>/<role>-<timestamp>.log`` and return the path."""
    base = Path(log_dir)
    base.mkdir(parents=True, exist_ok=True)
    path = base / f"{role}-{time.strftime('%Y%m%d-%H%M%S')}.log"
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    return path
