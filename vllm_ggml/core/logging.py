"""
vllm-ggml :: Structured Logging

Structured logging with JSON or human-readable output.
Library code never prints — loader and engine report through here.

Records from a checkpoint load carry `model_path` plus keyword fields
(e.g. load_ms); both formatters render them.

INL - 2025
"""

import logging
import json
import time
import sys
from typing import Optional


def _fields(record: logging.LogRecord) -> dict:
    fields = {}
    if hasattr(record, "model_path"):
        fields["model_path"] = record.model_path
    fields.update(getattr(record, "extra_data", {}))
    return fields


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_fields(record))
        return json.dumps(entry)


class HumanFormatter(logging.Formatter):
    """Coloured single line: time, level, message, then key=value fields."""

    COLORS = {"DEBUG": "\033[36m", "INFO": "\033[32m", "WARNING": "\033[33m"}
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "\033[31m")
        ts = self.formatTime(record, "%H:%M:%S")
        msg = f"{color}{ts} [{record.levelname:>7}]{self.RESET} {record.getMessage()}"
        fields = _fields(record)
        if fields:
            msg += " [" + " ".join(f"{k}={v}" for k, v in fields.items()) + "]"
        return msg


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the `vllm_ggml` logger.

    Args:
        level: DEBUG shows per-tensor load lines and mem_per_token
        json_output: JSON lines on stderr instead of coloured text
        log_file: also append JSON lines here
    """
    logger = logging.getLogger("vllm_ggml")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(JSONFormatter() if json_output else HumanFormatter())
    logger.addHandler(console)

    if log_file:
        fh = logging.FileHandler(log_file)
        fh.setFormatter(JSONFormatter())  # Always JSON for files
        logger.addHandler(fh)

    return logger


def get_logger(name: str = "vllm_ggml") -> logging.Logger:
    return logging.getLogger(name)


class LoadLogger:
    """Checkpoint-scoped logging: tags every record with the model path."""

    def __init__(self, model_path: str, logger: Optional[logging.Logger] = None):
        self.model_path = model_path
        self.logger = logger or get_logger("vllm_ggml.loader")
        self.start_time = time.perf_counter()

    def _log(self, level: int, msg: str, fields: dict):
        self.logger.log(level, msg, extra={"model_path": self.model_path, "extra_data": fields})

    def debug(self, msg: str, **kwargs):
        self._log(logging.DEBUG, msg, kwargs)

    def info(self, msg: str, **kwargs):
        self._log(logging.INFO, msg, kwargs)

    def warning(self, msg: str, **kwargs):
        self._log(logging.WARNING, msg, kwargs)

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.start_time) * 1000
