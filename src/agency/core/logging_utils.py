import collections
import json
import logging
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, OrderedDict

_MAX_CACHED_LOGGERS = 16
_LOGGER_CACHE: "OrderedDict[str, logging.Logger]" = collections.OrderedDict()


@dataclass(frozen=True)
class LogConfig:
    path: Path
    max_bytes: int = 1_048_576
    backup_count: int = 3
    level: int = logging.INFO

    @classmethod
    def for_data_dir(cls, data_dir: Path) -> "LogConfig":
        return cls(path=data_dir / "logs" / "agency.log")


def setup_rotating_logger(name: str, log_config: LogConfig) -> logging.Logger:
    """
    Configure (or retrieve) a rotating logger for the given name.
    Each logger owns a single handler; module loggers under ``name``
    propagate into it.
    """
    existing = _LOGGER_CACHE.get(name)
    if existing is not None:
        _LOGGER_CACHE.move_to_end(name)
        return existing

    log_path: Path = log_config.path
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_path,
        maxBytes=log_config.max_bytes,
        backupCount=log_config.backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    )

    logger = logging.getLogger(name)
    logger.handlers.clear()
    logger.setLevel(log_config.level)
    logger.addHandler(handler)
    logger.propagate = False

    _LOGGER_CACHE[name] = logger
    _LOGGER_CACHE.move_to_end(name)
    while len(_LOGGER_CACHE) > _MAX_CACHED_LOGGERS:
        _, evicted = _LOGGER_CACHE.popitem(last=False)
        for h in list(evicted.handlers):
            h.close()
        evicted.handlers.clear()
    return logger


def _format_value(value: Any) -> str:
    if isinstance(value, Path):
        value = str(value)
    try:
        return json.dumps(value, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return json.dumps(str(value))


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    """Emit ``event key=value ...`` with JSON-encoded values."""
    if not logger.isEnabledFor(level):
        return
    parts = [event]
    for key in sorted(fields):
        parts.append(f"{key}={_format_value(fields[key])}")
    logger.log(level, " ".join(parts))
