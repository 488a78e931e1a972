"""Structured logging for songstore.

Two rotating streams are written under the log directory:

- ``store.log``: every event, rendered for humans
- ``merge.log``: JSON lines from ``songstore.persistence`` only (context
  saves, merges, background tasks)

:func:`configure_logging` applies a :class:`~songstore.config.LoggingConfig`;
:meth:`PersistentContainer.from_config` calls it.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any
from uuid import UUID

import structlog

from songstore.storage.models import ObjectID

if TYPE_CHECKING:
    from songstore.config import AppConfig

_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
_BACKUP_COUNT = 5
_STORE_LOG = "store.log"
_MERGE_LOG = "merge.log"
_MERGE_LOGGER = "songstore.persistence"


def _stringify_identities(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Render object ids and UUIDs the way they appear in the store."""
    for key, value in event_dict.items():
        if isinstance(value, (ObjectID, UUID)):
            event_dict[key] = str(value)
    return event_dict


# Run for structlog events and for foreign stdlib records alike.
_shared_processors: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
    _stringify_identities,
    structlog.processors.StackInfoRenderer(),
]


def _rotating_handler(path: Path, formatter: logging.Formatter, only: str | None = None) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT, encoding="utf-8")
    handler.setFormatter(formatter)
    if only is not None:
        handler.addFilter(logging.Filter(only))
    return handler


def setup_logging(log_level: str = "info", log_dir: Path | None = None) -> None:
    """Configure structlog on top of stdlib logging.

    Parameters
    ----------
    log_level:
        Python log-level name (``debug``, ``info``, ``warning``, etc.).
    log_dir:
        Directory for ``store.log`` and ``merge.log``.  When *None* no file
        handlers are installed.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[*_shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        human = structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(colors=False),
            foreign_pre_chain=_shared_processors,
        )
        machine = structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=_shared_processors,
        )
        root.addHandler(_rotating_handler(log_dir / _STORE_LOG, human))
        root.addHandler(_rotating_handler(log_dir / _MERGE_LOG, machine, only=_MERGE_LOGGER))

    # SQL statement tracing is too chatty below WARNING.
    logging.getLogger("aiosqlite").setLevel(max(level, logging.WARNING))
    sys.excepthook = _log_uncaught


def configure_logging(config: AppConfig) -> None:
    """Apply the ``[logging]`` section of *config*."""
    log_dir = config.log_dir if config.logging.to_file else None
    setup_logging(config.logging.level, log_dir)


def _log_uncaught(exc_type: type[BaseException], exc_value: BaseException, exc_tb: Any) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)
        return
    logging.getLogger("songstore").critical("Unhandled exception", exc_info=(exc_type, exc_value, exc_tb))
