"""
MedRefer structured logging.

structlog renders every event; the standard library handlers only decide
where the rendered line ends up (stderr, a daily file, or nowhere).
"""

from __future__ import annotations

import logging
import sys
import time
from datetime import date
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from medrefer.core.config import LoggingConfig

DEFAULT_LOGGER_NAME = "medrefer"

_configured = False


def _build_handlers(config: LoggingConfig) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []

    if config.console_enabled:
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(config.level)
        handlers.append(console)

    if config.file_enabled:
        config.log_directory.mkdir(parents=True, exist_ok=True)
        path = config.log_directory / f"medrefer_{date.today():%Y%m%d}.log"
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    return handlers or [logging.NullHandler()]


def _renderer(config: LoggingConfig) -> list[structlog.types.Processor]:
    if config.json_format:
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=config.console_enabled and sys.stderr.isatty())]


def setup_logging(config: LoggingConfig) -> None:
    """Configure structured logging once per process."""
    global _configured

    if _configured:
        return

    logging.basicConfig(level=logging.DEBUG, handlers=_build_handlers(config), format="%(message)s")

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            *_renderer(config),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _configured = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name or DEFAULT_LOGGER_NAME)


def bind_session(session_id: str) -> None:
    """Tag every following event on this thread with ``session_id``."""
    structlog.contextvars.bind_contextvars(session_id=session_id)


def unbind_session() -> None:
    structlog.contextvars.unbind_contextvars("session_id")


class OperationLogger:
    """Times a block and logs ``Starting``/``Completed``/``Failed <operation>``.

    Fields passed to the constructor or to :meth:`update` are attached to
    the closing event.
    """

    def __init__(self, operation: str, logger: Any | None = None, **fields: Any):
        self.operation = operation
        self.logger = logger or get_logger()
        self.fields = fields
        self._started: float | None = None

    @property
    def elapsed_ms(self) -> int:
        if self._started is None:
            return 0
        return int((time.perf_counter() - self._started) * 1000)

    def update(self, **fields: Any) -> None:
        self.fields.update(fields)

    def __enter__(self) -> OperationLogger:
        self._started = time.perf_counter()
        self.logger.debug(f"Starting {self.operation}", **self.fields)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        fields = {**self.fields, "duration_ms": self.elapsed_ms}
        if exc_type is None:
            self.logger.info(f"Completed {self.operation}", **fields)
            return
        self.logger.error(
            f"Failed {self.operation}",
            error_type=exc_type.__name__,
            error=str(exc_val),
            **fields,
        )
