"""One place to set up conductor logging.

The CLI calls ``LoggingFactory.initialize()`` with values from ``Config``;
library code only needs ``get_logger(__name__)``, which falls back to
defaults when nothing was initialized.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

# Component loggers whose level follows the verbosity switch
COMPONENT_LOGGERS = (
    "conductor.orchestration",
    "conductor.queue",
    "conductor.monitoring",
    "conductor.providers",
)
EXECUTOR_LOGGER = "conductor.orchestration.workflow_engine.executors"


class LoggingFactory:
    """Process-wide logging setup, applied at most once.

    Records go to ``<log_dir>/conductor.log`` and, unless disabled, to stderr.
    """

    _initialized = False
    _log_dir = Path("logs")

    @classmethod
    def initialize(
        cls,
        log_dir: Optional[Path] = None,
        level: int = logging.INFO,
        format_string: Optional[str] = None,
        log_to_file: bool = True,
        log_to_console: bool = True,
    ) -> None:
        """Configure the root logger. Later calls are no-ops.

        Args:
            log_dir: Where ``conductor.log`` is written (default ``./logs``)
            level: Root logger level
            format_string: ``logging.Formatter`` format, the usual
                time/name/level/message layout when omitted
            log_to_file: Whether to add a file handler
            log_to_console: Whether to add a stderr handler (the CLI attaches
                its own Rich handler instead)
        """
        if cls._initialized:
            return

        if log_dir:
            cls._log_dir = log_dir

        if format_string is None:
            format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

        handlers: list[logging.Handler] = [logging.StreamHandler()] if log_to_console else []
        if log_to_file:
            cls._log_dir.mkdir(parents=True, exist_ok=True)
            handlers.insert(0, logging.FileHandler(cls._log_dir / "conductor.log"))

        if handlers:
            logging.basicConfig(level=level, format=format_string, handlers=handlers)
        else:
            logging.getLogger().setLevel(level)

        # Step-level chatter stays at INFO unless verbose mode is switched on
        logging.getLogger(EXECUTOR_LOGGER).setLevel(logging.INFO)

        cls._initialized = True

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """Return ``logging.getLogger(name)``, initializing defaults first if needed."""
        if not cls._initialized:
            cls.initialize()

        return logging.getLogger(name)

    @classmethod
    def set_level(cls, name: str, level: int) -> None:
        """Set the logging level for a specific logger."""
        logging.getLogger(name).setLevel(level)

    @classmethod
    def configure_verbose(cls, verbose: bool = False) -> None:
        """DEBUG everywhere when ``verbose``, INFO otherwise."""
        level = logging.DEBUG if verbose else logging.INFO
        for name in ("", "conductor", *COMPONENT_LOGGERS, EXECUTOR_LOGGER):
            logging.getLogger(name).setLevel(level)


def get_logger(name: str) -> logging.Logger:
    """Convenience wrapper around :meth:`LoggingFactory.get_logger`."""
    return LoggingFactory.get_logger(name)
