"""
Logging setup and step log capture.

Every module logs through `logging.getLogger(__name__)`, so all stepflow
records pass through the `stepflow` logger. Step log capture attaches a
buffering handler to that logger for the duration of one step.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional

from .security.secrets import SecretsManager, SecretsMaskingFilter

ROOT_LOGGER = "stepflow"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

LOG_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "verbose": logging.INFO,
    "debug": logging.DEBUG,
    "silly": logging.DEBUG,
}


def parse_log_level(name: str) -> int:
    """Map a --log-level value to a logging level (unknown names mean INFO)."""
    return LOG_LEVELS.get(str(name).lower(), logging.INFO)


def configure_logging(level: int = logging.INFO):
    """
    Configure console logging.

    The level is set on the console handler as well as on the root logger so
    that step log capture can temporarily lower the stepflow logger's level
    without the extra records reaching the console.
    """
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)
    for handler in logging.getLogger().handlers:
        handler.setLevel(level)


def mask_secrets_in_logs(secrets_manager: SecretsManager):
    """Mask the project's secret values in everything the console handlers print."""
    for handler in logging.getLogger().handlers:
        handler.addFilter(SecretsMaskingFilter(secrets_manager))


class StepLogHandler(logging.Handler):
    """Buffers the messages of log records emitted while a step runs."""

    def __init__(self, level: int = logging.INFO):
        super().__init__(level)
        self.lines: List[str] = []

    def emit(self, record):
        try:
            self.lines.append(record.getMessage())
        except Exception:
            self.handleError(record)

    def get_text(self) -> str:
        return "\n".join(self.lines)


@contextmanager
def capture_step_log(secrets_manager: Optional[SecretsManager] = None,
                     level: int = logging.INFO) -> Iterator[StepLogHandler]:
    """
    Capture stepflow log records for the duration of the block.

    The stepflow logger's level is lowered to `level` if it is higher, and
    restored, with the handler removed, when the block exits (including on
    error).

    Usage:
        with capture_step_log() as captured:
            ...
        text = captured.get_text()
    """
    logger = logging.getLogger(ROOT_LOGGER)
    handler = StepLogHandler(level)
    if secrets_manager is not None:
        handler.addFilter(SecretsMaskingFilter(secrets_manager))

    previous_level = logger.level
    if logger.getEffectiveLevel() > level:
        logger.setLevel(level)
    logger.addHandler(handler)
    try:
        yield handler
    finally:
        logger.removeHandler(handler)
        logger.setLevel(previous_level)
