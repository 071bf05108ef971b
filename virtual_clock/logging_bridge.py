"""
Bridge from standard logging to an application log callback.

The engine logs through ``logging.getLogger(__name__)`` in every module.
Applications that want the messages elsewhere pass a
``log_callback(message, level)``; a CallbackHandler attached to the
package logger forwards each record to it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

PACKAGE_LOGGER = "virtual_clock"

_saved_level: int | None = None


class CallbackHandler(logging.Handler):
    """Forward log records to ``callback(message, level_name)``."""

    def __init__(self, callback: Callable[[str, str], None], level: int = logging.INFO) -> None:
        super().__init__(level)
        self.callback = callback

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.callback(self.format(record), record.levelname)
        except Exception:
            self.handleError(record)


def _callback_handlers(package_logger: logging.Logger) -> list[CallbackHandler]:
    return [h for h in package_logger.handlers if isinstance(h, CallbackHandler)]


def install_log_callback(
    callback: Callable[[str, str], None], level: int = logging.INFO
) -> CallbackHandler:
    """
    Attach a CallbackHandler to the package logger and return it.

    The package logger level is lowered to ``level`` if needed. The
    level it had before the first callback was installed comes back
    when the last one is removed.
    """
    global _saved_level
    handler = CallbackHandler(callback, level)
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    if not _callback_handlers(package_logger):
        _saved_level = package_logger.level
    if package_logger.level == logging.NOTSET or package_logger.level > level:
        package_logger.setLevel(level)
    package_logger.addHandler(handler)
    return handler


def remove_log_callback(handler: CallbackHandler) -> None:
    global _saved_level
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.removeHandler(handler)
    handler.close()
    if _saved_level is not None and not _callback_handlers(package_logger):
        package_logger.setLevel(_saved_level)
        _saved_level = None
