"""Component-tagged logger over stdlib logging.

Each call names the component it comes from; records go to the
``vaultagent.<component>`` logger so the normal handler configuration
(see cli.py) applies. The minimum level is held here so it can be
changed at runtime without touching handler setup.
"""
from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


_ORDER = {
    LogLevel.DEBUG: 0,
    LogLevel.INFO: 1,
    LogLevel.WARN: 2,
    LogLevel.ERROR: 3,
}

_STDLIB_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class ComponentLogger:
    def __init__(
        self,
        level: LogLevel | str = LogLevel.DEBUG,
        namespace: str = "vaultagent",
    ) -> None:
        self._level = LogLevel(level)
        self._namespace = namespace

    def set_level(self, level: LogLevel | str) -> None:
        self._level = LogLevel(level)

    def get_level(self) -> LogLevel:
        return self._level

    def debug(self, component: str, message: str, data: Any = None) -> None:
        self._log(LogLevel.DEBUG, component, message, data)

    def info(self, component: str, message: str, data: Any = None) -> None:
        self._log(LogLevel.INFO, component, message, data)

    def warn(self, component: str, message: str, data: Any = None) -> None:
        self._log(LogLevel.WARN, component, message, data)

    def error(self, component: str, message: str, data: Any = None) -> None:
        self._log(LogLevel.ERROR, component, message, data)

    def _log(
        self, level: LogLevel, component: str, message: str, data: Any,
    ) -> None:
        if _ORDER[level] < _ORDER[self._level]:
            return
        target = logging.getLogger(f"{self._namespace}.{component}")
        if data is None:
            target.log(_STDLIB_LEVELS[level], "%s", message)
            return
        try:
            payload = json.dumps(data, default=str)
        except (TypeError, ValueError):
            payload = repr(data)
        target.log(_STDLIB_LEVELS[level], "%s %s", message, payload)


default_logger = ComponentLogger()
