from __future__ import annotations

import json
import logging
import sys
from typing import Any

from votesim.logger.base import Logger

_MAX_FIELD_CHARS = 500


def _render_value(value: Any) -> str:
    text = value if isinstance(value, str) else repr(value)
    if len(text) > _MAX_FIELD_CHARS:
        return text[:_MAX_FIELD_CHARS] + "...[truncated]"
    return text


class ConsoleLogger(Logger):
    """Structured logger writing one line per event through ``logging``.

    Text format: ``LEVEL message key=value key=value``.
    JSON format: one object per line with ``level``, ``message`` and the fields.
    """

    def __init__(
        self,
        name: str = "votesim",
        *,
        level: int = logging.INFO,
        json_format: bool = False,
        stream=None,
    ) -> None:
        self._json_format = json_format
        self._logger = logging.getLogger(name)
        self._logger.setLevel(level)
        self._logger.propagate = False

        if not self._logger.handlers:
            handler = logging.StreamHandler(stream or sys.stderr)
            handler.setFormatter(logging.Formatter("%(message)s"))
            self._logger.addHandler(handler)

    def set_level(self, level: int) -> None:
        self._logger.setLevel(level)

    def use_json(self, enabled: bool = True) -> None:
        self._json_format = enabled

    def debug(self, message: str, **kwargs: Any) -> None:
        self._emit(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._emit(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._emit(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._emit(logging.ERROR, message, kwargs)

    def _emit(self, level: int, message: str, fields: dict[str, Any]) -> None:
        if not self._logger.isEnabledFor(level):
            return
        self._logger.log(level, self._format(level, message, fields))

    def _format(self, level: int, message: str, fields: dict[str, Any]) -> str:
        level_name = logging.getLevelName(level)
        if self._json_format:
            payload: dict[str, Any] = {"level": level_name, "message": message}
            for key, value in fields.items():
                payload[key] = value if isinstance(value, (int, float, bool, type(None))) else _render_value(value)
            return json.dumps(payload, sort_keys=True)

        parts = [level_name, message]
        parts.extend(f"{key}={_render_value(value)}" for key, value in fields.items() if key != "event")
        return " ".join(parts)
