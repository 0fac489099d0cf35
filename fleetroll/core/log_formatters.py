"""Formatters, handlers and per-thread context for fleetroll logs."""

import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.text import Text
from rich.theme import Theme

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}

CONSOLE_THEME = Theme(
    {
        "logging.level.debug": "dim cyan",
        "logging.level.info": "dim blue",
        "logging.level.warning": "yellow",
        "logging.level.error": "red",
        "logging.level.critical": "bold red",
        "fleetroll.event": "bright_green",
        "fleetroll.rollout": "bright_cyan",
        "fleetroll.pipeline": "bright_magenta",
        "fleetroll.fleet": "bright_blue",
    }
)


class LogContext:
    """Key/value pairs attached to every record logged from the current thread.

    Plan and run ids are bound here while an engine worker or pipeline run is
    active, so records from deep inside the store or health evaluator can be
    correlated without threading ids through every call.
    """

    def __init__(self) -> None:
        self._local = threading.local()

    def _values(self) -> Dict[str, Any]:
        values = getattr(self._local, "values", None)
        if values is None:
            values = self._local.values = {}
        return values

    def set_context(self, **kwargs: Any) -> None:
        self._values().update(kwargs)

    def get_context(self) -> Dict[str, Any]:
        return dict(self._values())

    def clear_context(self) -> None:
        self._values().clear()

    @contextmanager
    def context(self, **kwargs: Any) -> Iterator[None]:
        """Bind ``kwargs`` for the duration of the block, then restore."""
        saved = self.get_context()
        self.set_context(**kwargs)
        try:
            yield
        finally:
            values = self._values()
            values.clear()
            values.update(saved)


def extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Fields passed to a logging call through ``extra``."""
    return {
        key: value for key, value in vars(record).items() if key not in _STANDARD_ATTRS
    }


class StructuredFormatter(logging.Formatter):
    """One JSON object per record.

    ``event_type`` is lifted to the top level; other extras go under
    ``fields`` and the thread's bound context under ``context``.
    """

    def __init__(
        self,
        include_context: bool = True,
        context_getter: Optional[Callable[[], Dict[str, Any]]] = None,
    ) -> None:
        super().__init__()
        self.include_context = include_context
        self._context_getter = context_getter

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        fields = extra_fields(record)
        event_type = fields.pop("event_type", None)
        if event_type is not None:
            entry["event_type"] = event_type
        if fields:
            entry["fields"] = fields
        if self.include_context and self._context_getter is not None:
            context = self._context_getter()
            if context:
                entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class FleetrollRichHandler(RichHandler):
    """Console handler on stderr that colours records by ``event_type``."""

    STYLE_MAP = {
        "event": "fleetroll.event",
        "rollout": "fleetroll.rollout",
        "pipeline": "fleetroll.pipeline",
        "fleet": "fleetroll.fleet",
    }

    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("console", Console(theme=CONSOLE_THEME, stderr=True))
        kwargs.setdefault("show_path", False)
        kwargs.setdefault("markup", False)
        super().__init__(**kwargs)

    def render_message(self, record: logging.LogRecord, message: str) -> Text:
        text = Text(message)
        style = self.STYLE_MAP.get(getattr(record, "event_type", None))
        if style:
            text.stylize(style)
        return text
