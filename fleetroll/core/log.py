"""Logging for fleetroll.

Every module logger lives under the ``fleetroll`` namespace. Handlers are
attached once, to the namespace root, which does not propagate: embedding
applications keep their own root configuration untouched.

Records carry structured data through ``extra``; the helpers below set an
``event_type`` that the console handler uses for colouring and the JSON
formatter lifts to the top level.
"""

import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union

from .log_formatters import FleetrollRichHandler, LogContext, StructuredFormatter

ROOT_LOGGER_NAME = "fleetroll"


class Logger(Protocol):
    """Protocol for logger instances to enable dependency injection."""

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log debug message."""

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log info message."""

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log warning message."""

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log error message."""

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log exception with traceback."""


class LogManager:
    """Owns the handlers on the ``fleetroll`` namespace root."""

    def __init__(self, root_name: str = ROOT_LOGGER_NAME) -> None:
        self._root = logging.getLogger(root_name)
        self._root.propagate = False
        self._root.setLevel(logging.DEBUG)
        self._handlers: List[logging.Handler] = []
        self._configured = False
        self._lock = threading.Lock()
        self.context = LogContext()

    def configure(
        self,
        level: Union[int, str] = logging.INFO,
        log_file: Optional[Path] = None,
        enable_json: bool = True,
        enable_console: bool = True,
        console_level: Optional[Union[int, str]] = None,
    ) -> None:
        """Attach console and file handlers. Later calls are ignored until ``shutdown``."""
        with self._lock:
            if self._configured:
                return
            if enable_console:
                console = FleetrollRichHandler(show_time=True)
                console.setLevel(console_level or level)
                self._attach(console)
            if enable_json and log_file:
                self._attach(self._file_handler(Path(log_file), level))
            self._configured = True

    def add_file_logging(self, log_file: Path, level: Union[int, str]) -> None:
        with self._lock:
            self._attach(self._file_handler(Path(log_file), level))

    def get_logger(self, name: str) -> logging.Logger:
        if name != self._root.name and not name.startswith(f"{self._root.name}."):
            name = f"{self._root.name}.{name}"
        return logging.getLogger(name)

    def shutdown(self) -> None:
        """Detach and close every handler."""
        with self._lock:
            for handler in self._handlers:
                self._root.removeHandler(handler)
                try:
                    handler.close()
                except (OSError, RuntimeError):
                    pass  # already closed
            self._handlers.clear()
            self._configured = False
        self.context.clear_context()

    def _file_handler(self, log_file: Path, level: Union[int, str]) -> logging.Handler:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setFormatter(StructuredFormatter(context_getter=self.context.get_context))
        handler.setLevel(level)
        return handler

    def _attach(self, handler: logging.Handler) -> None:
        self._root.addHandler(handler)
        self._handlers.append(handler)


# Global log manager instance
_log_manager = LogManager()


def configure_logging(**kwargs: Any) -> None:
    """Configure the global logging system."""
    _log_manager.configure(**kwargs)


def add_file_logging(log_file: Path, level: Union[int, str] = logging.DEBUG) -> None:
    """Also write JSON lines to ``log_file``."""
    _log_manager.add_file_logging(log_file, level)


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``fleetroll`` namespace."""
    return _log_manager.get_logger(name)


def shutdown_logging() -> None:
    _log_manager.shutdown()


def log_event(logger: Logger, event_type: str, message: str, **kwargs: Any) -> None:
    """Log ``message`` with ``kwargs`` as structured fields."""
    logger.info(message, extra={"event_type": event_type, **kwargs})


def _log_subject_event(
    logger: Logger,
    event_type: str,
    label: str,
    event: str,
    subject_key: str,
    subject_id: Optional[str],
    fields: Dict[str, Any],
) -> None:
    extra: Dict[str, Any] = {"event_type": event_type, f"{event_type}_event": event}
    if subject_id is not None:
        extra[subject_key] = subject_id
    extra.update(fields)
    logger.info("%s %s %s", label, subject_id, event, extra=extra)


def log_rollout_event(
    logger: Logger, event: str, plan_id: Optional[str] = None, **kwargs: Any
) -> None:
    """Log a replacement-plan event such as ``batch_replaced`` or ``completed``."""
    _log_subject_event(logger, "rollout", "Plan", event, "plan_id", plan_id, kwargs)


def log_pipeline_event(
    logger: Logger, event: str, run_id: Optional[str] = None, **kwargs: Any
) -> None:
    """Log a pipeline stage event."""
    _log_subject_event(logger, "pipeline", "Pipeline run", event, "run_id", run_id, kwargs)


def log_fleet_event(
    logger: Logger, event: str, fleet_id: Optional[str] = None, **kwargs: Any
) -> None:
    """Log a launch, termination or adoption in a fleet."""
    _log_subject_event(logger, "fleet", "Fleet", event, "fleet_id", fleet_id, kwargs)


def log_context(**kwargs: Any) -> Any:
    """Bind ``kwargs`` to every record logged by this thread within the block."""
    return _log_manager.context.context(**kwargs)
