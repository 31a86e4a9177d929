"""Push-only status reporting toward the UI or any other observer."""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from ..utils.logging import get_logger


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    CONFLICT = "conflict"


@dataclass
class Progress:
    processed: int
    total: int
    phase: str
    current_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "total": self.total,
            "phase": self.phase,
            "current_path": self.current_path,
        }


@dataclass
class StatusEvent:
    """One status message delivered to the sink."""

    message: str
    severity: Severity = Severity.INFO
    stats: Optional[Dict[str, Any]] = None
    progress: Optional[Progress] = None
    current_path: Optional[str] = None
    conflict_case: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "message": self.message,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.stats is not None:
            data["stats"] = self.stats
        if self.progress is not None:
            data["progress"] = self.progress.to_dict()
        if self.current_path is not None:
            data["current_path"] = self.current_path
        if self.conflict_case is not None:
            data["conflict_case"] = self.conflict_case
        return data


StatusSink = Callable[[StatusEvent], None]

_LOG_METHODS = {
    Severity.INFO: "info",
    Severity.SUCCESS: "info",
    Severity.WARNING: "warning",
    Severity.ERROR: "error",
    Severity.CONFLICT: "warning",
}


class StatusReporter:
    """Fans status events out to an optional sink and mirrors them into the log.

    Delivery is fire-and-forget: a failing sink is logged and ignored.
    Progress events are logged at debug level only.
    """

    def __init__(self, sink: Optional[StatusSink] = None, history_size: int = 100):
        self.sink = sink
        self.logger = get_logger(self.__class__.__name__)
        self._history: Deque[StatusEvent] = deque(maxlen=history_size)

    def emit(self, event: StatusEvent):
        self._history.append(event)

        log_context = {"severity": event.severity.value}
        if event.current_path:
            log_context["path"] = event.current_path
        if event.progress is not None:
            self.logger.debug(event.message, **log_context, **event.progress.to_dict())
        else:
            getattr(self.logger, _LOG_METHODS[event.severity])(event.message, **log_context)

        if self.sink is None:
            return
        try:
            self.sink(event)
        except Exception as e:
            self.logger.warning("Status sink raised an error", error=str(e))

    def recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        return [event.to_dict() for event in list(self._history)[-limit:]]

    def info(self, message: str, **kwargs):
        self.emit(StatusEvent(message, Severity.INFO, **kwargs))

    def success(self, message: str, **kwargs):
        self.emit(StatusEvent(message, Severity.SUCCESS, **kwargs))

    def warning(self, message: str, **kwargs):
        self.emit(StatusEvent(message, Severity.WARNING, **kwargs))

    def error(self, message: str, **kwargs):
        self.emit(StatusEvent(message, Severity.ERROR, **kwargs))

    def conflict(self, message: str, conflict_case: Dict[str, Any], **kwargs):
        self.emit(StatusEvent(
            message,
            Severity.CONFLICT,
            conflict_case=conflict_case,
            current_path=conflict_case.get("path"),
            **kwargs
        ))

    def progress(self, processed: int, total: int, phase: str, current_path: Optional[str] = None):
        self.emit(StatusEvent(
            f"{phase}: {processed}/{total}",
            Severity.INFO,
            progress=Progress(processed, total, phase, current_path),
            current_path=current_path
        ))

    def failure(self, path: str, reason: str):
        """Report the terminal failure of one path."""
        self.emit(StatusEvent(f"Failed to sync {path}: {reason}", Severity.ERROR, current_path=path))
