"""
Execution outcome types and parsing of worker messages.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

# Short, stable errors for worker messages that are not a response.
WORKER_FAILURES = {
    "error": "Worker failed to produce a result",
    "exit": "Worker exited without a result",
    "overflow": "Worker result exceeded the size limit",
    "invalid": "Malformed worker response",
}


@dataclass
class LogEntry:
    """One intercepted console call."""
    level: str
    args: List[Any] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Outcome:
    """
    The single result produced by one sandbox worker.

    ``diagnostic`` holds the raw worker message for failures. It is meant for
    the service log and is never part of a response body.
    """
    ok: bool
    logs: List[LogEntry] = field(default_factory=list)
    duration: Optional[float] = None
    error: Optional[str] = None
    diagnostic: Any = None

    @classmethod
    def success(cls, logs: List[LogEntry], duration: float) -> 'Outcome':
        return cls(ok=True, logs=logs, duration=duration)

    @classmethod
    def failure(cls, error: str, diagnostic: Any = None, duration: Optional[float] = None) -> 'Outcome':
        return cls(ok=False, error=error, diagnostic=diagnostic, duration=duration)

    @classmethod
    def from_message(cls, message: Any) -> 'Outcome':
        """
        Interpret one worker message.

        Only ``{"type": "response", "data": {...}}`` can yield a success; any
        other shape becomes a failure carrying the whole message.
        """
        if not isinstance(message, dict) or message.get("type") != "response":
            kind = message.get("type") if isinstance(message, dict) else None
            error = WORKER_FAILURES.get(kind, WORKER_FAILURES["invalid"])
            return cls.failure(error, diagnostic=message)

        data = message.get("data")
        if not isinstance(data, dict) or not isinstance(data.get("ok"), bool):
            return cls.failure(WORKER_FAILURES["invalid"], diagnostic=message)

        duration = data.get("duration")
        if not isinstance(duration, (int, float)) or isinstance(duration, bool):
            duration = None

        if not data["ok"]:
            return cls.failure(
                str(data.get("error") or "Execution failed"),
                diagnostic=message,
                duration=duration,
            )

        raw_logs = data.get("logs")
        if not isinstance(raw_logs, list) or duration is None:
            return cls.failure(WORKER_FAILURES["invalid"], diagnostic=message)

        logs = []
        for entry in raw_logs:
            if not isinstance(entry, dict):
                return cls.failure(WORKER_FAILURES["invalid"], diagnostic=message)
            args = entry.get("args", [])
            logs.append(LogEntry(
                level=str(entry.get("level", "log")),
                args=list(args) if isinstance(args, list) else [args],
            ))
        return cls.success(logs, float(duration))

    def to_dict(self) -> Dict[str, Any]:
        """Public success payload."""
        return {
            "logs": [entry.to_dict() for entry in self.logs],
            "duration": self.duration,
        }
