"""Administrator alerts.

Alerts are logged, appended to ``<state_dir>/alerts.jsonl`` for the
status command and handed to any registered handlers (pager, chat).
"""

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from schemas.feedback import utcnow

logger = logging.getLogger(__name__)


class AlertLevel(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class Alert:
    """An administrator alert."""

    level: AlertLevel
    title: str
    detail: str = ""
    context: dict[str, Any] = field(default_factory=dict)
    at: str = field(default_factory=lambda: utcnow().isoformat())

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["level"] = self.level.value
        return data


AlertHandler = Callable[[Alert], None]


class AdminAlerts:
    """Fan-out for administrator alerts."""

    def __init__(
        self,
        state_dir: Path | str | None = None,
        handlers: list[AlertHandler] | None = None,
    ) -> None:
        self.path = Path(state_dir) / "alerts.jsonl" if state_dir else None
        self.handlers = list(handlers or [])
        self._lock = threading.Lock()
        self._history: list[Alert] = []

    def add_handler(self, handler: AlertHandler) -> None:
        self.handlers.append(handler)

    def raise_alert(
        self,
        level: AlertLevel,
        title: str,
        detail: str = "",
        context: dict[str, Any] | None = None,
    ) -> Alert:
        alert = Alert(level=level, title=title, detail=detail, context=dict(context or {}))
        log = logger.critical if level == AlertLevel.CRITICAL else logger.warning
        log(f"ALERT: {title}" + (f": {detail}" if detail else ""))

        with self._lock:
            self._history.append(alert)
            if self.path:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(alert.to_dict(), default=str) + "\n")

        for handler in self.handlers:
            try:
                handler(alert)
            except Exception:
                logger.exception(f"Alert handler {handler!r} failed")
        return alert

    def recent(self, limit: int = 20) -> list[Alert]:
        with self._lock:
            return list(self._history[-limit:])

    def load(self, limit: int = 20) -> list[dict[str, Any]]:
        """Alerts persisted by any process, newest last."""
        if not self.path or not self.path.exists():
            return []
        lines = self.path.read_text(encoding="utf-8").splitlines()
        return [json.loads(line) for line in lines[-limit:] if line.strip()]
