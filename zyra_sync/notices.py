"""
Notice Center

Toast-equivalent notices surfaced to the merchant.

- INFO/WARNING notices are non-fatal (watchdog refreshes, status checks)
- ERROR notices are blocking (approval failure); the user must re-invoke
- Every notice is logged; history is bounded
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from .config import MAX_NOTICE_HISTORY

logger = logging.getLogger("notice_center")


class NoticeKind(str, Enum):
    """Kinds of notices."""
    EXECUTION_CHECK = "execution_check"
    APPROVAL_CHECK = "approval_check"
    DETECTION_TIMEOUT = "detection_timeout"
    OPTIMIZATION_COMPLETE = "optimization_complete"
    ACTION_APPROVED = "action_approved"
    APPROVAL_FAILED = "approval_failed"
    DETECTION_FAILED = "detection_failed"


class NoticeSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class Notice:
    kind: NoticeKind
    title: str
    message: str
    severity: NoticeSeverity = NoticeSeverity.INFO
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def blocking(self) -> bool:
        return self.severity == NoticeSeverity.ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "title": self.title,
            "message": self.message,
            "severity": self.severity.value,
            "blocking": self.blocking,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
        }


class NoticeCenter:
    """Collects notices and fans them out to listeners."""

    def __init__(self, max_history: int = MAX_NOTICE_HISTORY):
        self._history: Deque[Notice] = deque(maxlen=max_history)
        self._listeners: List[Callable[[Notice], None]] = []

    def subscribe(self, listener: Callable[[Notice], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def post(
        self,
        kind: NoticeKind,
        title: str,
        message: str,
        severity: NoticeSeverity = NoticeSeverity.INFO,
        **metadata: Any,
    ) -> Notice:
        notice = Notice(kind=kind, title=title, message=message, severity=severity, metadata=metadata)
        self._history.append(notice)
        log = logger.error if notice.blocking else logger.info
        log(f"[{notice.kind.value}] {title}: {message}")
        for listener in list(self._listeners):
            try:
                listener(notice)
            except Exception as e:
                logger.error(f"Notice listener failed: {e}")
        return notice

    def recent(self, limit: int = 20) -> List[Notice]:
        return list(self._history)[-limit:]

    def latest(self) -> Optional[Notice]:
        return self._history[-1] if self._history else None

    def clear(self) -> None:
        self._history.clear()
        self._listeners.clear()
