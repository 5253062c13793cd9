import logging
import threading
from typing import Any, Protocol

logger = logging.getLogger(__name__)

ATTENDANCE_UPDATE = "attendanceUpdate"
CHAIN_UPDATE = "chainUpdate"
STALL_ALERT = "stallAlert"


class NotificationSink(Protocol):
    def publish(self, topic: str, payload: dict[str, Any]) -> None: ...


class LoggingSink:
    """Default sink when no push transport is wired in."""

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        logger.info("notify %s %s", topic, payload)


class MemorySink:
    def __init__(self):
        self._lock = threading.Lock()
        self.events: list[tuple[str, dict[str, Any]]] = []

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self.events.append((topic, dict(payload)))

    def topics(self) -> list[str]:
        with self._lock:
            return [topic for topic, _ in self.events]


class Notifier:
    """Fire-and-forget publishing; delivery failures are logged, never raised."""

    def __init__(self, sink: NotificationSink):
        self.sink = sink

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        try:
            self.sink.publish(topic, payload)
        except Exception:
            logger.warning("Notification delivery failed for %s", topic, exc_info=True)

    def attendance_update(self, session_id: str, student_id: str, status: str | None, **extra: Any) -> None:
        self.publish(
            ATTENDANCE_UPDATE,
            {"sessionId": session_id, "studentId": student_id, "status": status, **extra},
        )

    def chain_update(self, chain) -> None:
        self.publish(
            CHAIN_UPDATE,
            {
                "sessionId": chain.session_id,
                "chainId": chain.chain_id,
                "phase": chain.phase.value,
                "lastHolder": chain.last_holder,
                "lastSeq": chain.last_seq,
                "state": chain.state.value,
            },
        )

    def stall_alert(self, session_id: str, chain_id: str) -> None:
        self.publish(STALL_ALERT, {"sessionId": session_id, "chainId": chain_id})
