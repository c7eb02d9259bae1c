"""Telemetry events published by the call orchestrator."""
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class SessionEventType(str, Enum):
    """Informational events; none are required for correctness."""

    SESSION_STARTED = "session_started"
    USER_SPEAKING = "user_speaking"
    USER_TRANSCRIPT = "user_transcript"
    AGENT_SPEAKING_START = "agent_speaking_start"
    AGENT_SPEAKING_END = "agent_speaking_end"
    BARGE_IN = "barge_in"
    METERING = "metering"
    ADAPTER_ERROR = "adapter_error"
    TTS_NOT_CONFIGURED = "tts_not_configured"
    SILENCE_TIMEOUT = "silence_timeout"
    SESSION_ENDED = "session_ended"

    def __str__(self) -> str:
        """Return the string value of the event type."""
        return self.value


class SessionEvent(BaseModel):
    """One telemetry event."""

    type: SessionEventType
    call_id: str
    tenant_id: Optional[str] = None
    data: Dict[str, Any] = {}
    timestamp: float = Field(default_factory=time.time)


SessionEventListener = Callable[[SessionEvent], None]


class EventPublisher:
    """Fan-out of session events to subscribed listeners."""

    def __init__(self):
        self._listeners: List[SessionEventListener] = []

    def subscribe(self, listener: SessionEventListener) -> Callable[[], None]:
        """Register a listener and return a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: SessionEvent) -> None:
        """Deliver an event to every listener; listener errors are logged."""
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(
                    f"[EVENTS] Listener failed for {event.type.value} - "
                    f"CallId: {event.call_id}, Error: {type(e).__name__}: {str(e)}",
                    exc_info=True,
                )
