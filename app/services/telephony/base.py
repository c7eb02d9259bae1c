"""Telephony provider and audio sink interfaces."""
import time
from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional
from pydantic import BaseModel, Field


class CallState(BaseModel):
    """Provider-side state of one call."""

    call_id: str
    status: str = "initiated"  # initiated, ringing, answered, completed, failed
    direction: str = "outbound"  # inbound, outbound
    to: str = ""
    from_: str = ""
    started_at: float = Field(default_factory=time.time)
    ended_at: Optional[float] = None
    duration_sec: int = 0
    recording_url: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        """True once the call has completed or failed."""
        return self.status in ("completed", "failed")


class TelephonyClient(ABC):
    """Abstract base class for telephony providers."""

    @abstractmethod
    def is_configured(self) -> bool:
        """Return True if provider credentials are available."""
        pass

    @abstractmethod
    async def place_call(
        self,
        to: str,
        from_: str,
        webhook_url: str,
        status_callback_url: Optional[str] = None,
    ) -> CallState:
        """Place an outbound call."""
        pass

    @abstractmethod
    async def end_call(self, call_id: str) -> None:
        """Hang up a call. An already-ended call is not an error."""
        pass

    @abstractmethod
    def handle_inbound_call(self, form: Mapping[str, str]) -> CallState:
        """Register an inbound call from a webhook payload."""
        pass

    @abstractmethod
    def handle_status_callback(self, form: Mapping[str, str]) -> Optional[CallState]:
        """Apply a status callback; returns the updated call state if known."""
        pass

    @abstractmethod
    def stream_twiml(
        self, call_id: str, stream_url: str, parameters: Optional[Dict[str, str]] = None
    ) -> str:
        """Markup instructing the provider to stream call audio to ``stream_url``."""
        pass


class AudioSink(ABC):
    """Destination for synthesized outbound audio."""

    @abstractmethod
    async def send(self, frame: bytes) -> None:
        """Queue one frame for the caller."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Discard audio queued but not yet sent."""
        pass


class NullAudioSink(AudioSink):
    """Sink that drops every frame (text-only calls)."""

    async def send(self, frame: bytes) -> None:
        return None

    def clear(self) -> None:
        return None
