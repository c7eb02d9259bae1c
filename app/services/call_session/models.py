"""Call session models."""
import asyncio
from enum import Enum
from typing import List, Optional, Set
from pydantic import BaseModel

from app.services.agent.models import AgentConfig, DialogueTurn, Role
from app.services.speech.stt import TranscriptionAdapter
from app.services.telephony.base import AudioSink, NullAudioSink


class SessionState(str, Enum):
    """Lifecycle of a call session."""

    INITIALIZING = "initializing"
    ACTIVE = "active"
    ENDING = "ending"
    ENDED = "ended"

    def __str__(self) -> str:
        """Return the string value of the state."""
        return self.value


class SessionStats(BaseModel):
    """Final statistics returned when a session ends."""

    duration_sec: int = 0
    credits_used: int = 0
    transcript_summary: str = ""
    reason: Optional[str] = None


class OrchestratorConfig(BaseModel):
    """Tunables for turn-taking, metering and termination."""

    silence_threshold_ms: int = 1500
    max_call_duration_sec: int = 600
    credits_per_minute: int = 5
    credit_unit_size: int = 100
    history_window: int = 10
    vad_energy_threshold: float = 10.0
    vad_zero_reference: int = 128
    generation_timeout_sec: float = 10.0
    output_format: str = "ulaw_8000"
    reengagement_prompt: Optional[str] = None
    ended_stats_cache_size: int = 1000


class CallSession:
    """State of one phone call's AI-mediated conversation."""

    def __init__(
        self,
        call_id: str,
        tenant_id: str,
        agent_id: str,
        agent: AgentConfig,
        started_at: float,
        campaign_id: Optional[str] = None,
        audio_sink: Optional[AudioSink] = None,
    ):
        self.call_id = call_id
        self.tenant_id = tenant_id
        self.agent_id = agent_id
        self.campaign_id = campaign_id
        self.agent = agent
        self.audio_sink = audio_sink or NullAudioSink()

        self.state = SessionState.INITIALIZING
        self.history: List[DialogueTurn] = []
        self.transcript_summary: List[str] = []
        self.outcome: Optional[str] = None

        # Turn-taking
        self.is_listening = False
        self.is_speaking = False
        self.silence_start: Optional[float] = None
        self.last_user_speech: Optional[float] = None
        self.pending_utterance: List[str] = []
        self.greeting_requested = False

        # Metering
        self.started_at = started_at
        self.duration_credits = 0
        self.generation_credits = 0

        # Resources owned by the orchestrator
        self.transcription: Optional[TranscriptionAdapter] = None
        self.transcription_released = False
        self.speech_lock = asyncio.Lock()
        self.turn_tasks: Set[asyncio.Task] = set()
        self.termination: Optional[asyncio.Task] = None
        self.stats: Optional[SessionStats] = None

    @property
    def credits_used(self) -> int:
        """Total credits charged so far."""
        return self.duration_credits + self.generation_credits

    @property
    def degraded(self) -> bool:
        """True when the call runs without speech recognition."""
        return self.transcription is None

    def add_turn(self, role: Role, content: str) -> DialogueTurn:
        """Append a turn to the dialogue history."""
        turn = DialogueTurn(role=role, content=content)
        self.history.append(turn)
        return turn

    def add_summary_line(self, speaker: str, text: str) -> None:
        """Append a line to the outcome transcript."""
        self.transcript_summary.append(f"{speaker}: {text}")

    def history_window(self, size: int) -> List[DialogueTurn]:
        """
        Return the most recent turns for generation context.

        The leading system turn is kept while there is room for it; the
        result never holds more than ``size`` entries.
        """
        if size <= 0:
            return []
        if len(self.history) <= size:
            return list(self.history)
        first = self.history[0]
        if first.role == Role.SYSTEM and size > 1:
            return [first] + self.history[-(size - 1):]
        return self.history[-size:]

    def elapsed(self, now: float) -> float:
        """Seconds since the session started."""
        return max(0.0, now - self.started_at)

    def to_dict(self) -> dict:
        """Summarize the live session for status listings."""
        return {
            "call_id": self.call_id,
            "tenant_id": self.tenant_id,
            "agent_id": self.agent_id,
            "campaign_id": self.campaign_id,
            "state": self.state.value,
            "is_speaking": self.is_speaking,
            "is_listening": self.is_listening,
            "credits_used": self.credits_used,
            "turns": len(self.history),
            "degraded": self.degraded,
        }
