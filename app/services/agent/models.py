"""Agent configuration and dialogue models."""
from enum import Enum
from typing import Optional
from pydantic import BaseModel


class LatencyMode(str, Enum):
    """Trade-off between response speed and naturalness."""

    FAST = "FAST"
    BALANCED = "BALANCED"
    NATURAL = "NATURAL"

    def __str__(self) -> str:
        """Return the string value of the mode."""
        return self.value


class SafetyRules(BaseModel):
    """Boolean guard rails included in the system prompt."""

    no_legal: bool = False
    no_medical: bool = False
    confirm_bookings: bool = False
    handoff_on_confusion: bool = False


class AgentConfig(BaseModel):
    """Snapshot of an agent's configuration taken when a call starts."""

    id: str
    name: str
    language: str = "en-US"
    instructions: str = ""
    greeting: str = "Hello! How can I help you today?"
    fallback_message: str = "I'm sorry, could you say that again?"
    voice_id: Optional[str] = None
    latency_mode: LatencyMode = LatencyMode.BALANCED
    rules: SafetyRules = SafetyRules()


class Role(str, Enum):
    """Speaker role of a dialogue turn."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"

    def __str__(self) -> str:
        """Return the string value of the role."""
        return self.value


class DialogueTurn(BaseModel):
    """One entry of the dialogue history."""

    role: Role
    content: str

    def to_message(self) -> dict:
        """Return the turn as a chat completion message."""
        return {"role": self.role.value, "content": self.content}


class GeneratedTurn(BaseModel):
    """Result of one turn generation."""

    text: str
    resource_units: int = 0
