"""LLM turn generation service."""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from openai import AsyncOpenAI

from app.core.config import settings
from app.core.exceptions import AdapterUnavailable
from app.services.agent.models import AgentConfig, DialogueTurn, GeneratedTurn, Role

logger = logging.getLogger(__name__)


class TurnGenerator(ABC):
    """Abstract base class for turn generators."""

    @abstractmethod
    def is_configured(self) -> bool:
        """Return True if the generator can be used."""
        pass

    @abstractmethod
    async def generate(
        self,
        history: List[DialogueTurn],
        latest_user_utterance: str,
        agent: AgentConfig,
    ) -> GeneratedTurn:
        """Produce the agent's next utterance.

        Implementations must not raise for provider failures; they return the
        agent's fallback message instead.
        """
        pass


class OpenAITurnGenerator(TurnGenerator):
    """Turn generator backed by OpenAI chat completions."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.openai_model
        self.max_tokens = max_tokens or settings.openai_max_tokens
        self.temperature = (
            temperature if temperature is not None else settings.openai_temperature
        )
        self.timeout = timeout or settings.generation_timeout_sec
        self._client = client

    def is_configured(self) -> bool:
        """Return True if a client or an API key is available."""
        return self._client is not None or bool(self.api_key)

    @property
    def client(self) -> AsyncOpenAI:
        """Get the OpenAI client, creating it on first use."""
        if self._client is None:
            if not self.api_key:
                raise AdapterUnavailable("OPENAI_API_KEY is not configured")
            self._client = AsyncOpenAI(api_key=self.api_key, timeout=self.timeout)
        return self._client

    def build_messages(
        self, history: List[DialogueTurn], latest_user_utterance: str
    ) -> List[Dict[str, Any]]:
        """Convert the history window into chat completion messages."""
        messages = [turn.to_message() for turn in history]
        last = history[-1] if history else None
        if latest_user_utterance and not (
            last and last.role == Role.USER and last.content == latest_user_utterance
        ):
            messages.append({"role": "user", "content": latest_user_utterance})
        return messages

    async def generate(
        self,
        history: List[DialogueTurn],
        latest_user_utterance: str,
        agent: AgentConfig,
    ) -> GeneratedTurn:
        """
        Generate the next agent utterance.

        Args:
            history: Bounded window of the dialogue history
            latest_user_utterance: The utterance being answered
            agent: Agent configuration (fallback message)

        Returns:
            Generated text and the total tokens consumed
        """
        messages = self.build_messages(history, latest_user_utterance)
        logger.debug(
            f"[TURN GENERATOR] Requesting completion - Agent: {agent.id}, "
            f"Messages: {len(messages)}"
        )

        try:
            completion = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except Exception as e:
            logger.warning(
                f"[TURN GENERATOR] Completion failed, using fallback - Agent: {agent.id}, "
                f"Error: {type(e).__name__}: {str(e)}"
            )
            return GeneratedTurn(text=agent.fallback_message, resource_units=0)

        usage = getattr(completion, "usage", None)
        tokens_used = getattr(usage, "total_tokens", 0) or 0

        content = None
        if completion.choices:
            content = completion.choices[0].message.content

        if not content or not content.strip():
            logger.info(
                f"[TURN GENERATOR] Empty completion, using fallback - Agent: {agent.id}"
            )
            return GeneratedTurn(text=agent.fallback_message, resource_units=tokens_used)

        return GeneratedTurn(text=content.strip(), resource_units=tokens_used)
