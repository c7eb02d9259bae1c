"""Agent configuration provider interface."""
from abc import ABC, abstractmethod
from typing import List, Optional

from app.services.agent.models import AgentConfig


class AgentConfigProvider(ABC):
    """Abstract base class for agent configuration providers."""

    @abstractmethod
    async def get_agent(self, agent_id: str) -> Optional[AgentConfig]:
        """Get an agent's configuration by id."""
        pass

    @abstractmethod
    async def list_agents(self) -> List[AgentConfig]:
        """List all configured agents."""
        pass
