"""In-memory agent configuration provider."""
import logging
import yaml
from pathlib import Path
from typing import Dict, List, Optional

from app.services.agent.models import AgentConfig
from app.services.agents.base import AgentConfigProvider

logger = logging.getLogger(__name__)

DEFAULT_AGENT = AgentConfig(
    id="default",
    name="Alex",
    instructions="Help the caller with their question and keep the conversation moving.",
    greeting="Hi, thanks for calling. How can I help you today?",
    fallback_message="Sorry, I didn't catch that. Could you say it again?",
)


class InMemoryAgentProvider(AgentConfigProvider):
    """Agent provider backed by a YAML file."""

    def __init__(self, agents_file: Optional[str] = None):
        """Initialize with optional agents file path."""
        if agents_file is None:
            agents_file = Path(__file__).parent / "data" / "agents.yaml"
        self.agents_file = Path(agents_file)
        self._agents: Optional[Dict[str, AgentConfig]] = None

    async def _load_agents(self) -> Dict[str, AgentConfig]:
        """Load agents from YAML file."""
        if self._agents is None:
            if not self.agents_file.exists():
                logger.warning(
                    f"[AGENTS] Agents file not found, using default agent - Path: {self.agents_file}"
                )
                self._agents = {DEFAULT_AGENT.id: DEFAULT_AGENT}
            else:
                with open(self.agents_file, "r") as f:
                    data = yaml.safe_load(f) or {}
                agents = [AgentConfig(**agent) for agent in data.get("agents", [])]
                self._agents = {agent.id: agent for agent in agents}
                logger.info(f"[AGENTS] Loaded {len(self._agents)} agent(s) from {self.agents_file}")
        return self._agents

    async def get_agent(self, agent_id: str) -> Optional[AgentConfig]:
        """Get an agent's configuration by id."""
        agents = await self._load_agents()
        return agents.get(agent_id)

    async def list_agents(self) -> List[AgentConfig]:
        """List all configured agents."""
        agents = await self._load_agents()
        return list(agents.values())
