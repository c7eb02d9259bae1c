"""Unit tests for the agent configuration provider."""
import pytest

from app.services.agent.models import LatencyMode
from app.services.agents.in_memory_agents import DEFAULT_AGENT, InMemoryAgentProvider


class TestInMemoryAgentProvider:
    """Test YAML-backed agent lookup."""

    @pytest.mark.asyncio
    async def test_load_agents_from_yaml(self, agent_provider):
        """Test agents are parsed from the YAML file."""
        agents = await agent_provider.list_agents()

        assert [a.id for a in agents] == ["support", "fast"]
        support = agents[0]
        assert support.name == "Riley"
        assert support.voice_id == "voice-123"
        assert support.rules.no_legal is True
        assert support.rules.no_medical is False

    @pytest.mark.asyncio
    async def test_get_agent(self, agent_provider):
        """Test lookup by id, with defaults for omitted fields."""
        agent = await agent_provider.get_agent("fast")

        assert agent.latency_mode == LatencyMode.FAST
        assert agent.language == "en-US"
        assert agent.voice_id is None

    @pytest.mark.asyncio
    async def test_get_agent_not_found(self, agent_provider):
        """Test unknown agent ids return None."""
        assert await agent_provider.get_agent("ghost") is None

    @pytest.mark.asyncio
    async def test_missing_file_uses_default_agent(self, tmp_path):
        """Test a missing agents file falls back to the default agent."""
        provider = InMemoryAgentProvider(agents_file=str(tmp_path / "missing.yaml"))

        assert await provider.get_agent("default") == DEFAULT_AGENT

    @pytest.mark.asyncio
    async def test_packaged_agents(self):
        """Test the packaged agents file loads."""
        provider = InMemoryAgentProvider()

        agent = await provider.get_agent("default")

        assert agent is not None
        assert agent.greeting
