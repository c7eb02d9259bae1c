"""FastAPI dependencies."""
from typing import Optional
from fastapi import Request

from app.core.config import Settings, settings
from app.services.agent.agent import OpenAITurnGenerator
from app.services.agents.base import AgentConfigProvider
from app.services.agents.in_memory_agents import InMemoryAgentProvider
from app.services.call_session.models import OrchestratorConfig
from app.services.call_session.orchestrator import CallSessionOrchestrator
from app.services.speech.stt import DeepgramTranscriptionAdapter
from app.services.speech.tts import ElevenLabsSynthesisAdapter
from app.services.telephony.base import TelephonyClient


def build_orchestrator_config(config: Settings = settings) -> OrchestratorConfig:
    """Orchestrator tunables from application settings."""
    return OrchestratorConfig(
        silence_threshold_ms=config.silence_threshold_ms,
        max_call_duration_sec=config.max_call_duration_sec,
        credits_per_minute=config.credits_per_minute,
        credit_unit_size=config.credit_unit_size,
        history_window=config.history_window,
        vad_energy_threshold=config.vad_energy_threshold,
        vad_zero_reference=config.vad_zero_reference,
        generation_timeout_sec=config.generation_timeout_sec,
        output_format=config.elevenlabs_output_format,
        reengagement_prompt=config.reengagement_prompt,
    )


def build_orchestrator(
    config: Settings = settings, telephony: Optional[TelephonyClient] = None
) -> CallSessionOrchestrator:
    """Wire the orchestrator to the provider adapters named in settings."""
    return CallSessionOrchestrator(
        turn_generator=OpenAITurnGenerator(),
        synthesizer=ElevenLabsSynthesisAdapter(),
        transcription_factory=DeepgramTranscriptionAdapter,
        telephony=telephony,
        config=build_orchestrator_config(config),
    )


def get_orchestrator(request: Request) -> CallSessionOrchestrator:
    """Get the application's orchestrator."""
    return request.app.state.orchestrator


def get_telephony(request: Request) -> TelephonyClient:
    """Get the application's telephony client."""
    return request.app.state.telephony


def get_agent_provider(request: Request) -> AgentConfigProvider:
    """Get the application's agent configuration provider."""
    provider = getattr(request.app.state, "agent_provider", None)
    if provider is None:
        provider = InMemoryAgentProvider(settings.agents_file)
        request.app.state.agent_provider = provider
    return provider
