"""Shared test fixtures and configuration."""
import asyncio
import pytest
import os
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, List, Optional
from fastapi.testclient import TestClient

# Set test environment variables before importing app
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("DEEPGRAM_API_KEY", "")
os.environ.setdefault("ELEVENLABS_API_KEY", "")
os.environ.setdefault("SIGNALWIRE_PROJECT_ID", "")
os.environ.setdefault("SIGNALWIRE_TOKEN", "")
os.environ.setdefault("SIGNALWIRE_SPACE_URL", "")
os.environ.setdefault("SIGNALWIRE_PHONE_NUMBER", "+15550000000")

from app.main import app
from app.core.dependencies import get_agent_provider, get_orchestrator, get_telephony
from app.core.exceptions import AdapterUnavailable, NotConnected
from app.services.agent.agent import TurnGenerator
from app.services.agent.models import AgentConfig, DialogueTurn, GeneratedTurn
from app.services.agents.in_memory_agents import InMemoryAgentProvider
from app.services.call_session.events import SessionEvent, SessionEventType
from app.services.call_session.models import OrchestratorConfig
from app.services.call_session.orchestrator import CallSessionOrchestrator
from app.services.speech.models import TranscriptionListener, TranscriptionOptions
from app.services.speech.stt import TranscriptionAdapter
from app.services.speech.tts import SpeechSynthesisAdapter
from app.services.telephony.base import AudioSink, CallState, TelephonyClient
from app.services.telephony.signalwire import SignalWireClient


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTranscriptionAdapter(TranscriptionAdapter):
    """In-process transcription stream driven by the test."""

    def __init__(self, configured: bool = True, fail_open: bool = False):
        self.configured = configured
        self.fail_open = fail_open
        self.options: Optional[TranscriptionOptions] = None
        self.listener: Optional[TranscriptionListener] = None
        self.frames: List[bytes] = []
        self.close_count = 0
        self._connected = False

    def is_configured(self) -> bool:
        return self.configured

    @property
    def connected(self) -> bool:
        return self._connected

    async def open(self, options, listener) -> None:
        if self.fail_open:
            raise AdapterUnavailable("connection refused")
        self.options = options
        self.listener = listener
        self._connected = True

    def submit_audio(self, frame: bytes) -> None:
        if not self._connected:
            raise NotConnected("not connected")
        self.frames.append(frame)

    async def close(self) -> None:
        self.close_count += 1
        self._connected = False

    async def push(self, signal) -> None:
        """Deliver a signal the way the receive loop would."""
        await self.listener(signal)


class FakeSynthesizer(SpeechSynthesisAdapter):
    """Synthesizer yielding a fixed number of frames per utterance."""

    def __init__(self, frames: int = 3, configured: bool = True):
        self.frames = frames
        self.configured = configured
        self.requests: List[dict] = []
        self.on_frame: Optional[Callable[[int], Awaitable[None]]] = None
        self.fail_with: Optional[Exception] = None
        self.closed = 0

    def is_configured(self) -> bool:
        return self.configured

    async def synthesize(
        self, voice_id: str, text: str, output_format: str, latency_optimization: int
    ) -> AsyncIterator[bytes]:
        self.requests.append(
            {
                "voice_id": voice_id,
                "text": text,
                "output_format": output_format,
                "latency_optimization": latency_optimization,
            }
        )
        try:
            for index in range(self.frames):
                if self.fail_with is not None and index == 1:
                    raise self.fail_with
                if self.on_frame is not None:
                    await self.on_frame(index)
                yield bytes([index % 256]) * 160
                await asyncio.sleep(0)
        finally:
            self.closed += 1


class FakeTurnGenerator(TurnGenerator):
    """Turn generator returning scripted replies and recording its inputs."""

    def __init__(self, reply: str = "Sure, I can help with that.", resource_units: int = 0):
        self.reply = reply
        self.resource_units = resource_units
        self.configured = True
        self.error: Optional[Exception] = None
        self.delay: float = 0.0
        self.calls: List[dict] = []

    def is_configured(self) -> bool:
        return self.configured

    async def generate(
        self, history: List[DialogueTurn], latest_user_utterance: str, agent: AgentConfig
    ) -> GeneratedTurn:
        self.calls.append(
            {"history": list(history), "utterance": latest_user_utterance, "agent": agent.id}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return GeneratedTurn(text=self.reply, resource_units=self.resource_units)


class RecordingSink(AudioSink):
    """Audio sink recording frames and clear() calls."""

    def __init__(self):
        self.frames: List[bytes] = []
        self.clear_count = 0

    async def send(self, frame: bytes) -> None:
        self.frames.append(frame)

    def clear(self) -> None:
        self.clear_count += 1


class FakeTelephony(TelephonyClient):
    """Telephony client recording hang-ups and placed calls."""

    def __init__(self, configured: bool = True):
        self.configured = configured
        self.ended: List[str] = []
        self.placed: List[dict] = []
        self.end_error: Optional[Exception] = None
        self._delegate = SignalWireClient(project_id="p", token="t", space_url="example.signalwire.com")

    def is_configured(self) -> bool:
        return self.configured

    async def place_call(self, to, from_, webhook_url, status_callback_url=None) -> CallState:
        self.placed.append(
            {
                "to": to,
                "from_": from_,
                "webhook_url": webhook_url,
                "status_callback_url": status_callback_url,
            }
        )
        return CallState(call_id=f"CA{len(self.placed):04d}", status="ringing", to=to, from_=from_)

    async def end_call(self, call_id: str) -> None:
        self.ended.append(call_id)
        if self.end_error is not None:
            raise self.end_error

    def handle_inbound_call(self, form):
        return self._delegate.handle_inbound_call(form)

    def handle_status_callback(self, form):
        return self._delegate.handle_status_callback(form)

    def stream_twiml(self, call_id, stream_url, parameters=None) -> str:
        return self._delegate.stream_twiml(call_id, stream_url, parameters)


@pytest.fixture
def clock():
    """Manually advanced clock."""
    return FakeClock()


@pytest.fixture
def agent():
    """Agent configuration used by orchestrator tests."""
    return AgentConfig(
        id="support",
        name="Riley",
        instructions="Help callers with billing questions.",
        greeting="Hi, this is Riley. How can I help?",
        fallback_message="Sorry, could you repeat that?",
        voice_id="voice-123",
    )


@pytest.fixture
def turn_generator():
    """Scripted turn generator."""
    return FakeTurnGenerator()


@pytest.fixture
def synthesizer():
    """Frame-yielding synthesizer."""
    return FakeSynthesizer()


@pytest.fixture
def transcription_adapters():
    """Every transcription adapter created by the orchestrator, in order."""
    return []


@pytest.fixture
def adapter_options():
    """Keyword arguments for the next fake transcription adapters."""
    return {}


@pytest.fixture
def transcription_factory(transcription_adapters, adapter_options):
    """Factory producing recorded fake transcription adapters."""
    def _factory():
        adapter = FakeTranscriptionAdapter(**adapter_options)
        transcription_adapters.append(adapter)
        return adapter
    return _factory


@pytest.fixture
def telephony():
    """Recording telephony client."""
    return FakeTelephony()


@pytest.fixture
def orchestrator_config():
    """Orchestrator tunables for tests."""
    return OrchestratorConfig(generation_timeout_sec=1.0)


@pytest.fixture
def orchestrator(
    turn_generator, synthesizer, transcription_factory, telephony, orchestrator_config, clock
):
    """Orchestrator wired to fakes."""
    return CallSessionOrchestrator(
        turn_generator=turn_generator,
        synthesizer=synthesizer,
        transcription_factory=transcription_factory,
        telephony=telephony,
        config=orchestrator_config,
        clock=clock,
    )


@pytest.fixture
def events(orchestrator):
    """Every telemetry event the orchestrator publishes."""
    collected: List[SessionEvent] = []
    orchestrator.subscribe(collected.append)
    return collected


@pytest.fixture
def events_of(events):
    """Filter collected events by type."""
    def _events_of(event_type: SessionEventType) -> List[SessionEvent]:
        return [e for e in events if e.type == event_type]
    return _events_of


@pytest.fixture
def sink():
    """Recording audio sink."""
    return RecordingSink()


@pytest.fixture
def start_session(orchestrator, agent, sink, transcription_adapters):
    """Begin a session and return it with its transcription adapter."""
    async def _start(call_id: str = "call-1", tenant_id: str = "tenant-1"):
        session = await orchestrator.begin_session(
            call_id, tenant_id, agent.id, agent, audio_sink=sink
        )
        return session, transcription_adapters[-1]
    return _start


@pytest.fixture
def test_agents_path():
    """Return path to test agents YAML file."""
    return Path(__file__).parent / "fixtures" / "test_agents.yaml"


@pytest.fixture
def agent_provider(test_agents_path):
    """Agent provider with test data."""
    return InMemoryAgentProvider(agents_file=str(test_agents_path))


@pytest.fixture
def test_client(orchestrator, telephony, agent_provider):
    """Create FastAPI test client with overrides."""
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_telephony] = lambda: telephony
    app.dependency_overrides[get_agent_provider] = lambda: agent_provider

    client = TestClient(app)

    yield client

    app.dependency_overrides.clear()
