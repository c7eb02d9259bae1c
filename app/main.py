"""Main FastAPI application."""
import asyncio
import logging
from fastapi import FastAPI
from contextlib import asynccontextmanager

from app.core.config import settings
from app.core.dependencies import build_orchestrator
from app.core.logging import setup_logging
from app.api import calls, health
from app.api.webhooks import media, voice
from app.services.agents.in_memory_agents import InMemoryAgentProvider
from app.services.telephony.signalwire import SignalWireClient

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    setup_logging()
    telephony = SignalWireClient()
    orchestrator = build_orchestrator(settings, telephony=telephony)
    app.state.telephony = telephony
    app.state.orchestrator = orchestrator
    app.state.agent_provider = InMemoryAgentProvider(settings.agents_file)
    app.state.call_cleanup = asyncio.create_task(
        telephony.run_cleanup(
            settings.call_cleanup_interval_sec, settings.ended_call_max_age_sec
        )
    )
    logger.info("[APP] Voice call orchestrator started")
    yield
    # Shutdown
    app.state.call_cleanup.cancel()
    try:
        await app.state.call_cleanup
    except asyncio.CancelledError:
        pass
    await orchestrator.end_all_sessions(reason="shutdown")
    await orchestrator.synthesizer.aclose()
    await telephony.aclose()
    logger.info("[APP] Voice call orchestrator stopped")


app = FastAPI(
    title="AI Voice Call Orchestrator",
    description="Real-time orchestration of AI-driven phone calls",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router, tags=["health"])
app.include_router(voice.router, prefix="/webhooks", tags=["webhooks"])
app.include_router(media.router, tags=["media"])
app.include_router(calls.router, tags=["calls"])


@app.get("/")
async def root():
    """Service information."""
    return {
        "message": "AI Voice Call Orchestrator API",
        "version": "0.1.0",
    }
