"""Health check and integration status endpoints."""
import logging
from fastapi import APIRouter, Depends, Request

from app.core.config import settings
from app.core.dependencies import get_orchestrator, get_telephony
from app.services.call_session.orchestrator import CallSessionOrchestrator
from app.services.telephony.base import TelephonyClient

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint."""
    logger.debug(
        f"[HEALTH] Health check requested - Client: {request.client.host if request.client else 'unknown'}"
    )
    return {"status": "healthy"}


@router.get("/api/integrations/status")
async def integration_status(
    orchestrator: CallSessionOrchestrator = Depends(get_orchestrator),
    telephony: TelephonyClient = Depends(get_telephony),
):
    """Report which provider integrations have credentials."""
    return {
        "signalwire": telephony.is_configured(),
        # Transcription adapters are created per call
        "deepgram": bool(settings.deepgram_api_key),
        "elevenlabs": orchestrator.synthesizer.is_configured(),
        "openai": orchestrator.turn_generator.is_configured(),
    }
