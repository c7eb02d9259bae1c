"""Voice webhook endpoints called by the telephony provider."""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Form, Query, Request
from fastapi.responses import Response

from app.core.config import settings
from app.core.dependencies import get_orchestrator, get_telephony
from app.services.call_session.orchestrator import CallSessionOrchestrator
from app.services.telephony.base import TelephonyClient
from app.services.telephony.signalwire import TERMINAL_PROVIDER_STATUSES

router = APIRouter()
logger = logging.getLogger(__name__)


def get_base_url(request: Request) -> str:
    """
    Get the base URL for constructing absolute URLs.

    Uses BASE_URL environment variable if set, otherwise constructs from request.
    """
    if settings.base_url:
        return settings.base_url.rstrip('/')
    return str(request.base_url).rstrip('/')


def get_stream_url(request: Request, call_id: str) -> str:
    """WebSocket URL the provider streams call audio to."""
    base_url = get_base_url(request)
    if base_url.startswith("https://"):
        base_url = "wss://" + base_url[len("https://"):]
    elif base_url.startswith("http://"):
        base_url = "ws://" + base_url[len("http://"):]
    return f"{base_url}/ws/call/{call_id}"


@router.post("/voice/incoming")
async def handle_incoming_call(
    request: Request,
    CallSid: str = Form(...),
    From: str = Form(""),
    To: str = Form(""),
    tenant_id: str = Query("default"),
    agent_id: str = Query("default"),
    campaign_id: Optional[str] = Query(None),
    telephony: TelephonyClient = Depends(get_telephony),
):
    """
    Handle an incoming (or answered outbound) call.

    Responds with markup that connects the call audio to the media stream
    WebSocket, where the session is started.
    """
    logger.info(
        f"[INCOMING CALL] Received incoming call webhook - CallSid: {CallSid}, "
        f"Tenant: {tenant_id}, Agent: {agent_id}, "
        f"Client: {request.client.host if request.client else 'unknown'}"
    )

    telephony.handle_inbound_call({"CallSid": CallSid, "From": From, "To": To})
    stream_url = get_stream_url(request, CallSid)
    twiml = telephony.stream_twiml(
        CallSid,
        stream_url,
        parameters={
            "tenantId": tenant_id,
            "agentId": agent_id,
            "campaignId": campaign_id or "",
        },
    )
    logger.info(
        f"[INCOMING CALL] Connecting media stream - CallSid: {CallSid}, URL: {stream_url}"
    )
    return Response(content=twiml, media_type="application/xml")


@router.post("/voice/status")
async def handle_call_status(
    request: Request,
    CallSid: str = Form(...),
    CallStatus: str = Form(...),
    orchestrator: CallSessionOrchestrator = Depends(get_orchestrator),
    telephony: TelephonyClient = Depends(get_telephony),
):
    """
    Handle call status updates from the provider.

    Terminal statuses end the call's session.
    """
    logger.info(
        f"[CALL STATUS] Received status update - CallSid: {CallSid}, "
        f"CallStatus: {CallStatus}, "
        f"Client: {request.client.host if request.client else 'unknown'}"
    )

    try:
        form = await request.form()
        telephony.handle_status_callback({k: str(v) for k, v in form.items()})

        if CallStatus in TERMINAL_PROVIDER_STATUSES:
            stats = await orchestrator.end_session(CallSid, reason=CallStatus)
            logger.info(
                f"[CALL STATUS] Session ended - CallSid: {CallSid}, "
                f"Duration: {stats.duration_sec}s, Credits: {stats.credits_used}"
            )
        else:
            logger.debug(
                f"[CALL STATUS] Status update received but no action needed - "
                f"CallSid: {CallSid}, CallStatus: {CallStatus}"
            )
    except Exception as e:
        logger.error(
            f"[CALL STATUS] Error handling call status update - CallSid: {CallSid}, "
            f"CallStatus: {CallStatus}, Error: {type(e).__name__}: {str(e)}",
            exc_info=True
        )

    # Always OK so the provider does not retry
    return Response(content="OK", media_type="text/plain")
