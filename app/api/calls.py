"""Call control API endpoints."""
import logging
from typing import List, Optional
from urllib.parse import urlencode
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from app.api.webhooks.voice import get_base_url
from app.core.config import settings
from app.core.dependencies import get_agent_provider, get_orchestrator, get_telephony
from app.core.exceptions import TelephonyError
from app.services.agents.base import AgentConfigProvider
from app.services.call_session.models import SessionStats
from app.services.call_session.orchestrator import CallSessionOrchestrator
from app.services.telephony.base import TelephonyClient

router = APIRouter()
logger = logging.getLogger(__name__)


class OutboundCallRequest(BaseModel):
    """Outbound call request model."""
    to: str
    tenant_id: str = "default"
    agent_id: str = "default"
    campaign_id: Optional[str] = None
    from_number: Optional[str] = None


class OutboundCallResponse(BaseModel):
    """Outbound call response model."""
    call_id: str
    status: str


class ActiveCallResponse(BaseModel):
    """Live session summary."""
    call_id: str
    tenant_id: str
    agent_id: str
    campaign_id: Optional[str] = None
    state: str
    is_speaking: bool
    is_listening: bool
    credits_used: int
    turns: int
    degraded: bool


@router.post("/api/calls/outbound", response_model=OutboundCallResponse)
async def place_outbound_call(
    request: Request,
    body: OutboundCallRequest,
    telephony: TelephonyClient = Depends(get_telephony),
    agent_provider: AgentConfigProvider = Depends(get_agent_provider),
):
    """Place an outbound call handled by an agent."""
    if not telephony.is_configured():
        raise HTTPException(status_code=503, detail="Telephony is not configured")

    agent = await agent_provider.get_agent(body.agent_id)
    if agent is None:
        raise HTTPException(status_code=404, detail=f"Agent {body.agent_id} not found")

    from_number = body.from_number or settings.signalwire_phone_number
    if not from_number:
        raise HTTPException(status_code=400, detail="No caller ID number configured")

    base_url = get_base_url(request)
    query = {"tenant_id": body.tenant_id, "agent_id": body.agent_id}
    if body.campaign_id:
        query["campaign_id"] = body.campaign_id

    try:
        call_state = await telephony.place_call(
            to=body.to,
            from_=from_number,
            webhook_url=f"{base_url}/webhooks/voice/incoming?{urlencode(query)}",
            status_callback_url=f"{base_url}/webhooks/voice/status",
        )
    except TelephonyError as e:
        logger.error(f"[CALLS] Outbound call failed - To: {body.to}, Error: {str(e)}")
        raise HTTPException(status_code=502, detail=str(e))

    logger.info(
        f"[CALLS] Outbound call placed - CallId: {call_state.call_id}, "
        f"Tenant: {body.tenant_id}, Agent: {body.agent_id}"
    )
    return OutboundCallResponse(call_id=call_state.call_id, status=call_state.status)


@router.get("/api/calls/active", response_model=List[ActiveCallResponse])
async def list_active_calls(
    tenant_id: str = Query(...),
    orchestrator: CallSessionOrchestrator = Depends(get_orchestrator),
):
    """List a tenant's live calls."""
    return [
        ActiveCallResponse(**session.to_dict())
        for session in orchestrator.get_tenant_sessions(tenant_id)
    ]


@router.post("/api/calls/{call_id}/end", response_model=SessionStats)
async def end_call(
    call_id: str,
    orchestrator: CallSessionOrchestrator = Depends(get_orchestrator),
):
    """End a live call; ending an unknown or ended call returns its stats."""
    stats = await orchestrator.end_session(call_id, reason="admin")
    logger.info(
        f"[CALLS] Call ended by request - CallId: {call_id}, "
        f"Duration: {stats.duration_sec}s, Credits: {stats.credits_used}"
    )
    return stats
