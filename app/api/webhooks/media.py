"""Media stream WebSocket carrying live call audio."""
import asyncio
import json
import logging
from typing import Optional
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from app.core.dependencies import get_agent_provider, get_orchestrator
from app.core.exceptions import OrchestratorError
from app.services.agents.base import AgentConfigProvider
from app.services.call_session.orchestrator import CallSessionOrchestrator
from app.services.telephony.media_stream import MediaStreamSink, decode_media_payload

router = APIRouter()
logger = logging.getLogger(__name__)

POLICY_VIOLATION = 1008
INTERNAL_ERROR = 1011


@router.websocket("/ws/call/{call_id}")
async def media_stream(
    websocket: WebSocket,
    call_id: str,
    orchestrator: CallSessionOrchestrator = Depends(get_orchestrator),
    agent_provider: AgentConfigProvider = Depends(get_agent_provider),
):
    """
    Bridge a provider media stream to the call's session.

    Handles the ``start``, ``media`` and ``stop`` events. The session begins on
    ``start`` and ends on ``stop`` or when the socket drops.
    """
    await websocket.accept()
    logger.info(f"[MEDIA STREAM] WebSocket connected - CallId: {call_id}")

    sink: Optional[MediaStreamSink] = None
    greeting: Optional[asyncio.Task] = None
    started = False
    reason = "disconnected"

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                logger.debug(f"[MEDIA STREAM] Discarding non-JSON message - CallId: {call_id}")
                continue
            if not isinstance(message, dict):
                continue
            event = message.get("event")

            if event == "start":
                if started:
                    continue
                start = message.get("start") or {}
                params = start.get("customParameters") or {}
                tenant_id = params.get("tenantId") or "default"
                agent_id = params.get("agentId") or "default"
                campaign_id = params.get("campaignId") or None

                agent = await agent_provider.get_agent(agent_id)
                if agent is None:
                    logger.warning(
                        f"[MEDIA STREAM] Unknown agent, closing stream - CallId: {call_id}, "
                        f"Agent: {agent_id}"
                    )
                    await websocket.close(code=POLICY_VIOLATION, reason="Unknown agent")
                    return

                sink = MediaStreamSink(websocket.send_json, start.get("streamSid") or call_id)
                sink.start()
                try:
                    await orchestrator.begin_session(
                        call_id,
                        tenant_id,
                        agent_id,
                        agent,
                        campaign_id=campaign_id,
                        audio_sink=sink,
                    )
                except OrchestratorError as e:
                    logger.error(
                        f"[MEDIA STREAM] Could not start session - CallId: {call_id}, "
                        f"Error: {type(e).__name__}: {str(e)}"
                    )
                    await websocket.close(code=INTERNAL_ERROR, reason=str(e)[:100])
                    return

                started = True
                greeting = asyncio.create_task(orchestrator.request_greeting(call_id))

            elif event == "media":
                if not started:
                    continue
                frame = decode_media_payload(message)
                if frame is None:
                    logger.debug(f"[MEDIA STREAM] Discarding malformed media - CallId: {call_id}")
                    continue
                await orchestrator.submit_inbound_audio(call_id, frame)

            elif event == "stop":
                logger.info(f"[MEDIA STREAM] Stream stopped - CallId: {call_id}")
                reason = "completed"
                break

    except WebSocketDisconnect:
        logger.info(f"[MEDIA STREAM] WebSocket disconnected - CallId: {call_id}")
    except Exception as e:
        logger.error(
            f"[MEDIA STREAM] Stream error - CallId: {call_id}, "
            f"Error: {type(e).__name__}: {str(e)}",
            exc_info=True,
        )
    finally:
        if started:
            await orchestrator.end_session(call_id, reason=reason)
        if greeting is not None and not greeting.done():
            greeting.cancel()
        if sink is not None:
            await sink.close()
