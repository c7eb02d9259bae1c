"""Unit tests for the HTTP and media stream endpoints."""
import base64
import pytest
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.core.config import settings
from app.main import app
from app.services.call_session.models import SessionStats


def start_event(call_id: str, agent_id: str = "support", tenant_id: str = "acme") -> dict:
    return {
        "event": "start",
        "start": {
            "streamSid": f"MZ-{call_id}",
            "callSid": call_id,
            "customParameters": {
                "callId": call_id,
                "tenantId": tenant_id,
                "agentId": agent_id,
            },
        },
    }


def media_event(frame: bytes) -> dict:
    return {"event": "media", "media": {"payload": base64.b64encode(frame).decode("ascii")}}


class TestHealthAPI:
    """Test health and integration status endpoints."""

    def test_health(self, test_client):
        """Test GET /health returns healthy status."""
        response = test_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_integration_status(self, test_client, synthesizer, telephony, monkeypatch):
        """Test GET /api/integrations/status reflects adapter configuration."""
        monkeypatch.setattr(settings, "deepgram_api_key", "dg-key")
        synthesizer.configured = False
        telephony.configured = False

        response = test_client.get("/api/integrations/status")

        assert response.status_code == 200
        assert response.json() == {
            "signalwire": False,
            "deepgram": True,
            "elevenlabs": False,
            "openai": True,
        }

    def test_integration_status_does_not_build_adapters(
        self, test_client, transcription_adapters, monkeypatch
    ):
        """Test the Deepgram check reads settings without opening a stream."""
        monkeypatch.setattr(settings, "deepgram_api_key", "")

        response = test_client.get("/api/integrations/status")

        assert response.json()["deepgram"] is False
        assert transcription_adapters == []


class TestVoiceWebhooks:
    """Test provider voice webhooks."""

    def test_incoming_call_connects_stream(self, test_client):
        """Test the incoming webhook answers with stream markup."""
        response = test_client.post(
            "/webhooks/voice/incoming?tenant_id=acme&agent_id=support&campaign_id=spring",
            data={"CallSid": "CA100", "From": "+15551112222", "To": "+15550000000"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        body = response.text
        assert '<Stream url="ws://testserver/ws/call/CA100">' in body
        assert '<Parameter name="callId" value="CA100" />' in body
        assert '<Parameter name="tenantId" value="acme" />' in body
        assert '<Parameter name="agentId" value="support" />' in body
        assert '<Parameter name="campaignId" value="spring" />' in body

    def test_status_terminal_ends_session(self, test_client, orchestrator):
        """Test a terminal status ends the call's session."""
        orchestrator.end_session = AsyncMock(return_value=SessionStats(reason="completed"))

        response = test_client.post(
            "/webhooks/voice/status",
            data={"CallSid": "CA100", "CallStatus": "completed", "CallDuration": "42"},
        )

        assert response.status_code == 200
        assert response.text == "OK"
        orchestrator.end_session.assert_awaited_once_with("CA100", reason="completed")

    def test_status_non_terminal_is_ignored(self, test_client, orchestrator):
        """Test progress statuses do not end the session."""
        orchestrator.end_session = AsyncMock()

        response = test_client.post(
            "/webhooks/voice/status", data={"CallSid": "CA100", "CallStatus": "ringing"}
        )

        assert response.status_code == 200
        orchestrator.end_session.assert_not_awaited()

    def test_status_errors_still_return_ok(self, test_client, orchestrator):
        """Test failures are logged and the provider still gets OK."""
        orchestrator.end_session = AsyncMock(side_effect=RuntimeError("boom"))

        response = test_client.post(
            "/webhooks/voice/status", data={"CallSid": "CA100", "CallStatus": "failed"}
        )

        assert response.status_code == 200
        assert response.text == "OK"


class TestMediaStream:
    """Test the media stream WebSocket."""

    def test_stream_lifecycle(
        self, test_client, orchestrator, telephony, transcription_adapters, synthesizer
    ):
        """Test start greets the caller, media is transcribed and stop ends the call."""
        with test_client.websocket_connect("/ws/call/CA200") as ws:
            ws.send_json(start_event("CA200"))

            greeting = [ws.receive_json() for _ in range(synthesizer.frames)]
            assert all(m["event"] == "media" for m in greeting)
            assert all(m["streamSid"] == "MZ-CA200" for m in greeting)
            assert base64.b64decode(greeting[0]["media"]["payload"]) == bytes([0]) * 160

            active = test_client.get("/api/calls/active", params={"tenant_id": "acme"})
            assert [c["call_id"] for c in active.json()] == ["CA200"]

            ws.send_json(media_event(bytes([128]) * 160))
            ws.send_json({"event": "stop"})

        assert synthesizer.requests[0]["text"] == "Hi, this is Riley. How can I help?"
        assert transcription_adapters[0].frames == [bytes([128]) * 160]
        assert transcription_adapters[0].close_count == 1
        assert telephony.ended == ["CA200"]
        assert orchestrator.active_call_count() == 0

    def test_unknown_agent_closes_stream(self, test_client, orchestrator):
        """Test a start event for an unknown agent closes with a policy error."""
        with test_client.websocket_connect("/ws/call/CA300") as ws:
            ws.send_json(start_event("CA300", agent_id="ghost"))
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()

        assert exc_info.value.code == 1008
        assert orchestrator.active_call_count() == 0

    def test_disconnect_ends_session(self, test_client, orchestrator, synthesizer):
        """Test dropping the socket ends the session as disconnected."""
        synthesizer.configured = False
        ended = []
        orchestrator.subscribe(
            lambda event: ended.append(event) if event.type.value == "session_ended" else None
        )

        with test_client.websocket_connect("/ws/call/CA400") as ws:
            ws.send_json(start_event("CA400"))
            ws.send_json(media_event(b"not-quite-audio"))

        assert [e.data["reason"] for e in ended] == ["disconnected"]
        assert orchestrator.active_call_count() == 0


class TestCallsAPI:
    """Test call control endpoints."""

    def test_place_outbound_call(self, test_client, telephony):
        """Test an outbound call is placed with webhooks for the agent."""
        response = test_client.post(
            "/api/calls/outbound",
            json={"to": "+15553334444", "tenant_id": "acme", "agent_id": "support"},
        )

        assert response.status_code == 200
        assert response.json() == {"call_id": "CA0001", "status": "ringing"}

        placed = telephony.placed[0]
        assert placed["to"] == "+15553334444"
        assert placed["from_"] == "+15550000000"
        webhook = urlparse(placed["webhook_url"])
        assert webhook.path == "/webhooks/voice/incoming"
        assert parse_qs(webhook.query) == {"tenant_id": ["acme"], "agent_id": ["support"]}
        assert placed["status_callback_url"] == "http://testserver/webhooks/voice/status"

    def test_outbound_unknown_agent(self, test_client, telephony):
        """Test an unknown agent is rejected with 404."""
        response = test_client.post(
            "/api/calls/outbound", json={"to": "+15553334444", "agent_id": "ghost"}
        )

        assert response.status_code == 404
        assert telephony.placed == []

    def test_outbound_without_telephony(self, test_client, telephony):
        """Test outbound calls need telephony credentials."""
        telephony.configured = False

        response = test_client.post("/api/calls/outbound", json={"to": "+15553334444"})

        assert response.status_code == 503

    def test_active_calls_requires_tenant(self, test_client):
        """Test the tenant filter is mandatory."""
        assert test_client.get("/api/calls/active").status_code == 422
        assert test_client.get("/api/calls/active?tenant_id=acme").json() == []

    def test_end_unknown_call(self, test_client):
        """Test ending an unknown call returns zeroed stats."""
        response = test_client.post("/api/calls/CA999/end")

        assert response.status_code == 200
        assert response.json() == {
            "duration_sec": 0,
            "credits_used": 0,
            "transcript_summary": "",
            "reason": None,
        }


class TestLifespan:
    """Test application startup and shutdown."""

    def test_call_cleanup_runs_for_app_lifetime(self):
        """Test the ended-call cleanup starts with the app and stops on shutdown."""
        with TestClient(app) as client:
            cleanup = client.app.state.call_cleanup
            assert not cleanup.done()

        assert cleanup.cancelled()
