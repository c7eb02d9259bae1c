"""SignalWire telephony client."""
import asyncio
import logging
import time
from typing import Dict, List, Mapping, Optional
import httpx

from app.core.config import settings
from app.core.exceptions import AdapterUnavailable, TelephonyError
from app.services.telephony.base import CallState, TelephonyClient

logger = logging.getLogger(__name__)

STATUS_MAP: Dict[str, str] = {
    "initiated": "initiated",
    "queued": "initiated",
    "ringing": "ringing",
    "in-progress": "answered",
    "completed": "completed",
    "busy": "failed",
    "failed": "failed",
    "no-answer": "failed",
    "canceled": "failed",
}

TERMINAL_PROVIDER_STATUSES = ("completed", "failed", "busy", "no-answer", "canceled")


def escape_xml(text: str) -> str:
    """Escape XML special characters."""
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


class SignalWireClient(TelephonyClient):
    """Client for the SignalWire LaML (Twilio-compatible) REST API."""

    def __init__(
        self,
        project_id: Optional[str] = None,
        token: Optional[str] = None,
        space_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.project_id = project_id if project_id is not None else settings.signalwire_project_id
        self.token = token if token is not None else settings.signalwire_token
        self.space_url = space_url if space_url is not None else settings.signalwire_space_url
        self.timeout = timeout or settings.telephony_timeout_sec
        self._client = client
        self.active_calls: Dict[str, CallState] = {}

    def is_configured(self) -> bool:
        """Return True if project id, token and space URL are all set."""
        return bool(self.project_id and self.token and self.space_url)

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the shared HTTP client, creating it on first use."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def _api_url(self, path: str) -> str:
        return (
            f"https://{self.space_url}/api/laml/2010-04-01/Accounts/"
            f"{self.project_id}{path}"
        )

    def _auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(self.project_id or "", self.token or "")

    async def place_call(
        self,
        to: str,
        from_: str,
        webhook_url: str,
        status_callback_url: Optional[str] = None,
    ) -> CallState:
        """
        Initiate an outbound call.

        Args:
            to: Destination number (E.164)
            from_: Caller ID number
            webhook_url: URL the provider fetches call instructions from
            status_callback_url: URL for call status updates

        Returns:
            State of the new call, keyed by the provider's call SID
        """
        if not self.is_configured():
            raise AdapterUnavailable(
                "SignalWire not configured. Please provide API credentials."
            )

        data = {
            "To": to,
            "From": from_,
            "Url": webhook_url,
            "StatusCallback": status_callback_url or f"{webhook_url.rstrip('/')}/status",
            "StatusCallbackEvent": ["initiated", "ringing", "answered", "completed"],
        }

        try:
            response = await self.client.post(
                self._api_url("/Calls.json"), data=data, auth=self._auth()
            )
        except httpx.HTTPError as e:
            raise TelephonyError(f"SignalWire request failed: {str(e)}") from e

        if response.status_code >= 400:
            raise TelephonyError(f"SignalWire API error: {response.text}")

        payload = response.json()
        call_state = CallState(
            call_id=payload["sid"],
            status="ringing",
            direction="outbound",
            to=to,
            from_=from_,
        )
        self.active_calls[call_state.call_id] = call_state
        logger.info(f"[TELEPHONY] Outbound call placed - CallSid: {call_state.call_id}")
        return call_state

    async def end_call(self, call_id: str) -> None:
        """End an active call. A call the provider no longer knows is treated as ended."""
        if not self.is_configured():
            raise AdapterUnavailable("SignalWire not configured")

        try:
            response = await self.client.post(
                self._api_url(f"/Calls/{call_id}.json"),
                data={"Status": "completed"},
                auth=self._auth(),
            )
        except httpx.HTTPError as e:
            raise TelephonyError(f"SignalWire request failed: {str(e)}") from e

        if response.status_code == 404:
            logger.info(f"[TELEPHONY] Call already ended - CallSid: {call_id}")
        elif response.status_code >= 400:
            raise TelephonyError(f"Failed to end call: {response.text}")

        call_state = self.active_calls.get(call_id)
        if call_state and not call_state.is_terminal:
            call_state.status = "completed"
            call_state.ended_at = time.time()

    def handle_inbound_call(self, form: Mapping[str, str]) -> CallState:
        """Register an inbound call from the voice webhook payload."""
        call_state = CallState(
            call_id=form["CallSid"],
            status="ringing",
            direction="inbound",
            to=form.get("To", ""),
            from_=form.get("From", ""),
        )
        self.active_calls[call_state.call_id] = call_state
        return call_state

    def handle_status_callback(self, form: Mapping[str, str]) -> Optional[CallState]:
        """Apply a status callback to the tracked call."""
        call_state = self.active_calls.get(form.get("CallSid", ""))
        if not call_state:
            return None

        call_state.status = STATUS_MAP.get(form.get("CallStatus", ""), call_state.status)
        if call_state.is_terminal:
            call_state.ended_at = time.time()
            try:
                call_state.duration_sec = int(form.get("CallDuration") or 0)
            except ValueError:
                call_state.duration_sec = 0
        if form.get("RecordingUrl"):
            call_state.recording_url = form["RecordingUrl"]
        return call_state

    def stream_twiml(
        self, call_id: str, stream_url: str, parameters: Optional[Dict[str, str]] = None
    ) -> str:
        """Generate markup connecting the call audio to a WebSocket stream."""
        params = {"callId": call_id}
        params.update({k: v for k, v in (parameters or {}).items() if v})
        parameter_lines = "\n".join(
            f'      <Parameter name="{escape_xml(name)}" value="{escape_xml(value)}" />'
            for name, value in params.items()
        )
        return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
  <Connect>
    <Stream url="{escape_xml(stream_url)}">
{parameter_lines}
    </Stream>
  </Connect>
</Response>"""

    def get_active_calls(self) -> List[CallState]:
        """Calls that have not completed or failed."""
        return [c for c in self.active_calls.values() if not c.is_terminal]

    def cleanup_completed_calls(self, max_age_sec: float = 3600) -> int:
        """Forget calls that ended more than ``max_age_sec`` ago."""
        now = time.time()
        stale = [
            call_id
            for call_id, call_state in self.active_calls.items()
            if call_state.ended_at and now - call_state.ended_at > max_age_sec
        ]
        for call_id in stale:
            del self.active_calls[call_id]
        return len(stale)

    async def run_cleanup(self, interval_sec: float, max_age_sec: float = 3600) -> None:
        """Forget ended calls every ``interval_sec`` until cancelled."""
        while True:
            await asyncio.sleep(interval_sec)
            try:
                removed = self.cleanup_completed_calls(max_age_sec)
            except Exception as e:
                logger.error(f"[TELEPHONY] Call cleanup failed: {str(e)}", exc_info=True)
                continue
            if removed:
                logger.info(f"[TELEPHONY] Cleaned up {removed} ended call(s)")

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
