"""Speech-to-text streaming service."""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from app.core.config import settings
from app.core.exceptions import AdapterUnavailable, NotConnected
from app.services.speech.models import (
    AudioFrame,
    SpeechStarted,
    StreamError,
    TranscriptEvent,
    TranscriptionListener,
    TranscriptionOptions,
    TranscriptionSignal,
    UtteranceEnded,
    WordTiming,
)

logger = logging.getLogger(__name__)

SEND_QUEUE_SIZE = 256


class TranscriptionAdapter(ABC):
    """Abstract base class for streaming transcription adapters.

    One instance serves exactly one call.
    """

    @abstractmethod
    def is_configured(self) -> bool:
        """Return True if the provider credentials are available."""
        pass

    @property
    @abstractmethod
    def connected(self) -> bool:
        """Return True while audio can be submitted."""
        pass

    @abstractmethod
    async def open(
        self, options: TranscriptionOptions, listener: TranscriptionListener
    ) -> None:
        """Open the stream; signals are delivered in order to ``listener``."""
        pass

    @abstractmethod
    def submit_audio(self, frame: AudioFrame) -> None:
        """Hand off one inbound audio frame without blocking."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the stream. Safe to call more than once."""
        pass


def parse_transcript_result(message: Dict[str, Any]) -> TranscriptEvent:
    """Convert a Deepgram ``Results`` message into a transcript event."""
    channel = message.get("channel") or {}
    alternatives = channel.get("alternatives") or []
    best = alternatives[0] if alternatives else {}

    return TranscriptEvent(
        text=best.get("transcript") or "",
        is_final=message.get("is_final") is True,
        confidence=best.get("confidence") or 0.0,
        words=[
            WordTiming(
                word=w.get("word", ""),
                start=w.get("start", 0.0),
                end=w.get("end", 0.0),
                confidence=w.get("confidence", 0.0),
            )
            for w in best.get("words") or []
        ],
        speech_final=message.get("speech_final") is True,
    )


class DeepgramTranscriptionAdapter(TranscriptionAdapter):
    """Deepgram live transcription over a WebSocket."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        url: Optional[str] = None,
        max_reconnect_attempts: Optional[int] = None,
        reconnect_delay_sec: Optional[float] = None,
        open_timeout: Optional[float] = None,
        connector: Optional[Callable[..., Any]] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.deepgram_api_key
        self.url = url or settings.deepgram_url
        self.max_reconnect_attempts = (
            max_reconnect_attempts
            if max_reconnect_attempts is not None
            else settings.deepgram_max_reconnect_attempts
        )
        self.reconnect_delay_sec = (
            reconnect_delay_sec
            if reconnect_delay_sec is not None
            else settings.deepgram_reconnect_delay_sec
        )
        self.open_timeout = open_timeout or settings.deepgram_open_timeout_sec
        self.connector = connector or connect

        self.options: Optional[TranscriptionOptions] = None
        self.reconnect_attempts = 0
        self._listener: Optional[TranscriptionListener] = None
        self._ws = None
        self._connected = False
        self._closing = False
        self._send_queue: "asyncio.Queue[AudioFrame]" = asyncio.Queue(
            maxsize=SEND_QUEUE_SIZE
        )
        self._receiver_task: Optional[asyncio.Task] = None
        self._sender_task: Optional[asyncio.Task] = None

    def is_configured(self) -> bool:
        """Return True if a Deepgram API key is set."""
        return bool(self.api_key)

    @property
    def connected(self) -> bool:
        """Return True while audio can be submitted."""
        return self._connected and not self._closing

    def build_url(self, options: TranscriptionOptions) -> str:
        """Build the listen URL for the given options."""
        params = {
            "language": options.language,
            "model": options.model,
            "punctuate": str(options.punctuate).lower(),
            "interim_results": str(options.interim_results).lower(),
            "endpointing": str(options.endpointing_ms),
            "utterance_end_ms": str(options.utterance_end_ms),
            "vad_events": str(options.vad_events).lower(),
            "encoding": options.encoding,
            "sample_rate": str(options.sample_rate),
        }
        return f"{self.url}?{urlencode(params)}"

    async def _connect(self):
        """Open one WebSocket connection with the stored options."""
        return await self.connector(
            self.build_url(self.options),
            additional_headers={"Authorization": f"Token {self.api_key}"},
            open_timeout=self.open_timeout,
        )

    async def open(
        self, options: TranscriptionOptions, listener: TranscriptionListener
    ) -> None:
        """
        Connect to Deepgram.

        Args:
            options: Language, model and endpointing options
            listener: Coroutine receiving transcription signals in order

        Raises:
            AdapterUnavailable: No API key, or the first connect failed
        """
        if self._ws is not None:
            return
        if self._closing:
            raise NotConnected("Deepgram stream already closed")
        if not self.is_configured():
            raise AdapterUnavailable("Deepgram not configured. Please provide API key.")

        self.options = options
        self._listener = listener

        try:
            ws = await self._connect()
        except Exception as e:
            logger.error(
                f"[STT] Failed to connect to Deepgram - Error: {type(e).__name__}: {str(e)}"
            )
            raise AdapterUnavailable(f"Deepgram connection failed: {e}") from e

        self._attach(ws)
        logger.info(
            f"[STT] Deepgram stream opened - Model: {options.model}, "
            f"Language: {options.language}, Endpointing: {options.endpointing_ms}ms"
        )

    def _attach(self, ws) -> None:
        """Start using a freshly opened connection."""
        self._ws = ws
        self._connected = True
        self.reconnect_attempts = 0
        self._receiver_task = asyncio.create_task(self._receive_loop(ws))
        if self._sender_task is None:
            self._sender_task = asyncio.create_task(self._send_loop())

    def submit_audio(self, frame: AudioFrame) -> None:
        """Queue one audio frame for sending."""
        if not self.connected:
            raise NotConnected("Not connected to Deepgram")
        try:
            self._send_queue.put_nowait(frame)
        except asyncio.QueueFull:
            logger.debug("[STT] Send queue full, dropping audio frame")

    async def keep_alive(self) -> None:
        """
        Send a keep-alive message while no audio is flowing.

        Telephony media streams send audio continuously, so the orchestrator
        never needs this. Callers that pause audio must send it themselves.
        """
        if self._ws is not None and self.connected:
            await self._ws.send(json.dumps({"type": "KeepAlive"}))

    async def _send_loop(self) -> None:
        """Drain queued audio frames into the current connection."""
        while True:
            frame = await self._send_queue.get()
            ws = self._ws
            if ws is None or not self._connected:
                continue
            try:
                await ws.send(frame)
            except ConnectionClosed:
                logger.debug("[STT] Connection closed while sending audio")
            except Exception as e:
                logger.warning(f"[STT] Error sending audio to Deepgram: {str(e)}")

    async def _receive_loop(self, ws) -> None:
        """Deliver provider messages to the listener until the connection ends."""
        try:
            async for message in ws:
                await self._handle_message(message)
                if self._closing:
                    return
        except asyncio.CancelledError:
            raise
        except (ConnectionClosed, OSError) as e:
            self._connected = False
            if self._closing:
                return
            code = getattr(getattr(e, "rcvd", None), "code", None)
            logger.warning(
                f"[STT] Deepgram disconnected unexpectedly - Code: {code}, Error: {str(e)}"
            )
            await self._reconnect()
            return

        self._connected = False
        if not self._closing:
            logger.info("[STT] Deepgram closed the stream normally")

    async def _reconnect(self) -> None:
        """Retry the connection with linearly increasing backoff."""
        for attempt in range(1, self.max_reconnect_attempts + 1):
            self.reconnect_attempts = attempt
            delay = self.reconnect_delay_sec * attempt
            logger.info(
                f"[STT] Reconnecting to Deepgram - Attempt: {attempt}/"
                f"{self.max_reconnect_attempts}, Delay: {delay}s"
            )
            await asyncio.sleep(delay)
            if self._closing:
                return
            try:
                ws = await self._connect()
            except Exception as e:
                logger.warning(f"[STT] Reconnect attempt {attempt} failed: {str(e)}")
                continue
            if self._closing:
                await ws.close()
                return
            self._attach(ws)
            logger.info(f"[STT] Reconnected to Deepgram after {attempt} attempt(s)")
            return

        logger.error("[STT] Deepgram reconnect attempts exhausted")
        await self._deliver(
            StreamError(
                message="Deepgram reconnect attempts exhausted",
                terminal=True,
            )
        )

    async def _handle_message(self, message: Any) -> None:
        """Parse one provider message and deliver the matching signal."""
        if isinstance(message, bytes):
            message = message.decode("utf-8", errors="replace")
        try:
            data = json.loads(message)
        except (json.JSONDecodeError, TypeError):
            logger.warning("[STT] Discarding malformed Deepgram message")
            return
        if not isinstance(data, dict):
            logger.warning("[STT] Discarding unexpected Deepgram payload")
            return

        msg_type = data.get("type")
        if msg_type == "Results":
            try:
                result = parse_transcript_result(data)
            except (AttributeError, TypeError, ValueError) as e:
                logger.warning(f"[STT] Discarding malformed Results message: {str(e)}")
                return
            if result.text or result.speech_final:
                await self._deliver(result)
        elif msg_type == "SpeechStarted":
            await self._deliver(SpeechStarted())
        elif msg_type == "UtteranceEnd":
            await self._deliver(UtteranceEnded())
        elif msg_type == "Metadata":
            logger.debug(f"[STT] Deepgram metadata: {data.get('request_id')}")
        elif msg_type == "Error":
            description = data.get("description") or "Deepgram error"
            logger.warning(f"[STT] Deepgram reported an error: {description}")
            await self._deliver(StreamError(message=description, terminal=False))

    async def _deliver(self, signal: TranscriptionSignal) -> None:
        """Pass a signal to the listener, isolating listener failures."""
        if self._listener is None:
            return
        try:
            await self._listener(signal)
        except Exception as e:
            logger.error(
                f"[STT] Listener failed handling {type(signal).__name__}: {str(e)}",
                exc_info=True,
            )

    async def close(self) -> None:
        """Close the stream, releasing the connection even mid-delivery."""
        if self._closing:
            return
        self._closing = True
        self._connected = False
        ws = self._ws
        try:
            if ws is not None:
                try:
                    await ws.send(json.dumps({"type": "CloseStream"}))
                except Exception as e:
                    logger.debug(f"[STT] CloseStream not sent: {str(e)}")
                try:
                    await ws.close(code=1000, reason="Client disconnect")
                except Exception as e:
                    logger.debug(f"[STT] Error closing Deepgram socket: {str(e)}")
        finally:
            current = asyncio.current_task()
            for task in (self._receiver_task, self._sender_task):
                if task is not None and task is not current and not task.done():
                    task.cancel()
            self._ws = None
            logger.info("[STT] Deepgram stream closed")
