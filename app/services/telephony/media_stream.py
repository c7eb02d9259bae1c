"""Bidirectional media stream bridge for provider WebSocket audio."""
import asyncio
import base64
import binascii
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from app.services.telephony.base import AudioSink

logger = logging.getLogger(__name__)

OUTBOUND_QUEUE_SIZE = 500


def decode_media_payload(message: Dict[str, Any]) -> Optional[bytes]:
    """Extract the audio bytes from a ``media`` event, or None if malformed."""
    payload = (message.get("media") or {}).get("payload")
    if not isinstance(payload, str):
        return None
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        return None


def media_message(stream_sid: str, frame: bytes) -> Dict[str, Any]:
    """Build an outbound ``media`` event."""
    return {
        "event": "media",
        "streamSid": stream_sid,
        "media": {"payload": base64.b64encode(frame).decode("ascii")},
    }


def clear_message(stream_sid: str) -> Dict[str, Any]:
    """Build a ``clear`` event telling the provider to drop buffered audio."""
    return {"event": "clear", "streamSid": stream_sid}


class MediaStreamSink(AudioSink):
    """Writes synthesized frames to the provider's media stream.

    Frames are queued and written by a single writer task so that clear()
    can discard unsent audio synchronously.
    """

    def __init__(
        self,
        send_json: Callable[[Dict[str, Any]], Awaitable[None]],
        stream_sid: str,
        max_queue: int = OUTBOUND_QUEUE_SIZE,
    ):
        self._send_json = send_json
        self.stream_sid = stream_sid
        self._queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=max_queue)
        self._writer: Optional[asyncio.Task] = None
        self.frames_sent = 0

    def start(self) -> None:
        """Start the writer task."""
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop())

    async def send(self, frame: bytes) -> None:
        """Queue one frame for the caller."""
        await self._queue.put(media_message(self.stream_sid, frame))

    def clear(self) -> None:
        """Drop unsent frames and tell the provider to flush its buffer."""
        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
                dropped += 1
            except asyncio.QueueEmpty:
                break
        try:
            self._queue.put_nowait(clear_message(self.stream_sid))
        except asyncio.QueueFull:
            logger.warning(f"[MEDIA STREAM] Could not queue clear - StreamSid: {self.stream_sid}")
        logger.debug(
            f"[MEDIA STREAM] Cleared {dropped} queued frame(s) - StreamSid: {self.stream_sid}"
        )

    async def _write_loop(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self._send_json(message)
                if message["event"] == "media":
                    self.frames_sent += 1
            except Exception as e:
                logger.debug(
                    f"[MEDIA STREAM] Failed to write {message['event']} - "
                    f"StreamSid: {self.stream_sid}, Error: {str(e)}"
                )

    async def close(self) -> None:
        """Stop the writer task."""
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
        self._writer = None
