"""Text-to-speech streaming service."""
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Dict, Optional
import httpx

from app.core.config import settings
from app.core.exceptions import AdapterUnavailable, SynthesisError
from app.services.speech.models import AudioFrame

logger = logging.getLogger(__name__)

# Pre-configured voice IDs for common use cases
VOICE_PRESETS: Dict[str, str] = {
    "RACHEL": "21m00Tcm4TlvDq8ikWAM",  # Calm, professional female
    "DREW": "29vD33N1CtxCmqQRPOHJ",  # Warm, friendly male
    "CLYDE": "2EiwWnXFnvU5JabPnv8n",  # Deep, authoritative male
    "DAVE": "CYw3kZ02Hs0563khs1Fj",  # Conversational British male
    "EMILY": "LcfcDJNUP1GQjkzn1xUU",  # Warm, empathetic female
    "ELLI": "MF3mGyEYCl7XYWbV9V6O",  # Young, energetic female
    "JOSH": "TxGEqnHWrfWFTfGW9XjX",  # Confident, persuasive male
    "ARNOLD": "VR6AewLTigWG4xSOukaG",  # Deep, commanding male
    "ADAM": "pNInz6obpgDQGcFmaJgB",  # Neutral, clear male
    "ANTONI": "ErXwobaYiN019PkySvjV",  # Pleasant, European male
}

DEFAULT_VOICE_ID = VOICE_PRESETS["RACHEL"]
DEFAULT_CHUNK_SIZE = 640


class SpeechSynthesisAdapter(ABC):
    """Abstract base class for streaming speech synthesis."""

    @abstractmethod
    def is_configured(self) -> bool:
        """Return True if the provider credentials are available."""
        pass

    @abstractmethod
    def synthesize(
        self,
        voice_id: str,
        text: str,
        output_format: str,
        latency_optimization: int,
    ) -> AsyncIterator[AudioFrame]:
        """Return a lazy, finite sequence of audio frames for ``text``.

        The consumer may stop iterating early; closing the iterator releases
        the underlying request.
        """
        pass


class ElevenLabsSynthesisAdapter(SpeechSynthesisAdapter):
    """ElevenLabs streaming text-to-speech over HTTP."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model_id: Optional[str] = None,
        timeout: Optional[float] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.elevenlabs_api_key
        self.base_url = (base_url or settings.elevenlabs_base_url).rstrip("/")
        self.model_id = model_id or settings.elevenlabs_model_id
        self.timeout = timeout or settings.synthesis_timeout_sec
        self.chunk_size = chunk_size
        self._client = client

    def is_configured(self) -> bool:
        """Return True if an ElevenLabs API key is set."""
        return bool(self.api_key)

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the shared HTTP client, creating it on first use."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def _headers(self) -> Dict[str, str]:
        return {
            "xi-api-key": self.api_key or "",
            "Content-Type": "application/json",
        }

    async def synthesize(
        self,
        voice_id: str,
        text: str,
        output_format: str = "ulaw_8000",
        latency_optimization: int = 4,
    ) -> AsyncIterator[AudioFrame]:
        """
        Stream synthesized speech for one utterance.

        Args:
            voice_id: ElevenLabs voice identifier
            text: Text to speak
            output_format: Provider output format (ulaw_8000 for telephony)
            latency_optimization: 0 (default) to 4 (max optimization)

        Yields:
            Audio frames as they arrive

        Raises:
            AdapterUnavailable: No API key configured
            SynthesisError: The provider rejected the request or the stream broke
        """
        if not self.is_configured():
            raise AdapterUnavailable("ElevenLabs not configured. Please provide API key.")

        url = f"{self.base_url}/text-to-speech/{voice_id or DEFAULT_VOICE_ID}/stream"
        params = {
            "output_format": output_format,
            "optimize_streaming_latency": str(latency_optimization),
        }
        body = {
            "text": text,
            "model_id": self.model_id,
            "voice_settings": {
                "stability": 0.5,
                "similarity_boost": 0.75,
            },
        }

        try:
            async with self.client.stream(
                "POST", url, params=params, json=body, headers=self._headers()
            ) as response:
                if response.status_code >= 400:
                    error = (await response.aread()).decode("utf-8", errors="replace")
                    raise SynthesisError(
                        f"ElevenLabs TTS stream failed ({response.status_code}): {error}"
                    )
                async for chunk in response.aiter_bytes(self.chunk_size):
                    if chunk:
                        yield chunk
        except httpx.HTTPError as e:
            raise SynthesisError(f"ElevenLabs TTS stream failed: {str(e)}") from e

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
