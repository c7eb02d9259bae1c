"""Speech stream value objects."""
from typing import Awaitable, Callable, List, Union
from pydantic import BaseModel

AudioFrame = bytes


class WordTiming(BaseModel):
    """Word-level timing and confidence."""

    word: str
    start: float = 0.0
    end: float = 0.0
    confidence: float = 0.0


class TranscriptEvent(BaseModel):
    """Incremental or finalized transcript from the recognizer."""

    text: str
    is_final: bool = False
    confidence: float = 0.0
    words: List[WordTiming] = []
    speech_final: bool = False  # speaker finished talking (endpoint detected)


class SpeechStarted(BaseModel):
    """The recognizer detected the start of user speech."""


class UtteranceEnded(BaseModel):
    """The recognizer detected the end of a user utterance."""


class StreamError(BaseModel):
    """An error reported by the transcription stream."""

    message: str
    terminal: bool = False


TranscriptionSignal = Union[TranscriptEvent, SpeechStarted, UtteranceEnded, StreamError]

TranscriptionListener = Callable[[TranscriptionSignal], Awaitable[None]]


class TranscriptionOptions(BaseModel):
    """Connection options for a transcription stream."""

    language: str = "en-US"
    model: str = "nova-2"
    punctuate: bool = True
    interim_results: bool = True
    endpointing_ms: int = 300
    utterance_end_ms: int = 1000
    vad_events: bool = True
    encoding: str = "mulaw"
    sample_rate: int = 8000
