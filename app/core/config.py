"""Application configuration."""
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # OpenAI (turn generation)
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_max_tokens: int = 150
    openai_temperature: float = 0.7
    generation_timeout_sec: float = 10.0

    # Deepgram (speech-to-text)
    deepgram_api_key: Optional[str] = None
    deepgram_url: str = "wss://api.deepgram.com/v1/listen"
    deepgram_open_timeout_sec: float = 10.0
    deepgram_max_reconnect_attempts: int = 3
    deepgram_reconnect_delay_sec: float = 1.0

    # ElevenLabs (text-to-speech)
    elevenlabs_api_key: Optional[str] = None
    elevenlabs_base_url: str = "https://api.elevenlabs.io/v1"
    elevenlabs_model_id: str = "eleven_turbo_v2_5"
    elevenlabs_output_format: str = "ulaw_8000"
    synthesis_timeout_sec: float = 15.0

    # SignalWire (telephony)
    signalwire_project_id: Optional[str] = None
    signalwire_token: Optional[str] = None
    signalwire_space_url: Optional[str] = None
    signalwire_phone_number: Optional[str] = None
    telephony_timeout_sec: float = 10.0
    call_cleanup_interval_sec: float = 300.0
    ended_call_max_age_sec: float = 3600.0

    # Call orchestration
    silence_threshold_ms: int = 1500
    max_call_duration_sec: int = 600
    credits_per_minute: int = 5
    credit_unit_size: int = 100
    history_window: int = 10
    vad_energy_threshold: float = 10.0
    vad_zero_reference: int = 128
    reengagement_prompt: Optional[str] = None

    # Agent directory
    agents_file: Optional[str] = None

    # Server
    base_url: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


settings = Settings()
