"""
VoiceBridge - Configuration Management

Centralized configuration using Pydantic Settings.
All secrets and environment-specific values are loaded from environment variables.
"""

from functools import lru_cache
from typing import Any, List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from voicebridge.core.types import CommitPolicy


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Hierarchy (highest to lowest priority):
    1. Environment variables
    2. .env file
    3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: str = "development"
    app_debug: bool = True
    app_log_level: str = "INFO"
    log_json: bool = False  # JSON log lines (production) vs human-readable

    # --- Server ---
    backend_host: str = "0.0.0.0"
    backend_port: int = 3000
    # Host used in TwiML stream URLs; falls back to the request Host header
    public_host: Optional[str] = None
    stream_path: str = "/stream"
    allowed_origins: str = "http://localhost:3000,http://127.0.0.1:3000"

    # --- Twilio ---
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    twiml_voice: str = "alice"
    greeting_template: str = (
        "Hello, this is a reminder about your order {order} is expected to "
        "deliver today. Let me know if you have any query."
    )

    # --- Speech Recognition ---
    # "deepgram" = Deepgram live streaming (requires DEEPGRAM_API_KEY)
    # "disabled" = inbound audio is accepted but never transcribed
    transcription_backend: str = "deepgram"
    deepgram_api_key: str = ""
    deepgram_listen_url: str = "wss://api.deepgram.com/v1/listen"
    stt_model: str = "nova-2"
    stt_language: str = "en-US"
    stt_smart_format: bool = True
    stt_interim_results: bool = False
    stt_no_delay: bool = True
    # "final" = every final fragment is one utterance
    # "endpoint" = buffer finals until the recognizer signals end of speech
    transcript_commit_policy: CommitPolicy = CommitPolicy.FINAL

    # --- Speech Synthesis ---
    # "deepgram" = Deepgram Aura REST synthesis (requires DEEPGRAM_API_KEY)
    # "dummy" = μ-law silence, for development without credentials
    synthesis_backend: str = "deepgram"
    deepgram_speak_url: str = "https://api.deepgram.com/v1/speak"
    tts_model: str = "aura-asteria-en"
    # 1600 bytes = 200ms of 8kHz μ-law
    tts_chunk_bytes: int = 1600
    tts_realtime_pacing: bool = False

    # --- Conversational Agent ---
    # "salesforce" = Einstein AI Agent API
    # "disabled" = every turn gets the deterministic fallback reply
    agent_backend: str = "salesforce"
    salesforce_client_id: str = ""
    salesforce_client_secret: str = ""
    salesforce_instance_url: str = ""
    salesforce_agent_id: str = ""
    salesforce_api_base_url: str = "https://api.salesforce.com/einstein/ai-agent/v1"
    agent_ready_attempts: int = 5
    agent_ready_interval_seconds: float = 1.0
    agent_request_timeout_seconds: float = 30.0

    # --- Call Sessions ---
    max_concurrent_calls: int = 100
    teardown_grace_seconds: float = 5.0

    @field_validator("transcript_commit_policy", mode="before")
    @classmethod
    def _normalize_commit_policy(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse comma-separated origins into list."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env.lower() == "production"

    @property
    def transcription_enabled(self) -> bool:
        return self.transcription_backend.lower() == "deepgram" and bool(self.deepgram_api_key.strip())

    @property
    def agent_enabled(self) -> bool:
        """The agent backend is only used when an agent id is configured."""
        return self.agent_backend.lower() == "salesforce" and bool(self.salesforce_agent_id.strip())

    @property
    def twilio_enabled(self) -> bool:
        return bool(
            self.twilio_account_sid.strip()
            and self.twilio_auth_token.strip()
            and self.twilio_phone_number.strip()
        )


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings instance.

    Use dependency injection in routes:
        settings: Settings = Depends(get_settings)
    """
    return Settings()


# Convenience export
settings = get_settings()
