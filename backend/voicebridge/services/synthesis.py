"""
VoiceBridge - Speech Synthesis Service

Text-to-speech for agent replies.

Architecture:
    - SpeechSynthesizer yields raw audio bytes for a reply as they arrive
    - DeepgramSpeechSynthesizer: Deepgram Aura REST API, response body
      streamed chunk by chunk
    - DummySpeechSynthesizer: μ-law silence sized to the text, for
      development and tests without credentials
"""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from typing import AsyncIterator, Callable, Optional, Protocol, runtime_checkable

import aiohttp

from voicebridge.core.exceptions import SynthesisError
from voicebridge.core.types import TELEPHONY_AUDIO_FORMAT, AudioFormat

logger = logging.getLogger(__name__)

# μ-law encodes zero amplitude as 0xFF
MULAW_SILENCE = b"\xff"


# =============================================================================
# Protocol (Interface)
# =============================================================================

@runtime_checkable
class SpeechSynthesizer(Protocol):
    """
    Protocol for text-to-speech services.

    Implementations yield header-less audio in the requested format. Chunk
    sizes are arbitrary; callers re-chunk as they need.
    """

    @abstractmethod
    def synthesize(
        self,
        text: str,
        audio_format: AudioFormat = TELEPHONY_AUDIO_FORMAT,
    ) -> AsyncIterator[bytes]:
        """
        Synthesize `text`.

        Raises:
            SynthesisError: If the request fails (may be raised mid-stream)
        """
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        ...


# =============================================================================
# Dummy Implementation (Development/Testing)
# =============================================================================

class DummySpeechSynthesizer:
    """
    Placeholder synthesizer producing silence.

    Roughly 60ms of audio per character, so replies have a realistic
    length on the wire.

    WARNING: This is NOT suitable for production use.
    """

    def __init__(self, ms_per_char: float = 60.0, simulated_latency_ms: float = 0.0):
        self._ms_per_char = ms_per_char
        self._simulated_latency_ms = simulated_latency_ms

    @property
    def model_id(self) -> str:
        return "dummy-silence-v0.1"

    async def synthesize(
        self,
        text: str,
        audio_format: AudioFormat = TELEPHONY_AUDIO_FORMAT,
    ) -> AsyncIterator[bytes]:
        if not text:
            return
        if self._simulated_latency_ms:
            await asyncio.sleep(self._simulated_latency_ms / 1000.0)

        total = int(len(text) * self._ms_per_char / 1000.0 * audio_format.bytes_per_second)
        block = 4096
        for offset in range(0, total, block):
            yield MULAW_SILENCE * min(block, total - offset)


# =============================================================================
# Deepgram Implementation
# =============================================================================

class DeepgramSpeechSynthesizer:
    """
    Deepgram Aura REST synthesis.

    One HTTP session is reused across calls; `close` releases it at
    application shutdown.
    """

    def __init__(
        self,
        api_key: str,
        speak_url: str = "https://api.deepgram.com/v1/speak",
        model: str = "aura-asteria-en",
        read_chunk_bytes: int = 4096,
        timeout_seconds: float = 30.0,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        if not api_key:
            raise ValueError("Deepgram synthesizer requires an API key")
        self._api_key = api_key
        self._speak_url = speak_url
        self._model = model
        self._read_chunk_bytes = read_chunk_bytes
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def model_id(self) -> str:
        return f"deepgram-{self._model}"

    def build_params(self, audio_format: AudioFormat = TELEPHONY_AUDIO_FORMAT) -> dict:
        return {
            "model": self._model,
            "encoding": audio_format.encoding,
            "sample_rate": str(audio_format.sample_rate),
            "container": audio_format.container,
        }

    async def synthesize(
        self,
        text: str,
        audio_format: AudioFormat = TELEPHONY_AUDIO_FORMAT,
    ) -> AsyncIterator[bytes]:
        if not text:
            return
        session = await self._ensure_session()

        headers = {
            "Authorization": f"Token {self._api_key}",
            "Content-Type": "application/json",
            "Accept": "audio/*",
        }

        logger.debug("Deepgram TTS request: model=%s chars=%d", self._model, len(text))

        try:
            async with session.post(
                self._speak_url,
                params=self.build_params(audio_format),
                json={"text": text},
                headers=headers,
                timeout=self._timeout,
            ) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise SynthesisError(
                        f"Deepgram TTS failed with status {response.status}",
                        details={"status": response.status, "body": body[:200]},
                    )
                async for chunk in response.content.iter_chunked(self._read_chunk_bytes):
                    if chunk:
                        yield chunk
        except aiohttp.ClientError as e:
            raise SynthesisError(f"Deepgram TTS request failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise SynthesisError("Deepgram TTS request timed out") from e

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            factory = self._session_factory or aiohttp.ClientSession
            self._session = factory()
        return self._session
