"""
VoiceBridge - Audio Relay

Speaks an agent reply back to the caller: synthesizes the text, cuts the
audio into telephony-sized blocks and sends each one as a media event on
the call's stream.

Delivery Rules:
    - Blocks go out in the order the synthesizer produced them
    - A failure part way through stops the remaining blocks for that reply
      only; the call carries on
    - Nothing is retried
"""

from __future__ import annotations

import asyncio
import base64
import logging
from abc import abstractmethod
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, Optional, Protocol, Union, runtime_checkable

from voicebridge.core.exceptions import SynthesisError
from voicebridge.core.types import TELEPHONY_AUDIO_FORMAT, AudioChunk, RelayResult

logger = logging.getLogger(__name__)


@runtime_checkable
class MediaDestination(Protocol):
    """Outbound side of a telephony media stream."""

    @property
    @abstractmethod
    def stream_sid(self) -> Optional[str]:
        ...

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...

    @abstractmethod
    async def send(self, event: Dict[str, Any]) -> None:
        """Deliver one outbound event. Raises if the channel is gone."""
        ...


def build_media_event(stream_sid: str, chunk: bytes) -> Dict[str, Any]:
    """Twilio Media Streams outbound media envelope."""
    return {
        "event": "media",
        "streamSid": stream_sid,
        "media": {"payload": base64.b64encode(chunk).decode("ascii")},
    }


async def rechunk(source: AsyncIterator[bytes], size: int) -> AsyncIterator[AudioChunk]:
    """Regroup an arbitrary byte stream into blocks of at most `size` bytes."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    pending = bytearray()
    async for data in source:
        pending.extend(data)
        while len(pending) >= size:
            yield AudioChunk(bytes(pending[:size]))
            del pending[:size]
    if pending:
        yield AudioChunk(bytes(pending))


class AudioRelay:
    """
    Reply-to-audio relay for one call.

    Args:
        synthesizer: SpeechSynthesizer, or None when synthesis is unavailable
        chunk_bytes: Maximum bytes per outbound media event
        realtime_pacing: Sleep each block's playback time before the next
        log: Call-scoped logger
    """

    def __init__(
        self,
        synthesizer,
        chunk_bytes: int = 1600,
        realtime_pacing: bool = False,
        log: Union[logging.Logger, logging.LoggerAdapter, None] = None,
    ):
        if chunk_bytes <= 0:
            raise ValueError("chunk_bytes must be positive")
        self._synthesizer = synthesizer
        self._chunk_bytes = chunk_bytes
        self._realtime_pacing = realtime_pacing
        self._log = log or logger

    async def speak(self, reply_text: str, destination: MediaDestination) -> RelayResult:
        result = RelayResult()

        skip = self._skip_reason(reply_text, destination)
        if skip:
            self._log.warning("Not speaking reply: %s", skip)
            result.skipped_reason = skip
            return result

        audio_format = TELEPHONY_AUDIO_FORMAT
        stream_sid = destination.stream_sid
        self._log.info("🔊 Speaking reply (%d chars)", len(reply_text))

        try:
            # An abandoned synthesis must release its HTTP response on exit
            async with aclosing(self._synthesizer.synthesize(reply_text, audio_format)) as audio, \
                    aclosing(rechunk(audio, self._chunk_bytes)) as chunks:
                async for chunk in chunks:
                    if not destination.is_open:
                        self._log.warning(
                            "Destination closed after %d chunks; dropping rest of reply",
                            result.chunks_sent,
                        )
                        return result
                    await destination.send(build_media_event(stream_sid, chunk))
                    result.chunks_sent += 1
                    result.bytes_sent += len(chunk)
                    if self._realtime_pacing:
                        await asyncio.sleep(len(chunk) / audio_format.bytes_per_second)
        except asyncio.CancelledError:
            raise
        except SynthesisError as e:
            self._log.error("TTS error after %d chunks: %s", result.chunks_sent, e.message)
            return result
        except Exception as e:
            self._log.error("Audio delivery failed after %d chunks: %s", result.chunks_sent, e)
            return result

        result.completed = True
        self._log.info(
            "✅ Reply delivered: %d chunks, %d bytes",
            result.chunks_sent,
            result.bytes_sent,
        )
        return result

    def _skip_reason(self, reply_text: str, destination: MediaDestination) -> Optional[str]:
        if not reply_text or not reply_text.strip():
            return "empty reply"
        if not destination.stream_sid:
            return "no stream identifier"
        if not destination.is_open:
            return "destination closed"
        if self._synthesizer is None:
            return "no synthesizer configured"
        return None
