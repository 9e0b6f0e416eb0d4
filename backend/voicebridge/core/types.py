"""
VoiceBridge - Core Domain Types

Internal type definitions shared by the call orchestrator and the
collaborator adapters. These are domain objects, independent of the
telephony wire format (see telephony.models for that).

Design Notes:
- Dataclasses for simplicity; frozen where values are passed between tasks.
- AgentReply is a tagged variant so the single-string vs multi-part shape of
  backend replies is resolved in one place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import NewType, Optional, Sequence, Tuple, Union


# =============================================================================
# Type Aliases
# =============================================================================

StreamSid = NewType("StreamSid", str)
"""Opaque token assigned by the telephony channel to the active media stream."""

AudioChunk = NewType("AudioChunk", bytes)
"""Raw audio bytes. Telephony format: 8kHz μ-law, no container."""


# =============================================================================
# Enums
# =============================================================================

class CallState(str, Enum):
    """Lifecycle of one call session. Only ever moves forward."""
    CONNECTING = "connecting"  # no stream identifier yet
    STREAMING = "streaming"    # identifier assigned, media flowing
    CLOSING = "closing"        # stop received or connection closed
    TERMINATED = "terminated"  # collaborators released

    @property
    def rank(self) -> int:
        return _STATE_ORDER.index(self)


_STATE_ORDER = [
    CallState.CONNECTING,
    CallState.STREAMING,
    CallState.CLOSING,
    CallState.TERMINATED,
]


class ReplyKind(str, Enum):
    """Shape of an agent reply as returned by the backend."""
    SINGLE = "single"
    MULTI = "multi"


class CommitPolicy(str, Enum):
    """When buffered final transcripts become an utterance."""
    FINAL = "final"        # each final fragment is its own utterance
    ENDPOINT = "endpoint"  # wait for the recognizer's end-of-speech flag


# =============================================================================
# Audio
# =============================================================================

@dataclass(frozen=True)
class AudioFormat:
    """Encoding parameters for raw audio streams."""
    encoding: str = "mulaw"
    sample_rate: int = 8000
    container: str = "none"

    @property
    def bytes_per_second(self) -> int:
        # μ-law is one byte per sample; linear16 is two
        width = 1 if self.encoding in ("mulaw", "alaw") else 2
        return self.sample_rate * width


TELEPHONY_AUDIO_FORMAT = AudioFormat()
"""8kHz μ-law, header-less: what Twilio Media Streams sends and expects."""


# =============================================================================
# Speech Recognition Events
# =============================================================================

@dataclass(frozen=True)
class TranscriptFragment:
    """
    A recognized span of speech.

    Attributes:
        text: Recognized text (may be empty for silence)
        is_final: False for interim hypotheses that may still be revised
        speech_final: Recognizer detected end of speech after this fragment
        confidence: Recognizer confidence, when reported
    """
    text: str
    is_final: bool
    speech_final: bool = False
    confidence: Optional[float] = None

    @property
    def is_blank(self) -> bool:
        return not self.text.strip()


@dataclass(frozen=True)
class RecognitionError:
    """Stream-level error reported by the speech recognizer."""
    message: str
    fatal: bool = False


TranscriptEvent = Union[TranscriptFragment, RecognitionError]


# =============================================================================
# Conversational Agent
# =============================================================================

@dataclass(frozen=True)
class AgentSessionHandle:
    """Backend session identifiers returned by session creation."""
    session_id: str
    session_key: Optional[str] = None


@dataclass(frozen=True)
class AgentReply:
    """
    The backend's answer to one utterance.

    Either a single string or an ordered list of parts; `text` joins the
    parts with single spaces in delivery order.
    """
    kind: ReplyKind
    parts: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def single(cls, text: str) -> "AgentReply":
        return cls(kind=ReplyKind.SINGLE, parts=(text,))

    @classmethod
    def multi(cls, parts: Sequence[str]) -> "AgentReply":
        return cls(kind=ReplyKind.MULTI, parts=tuple(parts))

    @classmethod
    def from_payload(cls, payload: Union[str, Sequence[str], None]) -> "AgentReply":
        """Build a reply from a raw backend value (string or list of strings)."""
        if payload is None:
            return cls.single("")
        if isinstance(payload, str):
            return cls.single(payload)
        return cls.multi([str(part) for part in payload])

    @property
    def text(self) -> str:
        return " ".join(part.strip() for part in self.parts if part and part.strip())

    @property
    def is_empty(self) -> bool:
        return not self.text


# =============================================================================
# Relay Results
# =============================================================================

@dataclass
class RelayResult:
    """Outcome of relaying one reply to the caller."""
    chunks_sent: int = 0
    bytes_sent: int = 0
    completed: bool = False
    skipped_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "chunks_sent": self.chunks_sent,
            "bytes_sent": self.bytes_sent,
            "completed": self.completed,
            "skipped_reason": self.skipped_reason,
        }
