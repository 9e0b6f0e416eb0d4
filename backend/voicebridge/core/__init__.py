"""
VoiceBridge - Core Package

Contains the per-call orchestration logic and domain types:
- orchestrator: Call session lifecycle and collaborator wiring
- turns: Agent turn handling with readiness wait and fallbacks
- relay: Reply synthesis and outbound media delivery
- transcript: Fragment aggregation into utterances
- session: Call session state
- types: Internal domain types and type aliases
"""

from .types import (
    StreamSid,
    AudioChunk,
    AudioFormat,
    CallState,
    CommitPolicy,
    ReplyKind,
    TranscriptFragment,
    RecognitionError,
    AgentReply,
    AgentSessionHandle,
    RelayResult,
    TELEPHONY_AUDIO_FORMAT,
)
from .transcript import TranscriptAggregator
from .session import AgentSessionSlot, CallSession
from .turns import AgentTurnManager
from .relay import AudioRelay, MediaDestination

__all__ = [
    # Orchestration
    "AgentTurnManager",
    "AudioRelay",
    "MediaDestination",
    "TranscriptAggregator",
    "AgentSessionSlot",
    "CallSession",
    # Types
    "StreamSid",
    "AudioChunk",
    "AudioFormat",
    "CallState",
    "CommitPolicy",
    "ReplyKind",
    "TranscriptFragment",
    "RecognitionError",
    "AgentReply",
    "AgentSessionHandle",
    "RelayResult",
    "TELEPHONY_AUDIO_FORMAT",
]
