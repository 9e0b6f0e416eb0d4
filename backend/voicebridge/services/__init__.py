"""
VoiceBridge - Services Package

Contains service interfaces and implementations for:
- Speech recognition (Deepgram live streaming)
- Conversational agent (Salesforce Einstein AI Agent API)
- Speech synthesis (Deepgram Aura)

Design Pattern:
    Each service defines a Protocol (interface) and one or more implementations.
    Orchestrators are handed concrete implementations built at startup,
    enabling dependency injection and easy testing/swapping of components.
"""

from .transcription import (
    SpeechRecognizer,
    RecognitionStream,
    DeepgramSpeechRecognizer,
)
from .agent import (
    ConversationalAgent,
    SalesforceAgentClient,
    SalesforceTokenProvider,
)
from .synthesis import (
    SpeechSynthesizer,
    DummySpeechSynthesizer,
    DeepgramSpeechSynthesizer,
)

__all__ = [
    # Transcription
    "SpeechRecognizer",
    "RecognitionStream",
    "DeepgramSpeechRecognizer",
    # Agent
    "ConversationalAgent",
    "SalesforceAgentClient",
    "SalesforceTokenProvider",
    # Synthesis
    "SpeechSynthesizer",
    "DummySpeechSynthesizer",
    "DeepgramSpeechSynthesizer",
]
