"""
VoiceBridge - Backend Application Package

This package contains the backend for the phone-to-agent voice bridge:
- API routes and the telephony WebSocket handler
- Per-call session orchestration
- Adapters for speech recognition, the conversational agent and speech synthesis
"""

__version__ = "0.1.0"
