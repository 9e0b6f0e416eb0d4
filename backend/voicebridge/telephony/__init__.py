"""
VoiceBridge - Telephony Integration Module

Connects phone calls to the voice bridge.

Components:
- router: Outbound call and TwiML endpoints
- websocket: Media stream handler
- registry: Live connection to orchestrator map
- models: Media Streams wire format
- privacy: Phone number masking

Phone numbers are masked before they reach the logs. Audio is processed in
memory and never persisted.
"""

from .models import TelephonyEvent, InitiateCallRequest
from .privacy import mask_phone_number
from .registry import SessionRegistry

__all__ = [
    "TelephonyEvent",
    "InitiateCallRequest",
    "SessionRegistry",
    "mask_phone_number",
]
