"""
VoiceBridge - Exception Hierarchy

Structured exceptions for consistent error handling across the system.
All exceptions include error codes for API responses.
"""

from typing import Optional


class VoiceBridgeError(Exception):
    """Base exception for all VoiceBridge errors."""

    code: str = "UNKNOWN_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# =============================================================================
# Collaborator Errors
# =============================================================================

class SynthesisError(VoiceBridgeError):
    """Speech synthesis request failed."""
    code = "SYNTHESIS_ERROR"
    status_code = 502


class AgentError(VoiceBridgeError):
    """Error talking to the conversational agent backend."""
    code = "AGENT_ERROR"
    status_code = 502


class AgentAuthError(AgentError):
    """OAuth token could not be obtained."""
    code = "AGENT_AUTH_ERROR"


class AgentSessionError(AgentError):
    """Agent session could not be created or ended."""
    code = "AGENT_SESSION_ERROR"


class AgentBackendError(AgentError):
    """Agent backend rejected or failed a message."""
    code = "AGENT_BACKEND_ERROR"

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.status = status


# =============================================================================
# Session Errors
# =============================================================================

class SessionError(VoiceBridgeError):
    """Error related to call session management."""
    code = "SESSION_ERROR"
    status_code = 400


class DuplicateSessionError(SessionError):
    """A session is already registered for this connection."""
    code = "DUPLICATE_SESSION"
    status_code = 409


class CallLimitError(SessionError):
    """Maximum concurrent calls exceeded."""
    code = "CALL_LIMIT_EXCEEDED"
    status_code = 429


# =============================================================================
# Telephony Errors
# =============================================================================

class TelephonyError(VoiceBridgeError):
    """Error in telephony subsystem."""
    code = "TELEPHONY_ERROR"
    status_code = 502


class InvalidPhoneNumberError(TelephonyError):
    """Outbound call target is not a dialable number."""
    code = "INVALID_PHONE_NUMBER"
    status_code = 400


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(VoiceBridgeError):
    """Configuration error."""
    code = "CONFIGURATION_ERROR"
    status_code = 503
