"""
VoiceBridge - Telephony Privacy Utilities

Phone number masking for anything that reaches the logs.

IMPORTANT:
    Raw phone numbers must NEVER be logged in cleartext. The outbound call
    endpoint receives them from the CRM and only hands them to Twilio.
"""

import re
from typing import Optional


def mask_phone_number(number: Optional[str], show_last_digits: int = 2) -> str:
    """
    Mask a phone number for privacy.

    Examples:
        +14155551234 → ***34
        5551234      → ***34
        None         → unknown
    """
    if not number:
        return "unknown"

    digits = re.sub(r'\D', '', str(number))

    if len(digits) < show_last_digits:
        return "***"

    return f"***{digits[-show_last_digits:]}"


def validate_phone_number(number: Optional[str]) -> bool:
    """True if the string has 7-15 digits. Does NOT store or log the number."""
    if not number:
        return False
    digits = re.sub(r'\D', '', str(number))
    return 7 <= len(digits) <= 15
