"""
VoiceBridge - Telephony Data Models

Pydantic models for the Twilio Media Streams wire format and the outbound
call request.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class StartPayload(BaseModel):
    """`start` block of a Media Streams start event."""

    stream_sid: Optional[str] = Field(None, alias="streamSid")
    call_sid: Optional[str] = Field(None, alias="callSid")
    account_sid: Optional[str] = Field(None, alias="accountSid")
    custom_parameters: Dict[str, Any] = Field(default_factory=dict, alias="customParameters")
    media_format: Dict[str, Any] = Field(default_factory=dict, alias="mediaFormat")

    class Config:
        populate_by_name = True
        extra = "ignore"


class MediaPayload(BaseModel):
    """`media` block of a Media Streams media event. Payload is base64 μ-law."""

    payload: str = ""
    track: Optional[str] = None
    chunk: Optional[str] = None
    timestamp: Optional[str] = None

    class Config:
        extra = "ignore"


class TelephonyEvent(BaseModel):
    """
    One inbound Media Streams message.

    Twilio puts streamSid both at the top level and inside `start`; either
    is accepted.
    """

    event: str
    stream_sid: Optional[str] = Field(None, alias="streamSid")
    sequence_number: Optional[str] = Field(None, alias="sequenceNumber")
    start: Optional[StartPayload] = None
    media: Optional[MediaPayload] = None

    class Config:
        populate_by_name = True
        extra = "ignore"

    @property
    def resolved_stream_sid(self) -> Optional[str]:
        if self.start is not None and self.start.stream_sid:
            return self.start.stream_sid
        return self.stream_sid


class InitiateCallRequest(BaseModel):
    """
    Request body for POST /api/initiate-call

    Field names follow the CRM record that triggers the reminder call.
    """

    phone: str = Field(..., alias="Phone", min_length=1, description="Number to call")
    order_number: str = Field(..., alias="OrderNumber", min_length=1)
    delivery_date: Optional[str] = Field(None, alias="DeliveryDate")
    order_id: Optional[str] = Field(None, alias="OrderId")
    address: Optional[str] = Field(None, alias="Address")

    class Config:
        populate_by_name = True  # Allow both alias and field name


class InitiateCallResponse(BaseModel):
    """Response for POST /api/initiate-call"""

    success: bool = True
    call_sid: str = Field(..., alias="callSid")

    class Config:
        populate_by_name = True
