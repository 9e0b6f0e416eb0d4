"""
VoiceBridge - Telephony HTTP Endpoints

Outbound reminder calls and the TwiML that connects them to the media
stream WebSocket.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response
from starlette.concurrency import run_in_threadpool
from twilio.base.exceptions import TwilioException
from twilio.rest import Client
from twilio.twiml.voice_response import Connect, VoiceResponse

from voicebridge.config import Settings, get_settings
from voicebridge.core.exceptions import ConfigurationError, InvalidPhoneNumberError, TelephonyError
from .models import InitiateCallRequest, InitiateCallResponse
from .privacy import mask_phone_number, validate_phone_number

logger = logging.getLogger(__name__)

router = APIRouter(tags=["telephony"])

DEFAULT_ORDER_LABEL = "your order"


# =============================================================================
# Dependencies
# =============================================================================

def get_twilio_client(settings: Settings = Depends(get_settings)) -> Client:
    """Twilio REST client; fails with 503 when credentials are missing."""
    if not settings.twilio_enabled:
        raise ConfigurationError(
            "Twilio is not configured. "
            "Set TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_PHONE_NUMBER."
        )
    return Client(settings.twilio_account_sid, settings.twilio_auth_token)


def resolve_public_host(request: Request, settings: Settings) -> str:
    """Host name Twilio should call back on."""
    if settings.public_host:
        return settings.public_host
    return request.headers.get("host", f"localhost:{settings.backend_port}")


def build_stream_twiml(order: str, host: str, settings: Settings) -> str:
    """Greeting followed by a bidirectional media stream to our WebSocket."""
    response = VoiceResponse()
    response.say(settings.greeting_template.format(order=order), voice=settings.twiml_voice)
    connect = Connect()
    connect.stream(url=f"wss://{host}{settings.stream_path}")
    response.append(connect)
    return str(response)


# =============================================================================
# Endpoints
# =============================================================================

@router.post(
    "/api/initiate-call",
    response_model=InitiateCallResponse,
    response_model_by_alias=True,
    summary="Place an outbound reminder call",
)
async def initiate_call(
    body: InitiateCallRequest,
    request: Request,
    settings: Settings = Depends(get_settings),
    client: Client = Depends(get_twilio_client),
) -> InitiateCallResponse:
    """
    Call the customer about their order.

    Twilio fetches /twiml-stream once the call is answered, which greets
    the customer and attaches the call audio to the /stream WebSocket.
    """
    if not validate_phone_number(body.phone):
        raise InvalidPhoneNumberError(
            "Invalid phone number",
            details={"phone": mask_phone_number(body.phone)},
        )

    host = resolve_public_host(request, settings)
    twiml_url = f"https://{host}/twiml-stream?{urlencode({'order': body.order_number})}"

    logger.info(
        "📞 Initiating call to %s for order %s",
        mask_phone_number(body.phone),
        body.order_number,
    )

    try:
        call = await run_in_threadpool(
            client.calls.create,
            to=body.phone,
            from_=settings.twilio_phone_number,
            url=twiml_url,
        )
    except TwilioException as e:
        logger.error("❌ Error initiating call: %s", e)
        raise TelephonyError(f"Could not place call: {e}") from e

    logger.info("✅ Call initiated: sid=***%s", call.sid[-4:])
    return InitiateCallResponse(call_sid=call.sid)


@router.api_route(
    "/twiml-stream",
    methods=["GET", "POST"],
    summary="TwiML for the reminder call",
)
async def twiml_stream(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> Response:
    """
    Return TwiML that speaks the greeting and connects the media stream.

    The order number comes from the form body (POST) or the query string.
    """
    order: Optional[str] = None
    if request.method == "POST":
        form = await request.form()
        order = form.get("order")
    order = order or request.query_params.get("order") or DEFAULT_ORDER_LABEL

    host = resolve_public_host(request, settings)
    logger.info("📨 TwiML requested (%s): order=%s", request.method, order)

    return Response(content=build_stream_twiml(order, host, settings), media_type="text/xml")
