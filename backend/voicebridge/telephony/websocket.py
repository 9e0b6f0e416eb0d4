"""
VoiceBridge - Telephony WebSocket Handler

Accepts Twilio Media Streams connections and hands each one to its own
CallSessionOrchestrator for the lifetime of the call.
"""

from __future__ import annotations

import logging
import uuid

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from voicebridge.config import get_settings
from voicebridge.core.exceptions import CallLimitError, SessionError
from voicebridge.core.logging import get_call_logger
from voicebridge.core.orchestrator import CallSessionOrchestrator

logger = logging.getLogger(__name__)

# "Try again later": server is at its concurrent call limit
WS_CLOSE_TRY_AGAIN_LATER = 1013
WS_CLOSE_INTERNAL_ERROR = 1011


async def _iter_text_frames(websocket: WebSocket):
    """Inbound text frames until the peer disconnects. Binary frames are skipped."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            logger.info("Telephony WebSocket disconnected (code=%s)", message.get("code"))
            return
        text = message.get("text")
        if text is not None:
            yield text
        elif message.get("bytes"):
            logger.debug("Binary telephony frame ignored")


async def telephony_stream_handler(websocket: WebSocket) -> None:
    """
    WebSocket handler for telephony media streams.

    Protocol:
    1. Twilio connects and sends "connected"
    2. "start" carries the streamSid for the call
    3. "media" messages carry base64 μ-law caller audio
    4. Server sends "media" messages with synthesized replies
    5. "stop" (or a dropped connection) ends the call

    Error Handling:
    - Malformed frames are logged and skipped by the orchestrator
    - Over capacity: the socket is closed with 1013
    - Session setup or registration failure: closed with 1011
    - The registry entry is always removed on the way out
    """
    settings = get_settings()
    state = websocket.app.state
    registry = state.registry
    services = state.services

    connection_id = uuid.uuid4().hex
    log = get_call_logger(__name__, connection_id=connection_id)

    await websocket.accept()
    log.info("📞 New telephony WebSocket connection")

    try:
        orchestrator = CallSessionOrchestrator(
            connection_id=connection_id,
            sink=websocket,
            recognizer=services.recognizer,
            agent=services.agent,
            synthesizer=services.synthesizer,
            settings=settings,
            log=log.child("voicebridge.core.orchestrator"),
        )
    except Exception as e:
        log.error("Could not set up call session: %s", e, exc_info=True)
        await websocket.close(code=WS_CLOSE_INTERNAL_ERROR)
        return

    try:
        registry.register(connection_id, orchestrator)
    except CallLimitError as e:
        log.warning("Rejecting call: %s", e.message)
        await websocket.close(code=WS_CLOSE_TRY_AGAIN_LATER, reason="Too many calls")
        return
    except SessionError as e:
        log.error("Could not register call: %s", e.message)
        await websocket.close(code=WS_CLOSE_INTERNAL_ERROR)
        return

    try:
        await orchestrator.run(_iter_text_frames(websocket))
    except Exception as e:
        log.error("Telephony WebSocket error: %s", e, exc_info=True)
    finally:
        registry.remove(connection_id)
        if websocket.client_state == WebSocketState.CONNECTED:
            try:
                await websocket.close()
            except RuntimeError:
                # Close raced with the peer's disconnect
                pass

