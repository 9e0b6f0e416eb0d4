"""
VoiceBridge - Speech Recognition Service

Live speech-to-text for caller audio.

Architecture:
    - SpeechRecognizer opens one RecognitionStream per call
    - RecognitionStream accepts raw audio without blocking the caller and
      exposes recognition results as an async iterator of TranscriptEvents
    - DeepgramSpeechRecognizer: Deepgram live streaming over WebSocket

Integration Notes:
    Twilio delivers 8kHz μ-law frames of 20ms; they are forwarded to
    Deepgram untouched (encoding=mulaw, sample_rate=8000). Audio queued
    before the Deepgram socket opens is sent once it does.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import abstractmethod
from typing import Any, AsyncIterator, Callable, Optional, Protocol, Union, runtime_checkable
from urllib.parse import urlencode

from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed

from voicebridge.core.types import (
    TELEPHONY_AUDIO_FORMAT,
    AudioFormat,
    RecognitionError,
    TranscriptEvent,
    TranscriptFragment,
)

logger = logging.getLogger(__name__)

LogLike = Union[logging.Logger, logging.LoggerAdapter]


# =============================================================================
# Protocols (Interfaces)
# =============================================================================

@runtime_checkable
class RecognitionStream(Protocol):
    """
    One live recognition session.

    `send` must never block on the network; `finish` flushes pending audio
    and ends the session and is safe to call more than once.
    """

    @abstractmethod
    def send(self, audio: bytes) -> None:
        """Queue raw audio for recognition. No-op once finished."""
        ...

    @abstractmethod
    async def finish(self) -> None:
        """Flush and close the stream. Idempotent."""
        ...

    @abstractmethod
    def events(self) -> AsyncIterator[TranscriptEvent]:
        """Transcript fragments and errors, ending when the stream closes."""
        ...

    @property
    @abstractmethod
    def closed(self) -> bool:
        ...


@runtime_checkable
class SpeechRecognizer(Protocol):
    """Factory for per-call recognition streams."""

    @abstractmethod
    def open_stream(
        self,
        audio_format: AudioFormat = TELEPHONY_AUDIO_FORMAT,
        log: Optional[LogLike] = None,
    ) -> RecognitionStream:
        """Start a recognition stream. Must be called from a running event loop."""
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Identifier of the underlying model (for logging)."""
        ...


# =============================================================================
# Deepgram Message Parsing
# =============================================================================

def parse_deepgram_message(message: Union[str, bytes]) -> Optional[TranscriptEvent]:
    """
    Convert one Deepgram live message into a TranscriptEvent.

    Returns None for messages that carry no transcript (Metadata,
    SpeechStarted, UtteranceEnd) and for anything that is not JSON.
    """
    if isinstance(message, bytes):
        return None
    try:
        data = json.loads(message)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None

    msg_type = data.get("type")

    if msg_type == "Results":
        alternatives = (data.get("channel") or {}).get("alternatives") or []
        best = alternatives[0] if alternatives else {}
        return TranscriptFragment(
            text=best.get("transcript") or "",
            is_final=bool(data.get("is_final", False)),
            speech_final=bool(data.get("speech_final", False)),
            confidence=best.get("confidence"),
        )

    if msg_type == "Error" or "err_code" in data:
        description = (
            data.get("description")
            or data.get("message")
            or data.get("err_msg")
            or "unknown recognizer error"
        )
        return RecognitionError(message=str(description))

    return None


# =============================================================================
# Deepgram Implementation
# =============================================================================

class DeepgramRecognitionStream:
    """
    Deepgram live transcription session.

    Runs a background task that opens the socket, drains the outbound audio
    queue into it and pushes parsed results onto the event queue. When
    `finish` is called a CloseStream message is sent so Deepgram flushes
    its final results before closing.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        log: Optional[LogLike] = None,
        connect: Callable[..., Any] = websocket_connect,
        close_timeout: float = 5.0,
    ):
        self._url = url
        self._api_key = api_key
        self._log = log or logger
        self._connect = connect
        self._close_timeout = close_timeout

        self._outbound: asyncio.Queue[Optional[bytes]] = asyncio.Queue()
        self._events: asyncio.Queue[Optional[TranscriptEvent]] = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._finished = False
        self._closed = False

        # Stats
        self._bytes_sent = 0
        self._results_received = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def stats(self) -> dict:
        return {
            "bytes_sent": self._bytes_sent,
            "results_received": self._results_received,
        }

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    def send(self, audio: bytes) -> None:
        if self._finished or self._closed or not audio:
            return
        self._outbound.put_nowait(audio)

    async def finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        self._outbound.put_nowait(None)
        if self._task is None:
            self._closed = True
            self._events.put_nowait(None)

    async def events(self) -> AsyncIterator[TranscriptEvent]:
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def _run(self) -> None:
        try:
            async with self._connect(
                self._url,
                additional_headers={"Authorization": f"Token {self._api_key}"},
                max_size=16 * 1024 * 1024,
                ping_interval=20,
                ping_timeout=10,
            ) as ws:
                self._log.info("🟢 Deepgram STT connection opened")
                await self._pump(ws)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.error("🔴 Deepgram error: %s", e)
            self._events.put_nowait(RecognitionError(message=str(e), fatal=True))
        finally:
            self._closed = True
            self._events.put_nowait(None)
            self._log.info("Deepgram STT stream closed: %s", self.stats)

    async def _pump(self, ws) -> None:
        sender = asyncio.create_task(self._send_loop(ws))
        receiver = asyncio.create_task(self._receive_loop(ws))

        done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)

        if receiver in done:
            # Server closed first; nothing left to send to
            sender.cancel()
        else:
            try:
                await asyncio.wait_for(asyncio.shield(receiver), timeout=self._close_timeout)
            except asyncio.TimeoutError:
                self._log.warning("Deepgram did not close within %.1fs of CloseStream", self._close_timeout)
                receiver.cancel()

        for task in (sender, receiver):
            try:
                await task
            except asyncio.CancelledError:
                pass
            except ConnectionClosed as e:
                self._log.debug("Deepgram socket closed: %s", e)

    async def _send_loop(self, ws) -> None:
        while True:
            chunk = await self._outbound.get()
            if chunk is None:
                await ws.send(json.dumps({"type": "CloseStream"}))
                return
            await ws.send(chunk)
            self._bytes_sent += len(chunk)

    async def _receive_loop(self, ws) -> None:
        try:
            async for message in ws:
                event = parse_deepgram_message(message)
                if event is None:
                    continue
                if isinstance(event, TranscriptFragment):
                    self._results_received += 1
                self._events.put_nowait(event)
        except ConnectionClosed as e:
            if not self._finished:
                self._events.put_nowait(RecognitionError(message=f"connection lost: {e}"))


class DeepgramSpeechRecognizer:
    """
    Deepgram live streaming recognizer.

    Usage:
        recognizer = DeepgramSpeechRecognizer(api_key="...")
        stream = recognizer.open_stream(TELEPHONY_AUDIO_FORMAT)
        stream.send(mulaw_bytes)
        async for event in stream.events():
            ...
    """

    def __init__(
        self,
        api_key: str,
        listen_url: str = "wss://api.deepgram.com/v1/listen",
        model: str = "nova-2",
        language: str = "en-US",
        smart_format: bool = True,
        interim_results: bool = False,
        no_delay: bool = True,
        connect: Callable[..., Any] = websocket_connect,
    ):
        if not api_key:
            raise ValueError("Deepgram recognizer requires an API key")
        self._api_key = api_key
        self._listen_url = listen_url
        self._model = model
        self._language = language
        self._smart_format = smart_format
        self._interim_results = interim_results
        self._no_delay = no_delay
        self._connect = connect

    @property
    def model_id(self) -> str:
        return f"deepgram-{self._model}"

    def build_url(self, audio_format: AudioFormat = TELEPHONY_AUDIO_FORMAT) -> str:
        params = {
            "model": self._model,
            "language": self._language,
            "smart_format": str(self._smart_format).lower(),
            "encoding": audio_format.encoding,
            "sample_rate": str(audio_format.sample_rate),
            "channels": "1",
            "interim_results": str(self._interim_results).lower(),
            "no_delay": str(self._no_delay).lower(),
        }
        return f"{self._listen_url}?{urlencode(params)}"

    def open_stream(
        self,
        audio_format: AudioFormat = TELEPHONY_AUDIO_FORMAT,
        log: Optional[LogLike] = None,
    ) -> DeepgramRecognitionStream:
        stream = DeepgramRecognitionStream(
            url=self.build_url(audio_format),
            api_key=self._api_key,
            log=log,
            connect=self._connect,
        )
        stream.start()
        return stream
