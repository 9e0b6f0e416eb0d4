"""
VoiceBridge - Deepgram Adapter Tests

Tests for live recognition message parsing, the recognition stream
lifecycle (with an in-memory socket) and Aura synthesis (with an in-memory
HTTP session).

Run with: pytest tests/test_deepgram.py -v
"""

import asyncio
import json
from urllib.parse import parse_qs, urlparse

import pytest

from voicebridge.core.exceptions import SynthesisError
from voicebridge.core.types import RecognitionError, TranscriptFragment
from voicebridge.services.synthesis import DeepgramSpeechSynthesizer, DummySpeechSynthesizer
from voicebridge.services.transcription import (
    DeepgramRecognitionStream,
    DeepgramSpeechRecognizer,
    parse_deepgram_message,
)


def results_message(text: str, is_final: bool = True, speech_final: bool = False) -> str:
    return json.dumps({
        "type": "Results",
        "is_final": is_final,
        "speech_final": speech_final,
        "channel": {"alternatives": [{"transcript": text, "confidence": 0.98}]},
    })


# =============================================================================
# Socket / HTTP doubles
# =============================================================================

class FakeSocket:
    """Deepgram live socket: closes after CloseStream, like the real service."""

    def __init__(self):
        self.sent = []
        self.incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, message):
        self.sent.append(message)
        if isinstance(message, str) and json.loads(message).get("type") == "CloseStream":
            self.incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self.incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message


class FakeConnect:
    """Stands in for websockets' connect(); records the handshake arguments."""

    def __init__(self, fail: bool = False):
        self.socket = FakeSocket()
        self.fail = fail
        self.url = None
        self.kwargs = None

    def __call__(self, url, **kwargs):
        self.url = url
        self.kwargs = kwargs
        return self

    async def __aenter__(self):
        if self.fail:
            raise OSError("connection refused")
        return self.socket

    async def __aexit__(self, *exc_info):
        return False


class FakeContent:
    def __init__(self, body: bytes):
        self._body = body

    async def iter_chunked(self, size: int):
        for offset in range(0, len(self._body), size):
            yield self._body[offset:offset + size]


class FakeResponse:
    def __init__(self, status: int = 200, body: bytes = b""):
        self.status = status
        self.content = FakeContent(body)
        self._body = body

    async def text(self):
        return self._body.decode("utf-8", errors="replace")

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeHTTPSession:
    def __init__(self, response: FakeResponse):
        self.response = response
        self.requests = []
        self.closed = False

    def post(self, url, **kwargs):
        self.requests.append((url, kwargs))
        return self.response

    async def close(self):
        self.closed = True


# =============================================================================
# Tests
# =============================================================================

class TestParseMessage:

    def test_final_result(self):
        event = parse_deepgram_message(results_message("where is my order", speech_final=True))
        assert event == TranscriptFragment(
            text="where is my order", is_final=True, speech_final=True, confidence=0.98
        )

    def test_interim_result(self):
        event = parse_deepgram_message(results_message("where", is_final=False))
        assert isinstance(event, TranscriptFragment)
        assert not event.is_final

    def test_empty_alternatives(self):
        event = parse_deepgram_message(json.dumps({"type": "Results", "is_final": True, "channel": {"alternatives": []}}))
        assert event.text == ""
        assert event.is_blank

    def test_error_message(self):
        event = parse_deepgram_message(json.dumps({"type": "Error", "description": "bad audio"}))
        assert event == RecognitionError(message="bad audio")

    @pytest.mark.parametrize("message", [
        json.dumps({"type": "Metadata", "request_id": "r1"}),
        json.dumps({"type": "UtteranceEnd"}),
        "not json",
        b"\x00\x01",
        json.dumps([1, 2]),
    ])
    def test_ignored_messages(self, message):
        assert parse_deepgram_message(message) is None


class TestRecognizer:

    def test_listen_url_parameters(self):
        recognizer = DeepgramSpeechRecognizer(api_key="dg-key")
        query = parse_qs(urlparse(recognizer.build_url()).query)
        assert query == {
            "model": ["nova-2"],
            "language": ["en-US"],
            "smart_format": ["true"],
            "encoding": ["mulaw"],
            "sample_rate": ["8000"],
            "channels": ["1"],
            "interim_results": ["false"],
            "no_delay": ["true"],
        }

    def test_requires_api_key(self):
        with pytest.raises(ValueError):
            DeepgramSpeechRecognizer(api_key="")


class TestRecognitionStream:

    @pytest.mark.asyncio
    async def test_audio_sent_and_results_delivered(self):
        connect = FakeConnect()
        recognizer = DeepgramSpeechRecognizer(api_key="dg-key", connect=connect)
        stream = recognizer.open_stream()

        stream.send(b"\xff" * 160)
        connect.socket.incoming.put_nowait(results_message("hello"))
        await asyncio.sleep(0.01)
        await stream.finish()

        events = [event async for event in stream.events()]

        assert events == [TranscriptFragment(text="hello", is_final=True, confidence=0.98)]
        assert connect.socket.sent[0] == b"\xff" * 160
        assert json.loads(connect.socket.sent[-1]) == {"type": "CloseStream"}
        assert connect.kwargs["additional_headers"] == {"Authorization": "Token dg-key"}
        assert stream.closed
        assert stream.stats["bytes_sent"] == 160

    @pytest.mark.asyncio
    async def test_audio_after_finish_is_dropped(self):
        connect = FakeConnect()
        stream = DeepgramRecognitionStream("wss://example/listen", "dg-key", connect=connect)
        stream.start()

        await stream.finish()
        stream.send(b"late")
        await stream.finish()
        _ = [event async for event in stream.events()]

        assert b"late" not in connect.socket.sent
        assert sum(1 for m in connect.socket.sent if isinstance(m, str)) == 1

    @pytest.mark.asyncio
    async def test_connection_failure_reported_as_fatal(self):
        stream = DeepgramRecognitionStream("wss://example/listen", "dg-key", connect=FakeConnect(fail=True))
        stream.start()

        events = [event async for event in stream.events()]

        assert len(events) == 1
        assert isinstance(events[0], RecognitionError)
        assert events[0].fatal
        assert stream.closed

    @pytest.mark.asyncio
    async def test_finish_before_start_ends_events(self):
        stream = DeepgramRecognitionStream("wss://example/listen", "dg-key", connect=FakeConnect())
        await stream.finish()
        assert [event async for event in stream.events()] == []


class TestSynthesis:

    @pytest.mark.asyncio
    async def test_streams_response_body(self):
        session = FakeHTTPSession(FakeResponse(body=b"\x01" * 10000))
        synthesizer = DeepgramSpeechSynthesizer(
            api_key="dg-key", read_chunk_bytes=4096, session_factory=lambda: session
        )

        chunks = [chunk async for chunk in synthesizer.synthesize("Your order ships tomorrow.")]

        assert [len(c) for c in chunks] == [4096, 4096, 1808]
        url, kwargs = session.requests[0]
        assert url == "https://api.deepgram.com/v1/speak"
        assert kwargs["params"] == {
            "model": "aura-asteria-en",
            "encoding": "mulaw",
            "sample_rate": "8000",
            "container": "none",
        }
        assert kwargs["json"] == {"text": "Your order ships tomorrow."}
        assert kwargs["headers"]["Authorization"] == "Token dg-key"

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        session = FakeHTTPSession(FakeResponse(status=401, body=b"unauthorized"))
        synthesizer = DeepgramSpeechSynthesizer(api_key="dg-key", session_factory=lambda: session)

        with pytest.raises(SynthesisError) as exc_info:
            async for _ in synthesizer.synthesize("hello"):
                pass
        assert exc_info.value.details["status"] == 401

    @pytest.mark.asyncio
    async def test_empty_text_makes_no_request(self):
        session = FakeHTTPSession(FakeResponse())
        synthesizer = DeepgramSpeechSynthesizer(api_key="dg-key", session_factory=lambda: session)
        assert [chunk async for chunk in synthesizer.synthesize("")] == []
        assert session.requests == []

    @pytest.mark.asyncio
    async def test_close_releases_session(self):
        session = FakeHTTPSession(FakeResponse(body=b"\x01"))
        synthesizer = DeepgramSpeechSynthesizer(api_key="dg-key", session_factory=lambda: session)
        _ = [chunk async for chunk in synthesizer.synthesize("hi")]
        await synthesizer.close()
        assert session.closed

    @pytest.mark.asyncio
    async def test_dummy_synthesizer_length(self):
        synthesizer = DummySpeechSynthesizer(ms_per_char=100)
        audio = b"".join([chunk async for chunk in synthesizer.synthesize("hello")])
        # 5 chars * 100ms at 8000 bytes/s
        assert audio == b"\xff" * 4000
