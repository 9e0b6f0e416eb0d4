"""
VoiceBridge - Salesforce Agent Client Tests

Tests for OAuth token caching, session lifecycle requests, reply parsing
and error mapping, against an in-memory HTTP session.

Run with: pytest tests/test_salesforce_agent.py -v
"""

import aiohttp
import pytest

from voicebridge.core.exceptions import AgentAuthError, AgentBackendError, AgentSessionError
from voicebridge.core.types import AgentSessionHandle, ReplyKind
from voicebridge.services.agent import (
    NO_UNDERSTANDING_REPLY,
    SalesforceAgentClient,
    SalesforceTokenProvider,
    parse_agent_messages,
)

API = "https://api.salesforce.com/einstein/ai-agent/v1"
INSTANCE = "https://example.my.salesforce.com"


# =============================================================================
# HTTP doubles
# =============================================================================

class FakeResponse:
    def __init__(self, status: int = 200, payload=None, content_length=None):
        self.status = status
        self._payload = payload
        self.content_length = content_length

    async def json(self, **kwargs):
        return self._payload

    async def text(self):
        return str(self._payload)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeSession:
    """Records requests; responses are queued per (method, url)."""

    def __init__(self):
        self.calls = []
        self.routes = {}
        self.closed = False
        self.token_responses = []
        self.raise_on_request = None

    def on(self, method, url, *responses):
        self.routes.setdefault((method, url), []).extend(responses)

    def post(self, url, **kwargs):
        self.calls.append(("TOKEN", url, kwargs))
        if self.token_responses:
            return self.token_responses.pop(0)
        return FakeResponse(payload={"access_token": "tok-1", "expires_in": 3600})

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.raise_on_request:
            raise self.raise_on_request
        queue = self.routes.get((method, url)) or [FakeResponse(payload={})]
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def close(self):
        self.closed = True

    def calls_for(self, method):
        return [call for call in self.calls if call[0] == method]


@pytest.fixture
def http():
    return FakeSession()


@pytest.fixture
def client(http):
    return SalesforceAgentClient(
        instance_url=INSTANCE + "/",
        client_id="cid",
        client_secret="secret",
        agent_id="0Xx000000000001",
        api_base_url=API,
        session_factory=lambda: http,
    )


HANDLE = AgentSessionHandle(session_id="sess-1", session_key="key-1")


# =============================================================================
# Tests
# =============================================================================

class TestParseAgentMessages:

    def test_single_message(self):
        reply = parse_agent_messages({"messages": [{"type": "Inform", "message": "Your order shipped."}]})
        assert reply.kind is ReplyKind.SINGLE
        assert reply.text == "Your order shipped."

    def test_multiple_messages_joined(self):
        reply = parse_agent_messages({"messages": [
            {"type": "Inform", "message": "Your order shipped."},
            {"type": "Inform", "text": "It arrives Friday."},
        ]})
        assert reply.kind is ReplyKind.MULTI
        assert reply.text == "Your order shipped. It arrives Friday."

    @pytest.mark.parametrize("payload", [
        None,
        {},
        {"messages": []},
        {"messages": [{"type": "Inform", "message": "   "}]},
        {"messages": ["not a dict"]},
    ])
    def test_no_text_means_no_understanding(self, payload):
        assert parse_agent_messages(payload).text == NO_UNDERSTANDING_REPLY


class TestTokenProvider:

    @pytest.mark.asyncio
    async def test_token_cached_until_refresh_margin(self, http):
        now = [0.0]

        async def getter():
            return http

        tokens = SalesforceTokenProvider(INSTANCE, "cid", "secret", getter, clock=lambda: now[0])

        assert await tokens.get_token() == "tok-1"
        now[0] = 3000.0
        assert await tokens.get_token() == "tok-1"
        assert len(http.calls_for("TOKEN")) == 1

        # 3600s lifetime minus the 300s margin
        now[0] = 3301.0
        await tokens.get_token()
        assert len(http.calls_for("TOKEN")) == 2

    @pytest.mark.asyncio
    async def test_token_request_form(self, http):
        async def getter():
            return http

        tokens = SalesforceTokenProvider(INSTANCE + "/", " cid ", "secret", getter)
        await tokens.get_token()

        _, url, kwargs = http.calls[0]
        assert url == INSTANCE + "/services/oauth2/token"
        assert kwargs["data"] == {
            "grant_type": "client_credentials",
            "client_id": "cid",
            "client_secret": "secret",
        }

    @pytest.mark.asyncio
    async def test_missing_configuration(self, http):
        async def getter():
            return http

        with pytest.raises(AgentAuthError):
            await SalesforceTokenProvider("", "cid", "secret", getter).get_token()
        with pytest.raises(AgentAuthError):
            await SalesforceTokenProvider(INSTANCE, "cid", "", getter).get_token()
        assert http.calls == []

    @pytest.mark.asyncio
    async def test_rejected_or_malformed_token_response(self, http):
        async def getter():
            return http

        http.token_responses = [
            FakeResponse(status=400, payload={"error": "invalid_client"}),
            FakeResponse(payload={"token_type": "Bearer"}),
        ]
        tokens = SalesforceTokenProvider(INSTANCE, "cid", "secret", getter)

        with pytest.raises(AgentAuthError):
            await tokens.get_token()
        with pytest.raises(AgentAuthError):
            await tokens.get_token()


class TestSalesforceAgentClient:

    @pytest.mark.asyncio
    async def test_create_session(self, client, http):
        http.on("POST", f"{API}/agents/0Xx000000000001/sessions", FakeResponse(payload={"sessionId": "sess-9"}))

        handle = await client.create_session()

        assert handle.session_id == "sess-9"
        _, _, kwargs = http.calls_for("POST")[0]
        body = kwargs["json"]
        assert body["externalSessionKey"] == handle.session_key
        assert body["instanceConfig"] == {"endpoint": INSTANCE}
        assert body["streamingCapabilities"] == {"chunkTypes": ["Text"]}
        assert body["bypassUser"] is True
        assert kwargs["headers"]["Authorization"] == "Bearer tok-1"
        assert kwargs["headers"]["x-client-feature-id"] == "ai-agent-api"

    @pytest.mark.asyncio
    async def test_create_session_accepts_id_field(self, client, http):
        http.on("POST", f"{API}/agents/0Xx000000000001/sessions", FakeResponse(payload={"id": "sess-7"}))
        assert (await client.create_session()).session_id == "sess-7"

    @pytest.mark.asyncio
    async def test_create_session_failures(self, client, http):
        url = f"{API}/agents/0Xx000000000001/sessions"
        http.on("POST", url, FakeResponse(status=500, payload="boom"), FakeResponse(payload={}))

        with pytest.raises(AgentSessionError) as exc_info:
            await client.create_session()
        assert exc_info.value.details["status"] == 500

        with pytest.raises(AgentSessionError):
            await client.create_session()

    @pytest.mark.asyncio
    async def test_send_message(self, client, http):
        http.on("POST", f"{API}/sessions/sess-1/messages", FakeResponse(payload={
            "messages": [{"type": "Inform", "message": "It ships tomorrow."}],
        }))

        reply = await client.send_message(HANDLE, 3, "where is my order")

        assert reply.text == "It ships tomorrow."
        _, _, kwargs = http.calls_for("POST")[0]
        assert kwargs["json"] == {"message": {"sequenceId": 3, "type": "Text", "text": "where is my order"}}

    @pytest.mark.asyncio
    async def test_send_message_backend_error(self, client, http):
        http.on("POST", f"{API}/sessions/sess-1/messages", FakeResponse(status=503, payload="down"))
        with pytest.raises(AgentBackendError) as exc_info:
            await client.send_message(HANDLE, 1, "hello")
        assert exc_info.value.status == 503

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self, client, http):
        http.raise_on_request = aiohttp.ClientConnectionError("reset")
        with pytest.raises(AgentBackendError):
            await client.send_message(HANDLE, 1, "hello")

    @pytest.mark.asyncio
    async def test_unauthorized_invalidates_token(self, client, http):
        url = f"{API}/sessions/sess-1/messages"
        http.on("POST", url, FakeResponse(status=401, payload="expired"), FakeResponse(payload={
            "messages": [{"message": "ok"}],
        }))

        with pytest.raises(AgentBackendError):
            await client.send_message(HANDLE, 1, "hello")
        await client.send_message(HANDLE, 2, "hello again")

        assert len(http.calls_for("TOKEN")) == 2

    @pytest.mark.asyncio
    async def test_end_session(self, client, http):
        http.on("DELETE", f"{API}/sessions/sess-1", FakeResponse(status=204))

        await client.end_session(HANDLE)

        _, _, kwargs = http.calls_for("DELETE")[0]
        assert kwargs["headers"]["x-session-end-reason"] == "UserRequest"

    @pytest.mark.asyncio
    async def test_end_session_already_gone(self, client, http):
        http.on("DELETE", f"{API}/sessions/sess-1", FakeResponse(status=404, payload="not found"))
        await client.end_session(HANDLE)

    @pytest.mark.asyncio
    async def test_end_session_failure(self, client, http):
        http.on("DELETE", f"{API}/sessions/sess-1", FakeResponse(status=500, payload="boom"))
        with pytest.raises(AgentSessionError):
            await client.end_session(HANDLE)

    @pytest.mark.asyncio
    async def test_close_releases_session(self, client, http):
        await client.send_message(HANDLE, 1, "hello")
        await client.close()
        assert http.closed
