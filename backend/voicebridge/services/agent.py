"""
VoiceBridge - Conversational Agent Service

Client for the conversational backend that answers caller utterances.

Architecture:
    - ConversationalAgent: create / message / end for one backend session
    - SalesforceAgentClient: Einstein AI Agent API v1
    - SalesforceTokenProvider: OAuth 2.0 client-credentials token with
      in-memory caching

The client raises typed AgentError subclasses; deciding what the caller
hears on failure is the turn manager's job.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from abc import abstractmethod
from typing import Any, Callable, List, Optional, Protocol, runtime_checkable

import aiohttp

from voicebridge.core.exceptions import (
    AgentAuthError,
    AgentBackendError,
    AgentSessionError,
)
from voicebridge.core.types import AgentReply, AgentSessionHandle

logger = logging.getLogger(__name__)

NO_UNDERSTANDING_REPLY = "I didn't understand that."

# Salesforce tokens last an hour by default; refresh 5 minutes early
DEFAULT_TOKEN_TTL_SECONDS = 60 * 60
TOKEN_REFRESH_MARGIN_SECONDS = 5 * 60


# =============================================================================
# Protocol (Interface)
# =============================================================================

@runtime_checkable
class ConversationalAgent(Protocol):
    """Protocol for conversational agent backends."""

    @abstractmethod
    async def create_session(self) -> AgentSessionHandle:
        """
        Open a backend conversation.

        Raises:
            AgentError: If the session cannot be created
        """
        ...

    @abstractmethod
    async def send_message(
        self,
        session: AgentSessionHandle,
        sequence_id: int,
        text: str,
    ) -> AgentReply:
        """
        Send one utterance tagged with its sequence number.

        Raises:
            AgentError: On transport or backend failure
        """
        ...

    @abstractmethod
    async def end_session(self, session: AgentSessionHandle) -> None:
        """Close a backend conversation."""
        ...


# =============================================================================
# OAuth
# =============================================================================

class SalesforceTokenProvider:
    """
    Client-credentials access token with caching.

    Concurrent callers share one in-flight token request.
    """

    def __init__(
        self,
        instance_url: str,
        client_id: str,
        client_secret: str,
        session_getter: Callable[[], Any],
        clock: Callable[[], float] = time.monotonic,
    ):
        self._instance_url = instance_url.strip().rstrip("/")
        self._client_id = client_id.strip()
        self._client_secret = client_secret.strip()
        self._session_getter = session_getter
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at: float = 0.0
        self._lock = asyncio.Lock()

    @property
    def token_url(self) -> str:
        return f"{self._instance_url}/services/oauth2/token"

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0

    async def get_token(self) -> str:
        if self._token and self._clock() < self._expires_at:
            return self._token

        async with self._lock:
            if self._token and self._clock() < self._expires_at:
                return self._token

            if not self._instance_url:
                raise AgentAuthError("Missing SALESFORCE_INSTANCE_URL")
            if not self._client_id or not self._client_secret:
                raise AgentAuthError("Missing Salesforce client id or secret")

            session = await self._session_getter()
            try:
                async with session.post(
                    self.token_url,
                    data={
                        "grant_type": "client_credentials",
                        "client_id": self._client_id,
                        "client_secret": self._client_secret,
                    },
                ) as response:
                    if response.status >= 400:
                        body = await response.text()
                        raise AgentAuthError(
                            f"Token request failed with status {response.status}",
                            details={"body": body[:200]},
                        )
                    payload = await response.json()
            except aiohttp.ClientError as e:
                raise AgentAuthError(f"Token request failed: {e}") from e

            token = payload.get("access_token")
            if not token:
                raise AgentAuthError("Token response did not include access_token")

            ttl = float(payload.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS)
            self._token = token
            self._expires_at = self._clock() + max(ttl - TOKEN_REFRESH_MARGIN_SECONDS, 0.0)
            logger.info("✅ Salesforce OAuth token obtained")
            return token


# =============================================================================
# Reply Parsing
# =============================================================================

def parse_agent_messages(payload: Any) -> AgentReply:
    """
    Turn a messages response into an AgentReply.

    The API returns `{"messages": [{"type": "Inform", "message": "..."}]}`;
    every message with text is a reply part, in order.
    """
    messages = payload.get("messages") if isinstance(payload, dict) else None
    parts: List[str] = []
    for message in messages or []:
        if not isinstance(message, dict):
            continue
        text = message.get("message") or message.get("text")
        if isinstance(text, str) and text.strip():
            parts.append(text.strip())

    if not parts:
        return AgentReply.single(NO_UNDERSTANDING_REPLY)
    if len(parts) == 1:
        return AgentReply.single(parts[0])
    return AgentReply.multi(parts)


# =============================================================================
# Salesforce Implementation
# =============================================================================

class SalesforceAgentClient:
    """
    Einstein AI Agent API client.

    Usage:
        client = SalesforceAgentClient(instance_url=..., client_id=...,
                                       client_secret=..., agent_id=...)
        handle = await client.create_session()
        reply = await client.send_message(handle, 1, "where is my order")
        await client.end_session(handle)
    """

    def __init__(
        self,
        instance_url: str,
        client_id: str,
        client_secret: str,
        agent_id: str,
        api_base_url: str = "https://api.salesforce.com/einstein/ai-agent/v1",
        timeout_seconds: float = 30.0,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        self._instance_url = instance_url.strip().rstrip("/")
        self._agent_id = agent_id.strip()
        self._api_base_url = api_base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None
        self._tokens = SalesforceTokenProvider(
            instance_url=instance_url,
            client_id=client_id,
            client_secret=client_secret,
            session_getter=self._ensure_session,
        )

    async def create_session(self) -> AgentSessionHandle:
        session_key = str(uuid.uuid4())
        url = f"{self._api_base_url}/agents/{self._agent_id}/sessions"
        body = {
            "externalSessionKey": session_key,
            "instanceConfig": {"endpoint": self._instance_url},
            "streamingCapabilities": {"chunkTypes": ["Text"]},
            "bypassUser": True,
        }

        logger.debug("Creating agent session: agent=%s", self._agent_id)

        try:
            payload = await self._request("POST", url, json=body)
        except AgentBackendError as e:
            raise AgentSessionError(str(e), details={"status": e.status}) from e

        session_id = (payload or {}).get("sessionId") or (payload or {}).get("id")
        if not session_id:
            raise AgentSessionError(
                "Session response did not include a session id",
                details={"keys": sorted((payload or {}).keys())},
            )
        return AgentSessionHandle(session_id=session_id, session_key=session_key)

    async def send_message(
        self,
        session: AgentSessionHandle,
        sequence_id: int,
        text: str,
    ) -> AgentReply:
        url = f"{self._api_base_url}/sessions/{session.session_id}/messages"
        body = {
            "message": {
                "sequenceId": sequence_id,
                "type": "Text",
                "text": text,
            }
        }
        payload = await self._request("POST", url, json=body)
        return parse_agent_messages(payload)

    async def end_session(self, session: AgentSessionHandle) -> None:
        url = f"{self._api_base_url}/sessions/{session.session_id}"
        try:
            await self._request(
                "DELETE",
                url,
                extra_headers={"x-session-end-reason": "UserRequest"},
            )
        except AgentBackendError as e:
            # Already ended or expired on the server side
            if e.status == 404:
                logger.debug("Agent session already gone: %s", session.session_id)
                return
            raise AgentSessionError(str(e), details={"status": e.status}) from e
        logger.info("✅ Agent session ended: %s", session.session_id)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(
        self,
        method: str,
        url: str,
        json: Optional[dict] = None,
        extra_headers: Optional[dict] = None,
    ) -> Optional[dict]:
        token = await self._tokens.get_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "x-client-feature-id": "ai-agent-api",
        }
        if extra_headers:
            headers.update(extra_headers)

        session = await self._ensure_session()
        try:
            async with session.request(
                method, url, json=json, headers=headers, timeout=self._timeout
            ) as response:
                if response.status == 401:
                    self._tokens.invalidate()
                if response.status >= 400:
                    body = await response.text()
                    raise AgentBackendError(
                        f"{method} {url} failed with status {response.status}",
                        status=response.status,
                        details={"body": body[:200]},
                    )
                if response.status == 204 or response.content_length == 0:
                    return None
                return await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise AgentBackendError(f"{method} {url} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise AgentBackendError(f"{method} {url} timed out") from e

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            factory = self._session_factory or aiohttp.ClientSession
            self._session = factory()
        return self._session
