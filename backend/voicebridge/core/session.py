"""
VoiceBridge - Call Session State

CallSession holds everything one phone call owns: stream identifier,
lifecycle state, the transcript buffer, the message sequence counter and the
slot for the asynchronously created agent session.

Agent session creation is started when the connection is accepted and may
finish after caller audio has started flowing. AgentSessionSlot wraps that
creation task so readers can either peek at the handle or wait for it with
a bounded number of polls.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Optional, Union

from voicebridge.core.transcript import TranscriptAggregator
from voicebridge.core.types import AgentSessionHandle, CallState, StreamSid

logger = logging.getLogger(__name__)


class AgentSessionSlot:
    """
    Future-backed holder for one call's agent session handle.

    States:
        unconfigured  no creation was ever started
        pending       creation task still running
        ready         handle available
        failed        creation raised or was cancelled
    """

    def __init__(self) -> None:
        self._task: Optional[asyncio.Task] = None
        self._ended = False

    @property
    def configured(self) -> bool:
        return self._task is not None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def failed(self) -> bool:
        if self._task is None or not self._task.done():
            return False
        return self._task.cancelled() or self._task.exception() is not None

    @property
    def ended(self) -> bool:
        return self._ended

    def attach(
        self,
        creation: Awaitable[AgentSessionHandle],
        log: Union[logging.Logger, logging.LoggerAdapter, None] = None,
    ) -> asyncio.Task:
        """Start the creation coroutine in the background and remember it."""
        if self._task is not None:
            raise RuntimeError("Agent session creation already started")

        self._task = asyncio.ensure_future(creation)
        self._task.add_done_callback(lambda task: self._on_created(task, log or logger))
        return self._task

    def peek(self) -> Optional[AgentSessionHandle]:
        """The handle if creation already succeeded, else None. Never waits."""
        if self._task is None or not self._task.done() or self.failed:
            return None
        return self._task.result()

    async def wait_ready(
        self,
        attempts: int,
        interval: float,
    ) -> Optional[AgentSessionHandle]:
        """
        Bounded read of the handle.

        Checks the slot, then sleeps `interval` seconds between checks, at
        most `attempts` times. Returns None as soon as creation is known to
        have failed, or when the bound is exhausted.
        """
        for _ in range(max(attempts, 0)):
            if self._task is None or self.failed:
                return None
            handle = self.peek()
            if handle is not None:
                return handle
            await asyncio.sleep(interval)
        return self.peek()

    def cancel(self) -> bool:
        """Cancel a still-pending creation. Returns True if one was cancelled."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            return True
        return False

    def mark_ended(self) -> bool:
        """Flag the session as ended. Returns False if it already was."""
        if self._ended:
            return False
        self._ended = True
        return True

    @staticmethod
    def _on_created(task: asyncio.Task, log) -> None:
        if task.cancelled():
            log.info("Agent session creation cancelled")
            return
        exc = task.exception()
        if exc is not None:
            log.error("Could not create agent session: %s", exc)
        else:
            log.info("Agent session ready: %s", task.result().session_id)


@dataclass
class CallSession:
    """
    Live state of one phone call's audio connection.

    Owned by exactly one CallSessionOrchestrator.
    """

    connection_id: str
    transcript: TranscriptAggregator = field(default_factory=TranscriptAggregator)
    stream_sid: Optional[StreamSid] = None
    call_sid: Optional[str] = None
    state: CallState = CallState.CONNECTING
    agent_session: AgentSessionSlot = field(default_factory=AgentSessionSlot)

    # Timestamps
    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    # Metrics
    audio_bytes_received: int = 0
    turns_completed: int = 0

    _sequence: int = field(default=0, repr=False)

    @property
    def last_sequence(self) -> int:
        """Most recently issued sequence number (0 before the first send)."""
        return self._sequence

    def next_sequence(self) -> int:
        """Issue the next message sequence number. Never reuses a value."""
        self._sequence += 1
        return self._sequence

    @property
    def is_closing(self) -> bool:
        return self.state.rank >= CallState.CLOSING.rank

    def advance(self, state: CallState) -> bool:
        """
        Move the lifecycle forward.

        Returns False (and leaves the state alone) for backwards or repeated
        transitions.
        """
        if state.rank <= self.state.rank:
            return False
        self.state = state
        if state is CallState.STREAMING:
            self.started_at = datetime.utcnow()
        elif state is CallState.TERMINATED:
            self.ended_at = datetime.utcnow()
        return True

    def to_dict(self) -> dict:
        """Summary for logs and the health endpoint."""
        return {
            "connection_id": self.connection_id[:8],
            "state": self.state.value,
            "streaming": self.stream_sid is not None,
            "agent_session": (
                "ready" if self.agent_session.peek() is not None
                else "pending" if self.agent_session.pending
                else "failed" if self.agent_session.failed
                else "none"
            ),
            "created_at": self.created_at.isoformat() + "Z",
            "audio_bytes_received": self.audio_bytes_received,
            "turns_completed": self.turns_completed,
            "last_sequence": self._sequence,
        }
