"""
VoiceBridge - Agent Turn Manager

Sends one finalized utterance to the conversational agent and returns the
text the caller should hear. Never raises for backend trouble: a missing
or failed agent session produces the fallback reply and a failed send
produces the apology.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Union

from voicebridge.core.exceptions import AgentError
from voicebridge.core.session import CallSession

logger = logging.getLogger(__name__)

FALLBACK_TEMPLATE = "I'm still connecting to the assistant, but I heard: {text}"
APOLOGY_REPLY = "I'm sorry, I'm having trouble connecting right now."
EMPTY_REPLY = "I didn't understand that."


def fallback_reply(text: str) -> str:
    return FALLBACK_TEMPLATE.format(text=text)


class AgentTurnManager:
    """
    Per-call conversational turn logic.

    Args:
        agent: ConversationalAgent, or None when no backend is configured
        ready_attempts: How many times to check for the agent session
        ready_interval: Seconds between those checks
        log: Call-scoped logger
    """

    def __init__(
        self,
        agent,
        ready_attempts: int = 5,
        ready_interval: float = 1.0,
        log: Union[logging.Logger, logging.LoggerAdapter, None] = None,
    ):
        self._agent = agent
        self._ready_attempts = ready_attempts
        self._ready_interval = ready_interval
        self._log = log or logger

    @property
    def configured(self) -> bool:
        return self._agent is not None

    async def process_utterance(self, text: str, session: CallSession) -> str:
        """
        Get the reply for one caller utterance.

        Raises:
            ValueError: If `text` is blank
        """
        utterance = (text or "").strip()
        if not utterance:
            raise ValueError("process_utterance requires non-empty text")

        if self._agent is None or not session.agent_session.configured:
            self._log.info("No agent backend configured; using fallback reply")
            return fallback_reply(utterance)

        handle = session.agent_session.peek()
        if handle is None:
            self._log.info("⏳ Waiting for agent session...")
            handle = await session.agent_session.wait_ready(
                self._ready_attempts, self._ready_interval
            )
        if handle is None:
            self._log.warning("Agent session not ready; using fallback reply")
            return fallback_reply(utterance)

        sequence_id = session.next_sequence()
        self._log.info("💬 Sending to agent (seq=%d): %s", sequence_id, utterance)

        try:
            reply = await self._agent.send_message(handle, sequence_id, utterance)
        except asyncio.CancelledError:
            raise
        except AgentError as e:
            self._log.error("Agent message failed (seq=%d): %s", sequence_id, e.message)
            return APOLOGY_REPLY
        except Exception as e:
            self._log.exception("Unexpected agent failure (seq=%d): %s", sequence_id, e)
            return APOLOGY_REPLY

        reply_text = reply.text if reply is not None else ""
        if not reply_text:
            return EMPTY_REPLY

        self._log.info("🤖 Agent reply (seq=%d, %s): %s", sequence_id, reply.kind.value, reply_text)
        return reply_text
