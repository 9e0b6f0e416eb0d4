"""
VoiceBridge - Call Session Orchestrator

Owns one phone call from the moment its media stream attaches until it
terminates. Inbound Media Streams messages drive the lifecycle; recognized
utterances become agent turns; replies are spoken back on the same stream.

Architecture:
    ┌───────────────┐ media ┌──────────────────┐ finals ┌───────────────┐
    │ telephony WS  │──────▶│ RecognitionStream│───────▶│ Transcript    │
    └───────────────┘       └──────────────────┘        │ Aggregator    │
            ▲                                           └───────┬───────┘
            │ media events                                      │ utterance
    ┌───────┴───────┐ reply ┌──────────────────┐  FIFO  ┌───────▼───────┐
    │ AudioRelay    │◀──────│ AgentTurnManager │◀───────│ turn queue    │
    └───────────────┘       └──────────────────┘        └───────────────┘

Concurrency:
    Per call there is one transcript consumer task, one turn worker task and
    one agent-session creation task. Turns run strictly one at a time in
    arrival order. Forwarding caller audio never waits on a turn.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol

from pydantic import ValidationError

from voicebridge.config import Settings
from voicebridge.core.logging import CallLogAdapter, get_call_logger
from voicebridge.core.relay import AudioRelay
from voicebridge.core.session import CallSession
from voicebridge.core.transcript import TranscriptAggregator
from voicebridge.core.turns import AgentTurnManager
from voicebridge.core.types import (
    TELEPHONY_AUDIO_FORMAT,
    CallState,
    CommitPolicy,
    RecognitionError,
    StreamSid,
)
from voicebridge.telephony.models import TelephonyEvent

logger = logging.getLogger(__name__)


class MessageSink(Protocol):
    """Where outbound telephony frames are written (a WebSocket)."""

    @abstractmethod
    async def send_text(self, data: str) -> None:
        ...


class _OutboundChannel:
    """MediaDestination view of the call's WebSocket."""

    def __init__(self, session: CallSession, sink: MessageSink):
        self._session = session
        self._sink = sink

    @property
    def stream_sid(self) -> Optional[str]:
        return self._session.stream_sid

    @property
    def is_open(self) -> bool:
        return not self._session.is_closing

    async def send(self, event: Dict[str, Any]) -> None:
        await self._sink.send_text(json.dumps(event))


class CallSessionOrchestrator:
    """
    Per-call coordinator.

    Usage:
        orchestrator = CallSessionOrchestrator(connection_id, websocket,
                                               recognizer, agent, synthesizer,
                                               settings)
        await orchestrator.run(websocket.iter_text())

    `run` returns once the call has terminated, whether the caller hung up
    (stop event) or the connection dropped.
    """

    def __init__(
        self,
        connection_id: str,
        sink: MessageSink,
        recognizer,
        agent,
        synthesizer,
        settings: Settings,
        log: Optional[CallLogAdapter] = None,
    ):
        self._log = log or get_call_logger(__name__, connection_id=connection_id)
        self._recognizer = recognizer
        self._agent = agent
        self._settings = settings

        self._session = CallSession(
            connection_id=connection_id,
            transcript=TranscriptAggregator(CommitPolicy(settings.transcript_commit_policy)),
        )
        self._channel = _OutboundChannel(self._session, sink)
        self._turn_manager = AgentTurnManager(
            agent,
            ready_attempts=settings.agent_ready_attempts,
            ready_interval=settings.agent_ready_interval_seconds,
            log=self._log.child("voicebridge.core.turns"),
        )
        self._relay = AudioRelay(
            synthesizer,
            chunk_bytes=settings.tts_chunk_bytes,
            realtime_pacing=settings.tts_realtime_pacing,
            log=self._log.child("voicebridge.core.relay"),
        )

        self._recognition = None
        self._turns: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._transcript_task: Optional[asyncio.Task] = None
        self._turn_worker: Optional[asyncio.Task] = None
        self._started = False
        self._terminated = asyncio.Event()

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def session(self) -> CallSession:
        return self._session

    @property
    def state(self) -> CallState:
        return self._session.state

    @property
    def connection_id(self) -> str:
        return self._session.connection_id

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Open the recognition stream, begin agent session creation, start the turn worker."""
        if self._started:
            return
        self._started = True

        if self._recognizer is not None:
            try:
                self._recognition = self._recognizer.open_stream(
                    TELEPHONY_AUDIO_FORMAT,
                    log=self._log.child("voicebridge.services.transcription"),
                )
            except Exception as e:
                self._log.error("Could not open recognition stream: %s", e)
            else:
                self._transcript_task = asyncio.create_task(self._consume_transcripts())
        else:
            self._log.warning("No speech recognizer configured; caller audio will not be transcribed")

        if self._agent is not None:
            self._log.info("🤖 Creating agent session...")
            self._session.agent_session.attach(self._agent.create_session(), self._log)

        self._turn_worker = asyncio.create_task(self._turn_loop())
        self._log.info("📞 Call session started")

    async def run(self, messages: AsyncIterator[str]) -> None:
        """Drive the session from inbound text frames until it terminates."""
        self.start()
        try:
            async for raw in messages:
                await self.handle_message(raw)
                if self._session.is_closing:
                    break
        finally:
            await self.close("connection closed")

    async def handle_message(self, raw: str) -> None:
        """Dispatch one inbound Media Streams message. Malformed input is logged and ignored."""
        try:
            event = TelephonyEvent.model_validate_json(raw)
        except ValidationError as e:
            preview = raw[:50] if isinstance(raw, str) else repr(raw)[:50]
            self._log.warning("Invalid telephony message (%d errors): %s", e.error_count(), preview)
            return

        name = event.event
        if name == "media":
            self._on_media(event)
        elif name == "start":
            self._on_start(event)
        elif name == "stop":
            self._log.info("Telephony stream stop received")
            await self.close("stop received")
        elif name == "connected":
            self._log.info("Telephony stream connected")
        elif name == "mark":
            self._log.debug("Mark event ignored")
        else:
            self._log.debug("Unknown telephony event: %s", name)

    async def close(self, reason: str = "connection closed") -> None:
        """
        Tear the call down. Idempotent; concurrent callers wait for the
        first teardown to finish.
        """
        if self._session.is_closing:
            await self._terminated.wait()
            return

        self._session.advance(CallState.CLOSING)
        self._log.info("🛑 Closing call session (%s)", reason)

        try:
            self._discard_pending_turns()

            if self._session.agent_session.cancel():
                self._log.info("Cancelled pending agent session creation")

            await asyncio.gather(
                self._finish_recognition(),
                self._end_agent_session(),
            )
            await self._stop_transcript_consumer()
        finally:
            self._session.advance(CallState.TERMINATED)
            self._terminated.set()
            self._log.info("Call session terminated: %s", self._session.to_dict())

    async def drain_turns(self) -> None:
        """Wait until every queued turn has been processed."""
        await self._turns.join()

    # =========================================================================
    # Inbound Events
    # =========================================================================

    def _on_start(self, event: TelephonyEvent) -> None:
        if self._session.stream_sid is not None:
            self._log.warning("Repeated start event ignored")
            return

        stream_sid = event.resolved_stream_sid
        if not stream_sid:
            self._log.warning("Start event without streamSid ignored")
            return

        self._session.stream_sid = StreamSid(stream_sid)
        if event.start is not None:
            self._session.call_sid = event.start.call_sid
        self._session.advance(CallState.STREAMING)
        self._log.bind(stream_sid=stream_sid)
        self._log.info("▶️ Media stream started")

    def _on_media(self, event: TelephonyEvent) -> None:
        if self._session.is_closing:
            return

        payload = event.media.payload if event.media is not None else ""
        if not payload:
            return

        try:
            audio = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError):
            self._log.warning("Media event with invalid base64 payload ignored")
            return

        self._session.audio_bytes_received += len(audio)
        if self._recognition is not None:
            self._recognition.send(audio)

    # =========================================================================
    # Transcripts and Turns
    # =========================================================================

    async def _consume_transcripts(self) -> None:
        async for event in self._recognition.events():
            if isinstance(event, RecognitionError):
                if event.fatal:
                    self._log.error("Speech recognition failed: %s", event.message)
                else:
                    self._log.warning("Speech recognition error: %s", event.message)
                continue

            if not event.is_final:
                self._log.debug("Interim transcript: %s", event.text)

            utterance = self._session.transcript.add(event)
            if utterance:
                self._log.info("📝 Transcript: %s", utterance)
                self._enqueue_turn(utterance)

    def _enqueue_turn(self, utterance: str) -> None:
        if self._session.is_closing:
            self._log.warning("Call is closing; discarding utterance: %s", utterance)
            return
        self._turns.put_nowait(utterance)

    async def _turn_loop(self) -> None:
        while True:
            utterance = await self._turns.get()
            try:
                if utterance is None:
                    return
                if self._session.is_closing:
                    self._log.warning("Call is closing; discarding utterance: %s", utterance)
                    continue
                await self._run_turn(utterance)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._log.exception("Turn failed: %s", e)
            finally:
                self._turns.task_done()

    async def _run_turn(self, utterance: str) -> None:
        reply = await self._turn_manager.process_utterance(utterance, self._session)
        self._session.turns_completed += 1

        if self._session.is_closing:
            self._log.info("Call closed during turn; reply not spoken")
            return

        await self._relay.speak(reply, self._channel)

    # =========================================================================
    # Teardown
    # =========================================================================

    def _discard_pending_turns(self) -> None:
        discarded = 0
        while True:
            try:
                utterance = self._turns.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._turns.task_done()
            if utterance is not None:
                discarded += 1

        if discarded:
            self._log.warning("Discarded %d queued utterance(s) at close", discarded)

        if self._turn_worker is not None:
            # Let the worker exit once any in-flight turn returns
            self._turns.put_nowait(None)

    async def _finish_recognition(self) -> None:
        if self._recognition is None:
            return
        try:
            await self._recognition.finish()
            self._log.info("Recognition stream finished")
        except Exception as e:
            self._log.warning("Error finishing recognition stream: %s", e)

    async def _end_agent_session(self) -> None:
        slot = self._session.agent_session
        handle = slot.peek()
        if handle is None or self._agent is None or not slot.mark_ended():
            return
        try:
            await self._agent.end_session(handle)
        except Exception as e:
            self._log.warning("Error ending agent session: %s", e)

    async def _stop_transcript_consumer(self) -> None:
        task = self._transcript_task
        if task is None:
            return
        if not task.done():
            done, _ = await asyncio.wait({task}, timeout=self._settings.teardown_grace_seconds)
            if not done:
                self._log.warning(
                    "Transcript consumer still running after %.1fs; cancelling",
                    self._settings.teardown_grace_seconds,
                )
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                return

        if not task.cancelled() and task.exception() is not None:
            self._log.error("Transcript consumer failed: %s", task.exception())


# =============================================================================
# Collaborator Wiring
# =============================================================================

@dataclass
class BridgeServices:
    """
    Process-wide collaborator instances shared by all calls.

    Any of them may be None, in which case calls run degraded: no
    transcription, fallback replies, or silent turns respectively.
    """

    recognizer: Any = None
    agent: Any = None
    synthesizer: Any = None
    _closers: List[Callable[[], Awaitable[None]]] = field(default_factory=list, repr=False)

    def status(self) -> Dict[str, Optional[str]]:
        return {
            "transcription": getattr(self.recognizer, "model_id", None),
            "agent": type(self.agent).__name__ if self.agent is not None else None,
            "synthesis": getattr(self.synthesizer, "model_id", None),
        }

    async def aclose(self) -> None:
        """Release HTTP sessions held by the adapters."""
        for closer in self._closers:
            try:
                await closer()
            except Exception as e:
                logger.warning("Error closing service: %s", e)
        self._closers.clear()


def create_services(settings: Settings) -> BridgeServices:
    """
    Factory function to build the collaborators from settings.

    Selects implementations based on:
    - transcription_backend: "deepgram" | "disabled"
    - agent_backend: "salesforce" | "disabled"
    - synthesis_backend: "deepgram" | "dummy" | "disabled"

    A backend whose credentials are missing is left out with a warning
    instead of failing startup.
    """
    from voicebridge.services.agent import SalesforceAgentClient
    from voicebridge.services.synthesis import DeepgramSpeechSynthesizer, DummySpeechSynthesizer
    from voicebridge.services.transcription import DeepgramSpeechRecognizer

    services = BridgeServices()

    # --- Speech Recognition ---
    transcription_backend = settings.transcription_backend.lower()
    if transcription_backend == "deepgram":
        if settings.transcription_enabled:
            logger.info(
                "Initializing DeepgramSpeechRecognizer (model=%s, lang=%s)",
                settings.stt_model,
                settings.stt_language,
            )
            services.recognizer = DeepgramSpeechRecognizer(
                api_key=settings.deepgram_api_key,
                listen_url=settings.deepgram_listen_url,
                model=settings.stt_model,
                language=settings.stt_language,
                smart_format=settings.stt_smart_format,
                interim_results=settings.stt_interim_results,
                no_delay=settings.stt_no_delay,
            )
        else:
            logger.warning("DEEPGRAM_API_KEY not set; speech recognition disabled")
    else:
        logger.info("Speech recognition disabled (backend=%s)", transcription_backend)

    # --- Conversational Agent ---
    agent_backend = settings.agent_backend.lower()
    if agent_backend == "salesforce":
        if settings.agent_enabled:
            logger.info("Initializing SalesforceAgentClient (agent=%s)", settings.salesforce_agent_id)
            agent = SalesforceAgentClient(
                instance_url=settings.salesforce_instance_url,
                client_id=settings.salesforce_client_id,
                client_secret=settings.salesforce_client_secret,
                agent_id=settings.salesforce_agent_id,
                api_base_url=settings.salesforce_api_base_url,
                timeout_seconds=settings.agent_request_timeout_seconds,
            )
            services.agent = agent
            services._closers.append(agent.close)
        else:
            logger.warning("SALESFORCE_AGENT_ID not set; callers will get fallback replies")
    else:
        logger.info("Conversational agent disabled (backend=%s)", agent_backend)

    # --- Speech Synthesis ---
    synthesis_backend = settings.synthesis_backend.lower()
    if synthesis_backend == "deepgram":
        if settings.deepgram_api_key.strip():
            logger.info("Initializing DeepgramSpeechSynthesizer (model=%s)", settings.tts_model)
            synthesizer = DeepgramSpeechSynthesizer(
                api_key=settings.deepgram_api_key,
                speak_url=settings.deepgram_speak_url,
                model=settings.tts_model,
                timeout_seconds=settings.agent_request_timeout_seconds,
            )
            services.synthesizer = synthesizer
            services._closers.append(synthesizer.close)
        else:
            logger.warning("DEEPGRAM_API_KEY not set; replies will not be spoken")
    elif synthesis_backend == "dummy":
        logger.info("Using DummySpeechSynthesizer (silence)")
        services.synthesizer = DummySpeechSynthesizer()
    else:
        logger.info("Speech synthesis disabled (backend=%s)", synthesis_backend)

    return services
