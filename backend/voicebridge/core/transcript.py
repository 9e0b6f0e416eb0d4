"""
VoiceBridge - Transcript Aggregator

Turns the recognizer's fragment stream into finalized utterances.

Commit policies:
    FINAL     every final fragment with non-blank text is one utterance
              (Deepgram with interim_results disabled already emits one
              final per spoken phrase)
    ENDPOINT  finals are buffered and committed together when a fragment
              carries the recognizer's end-of-speech flag

Interim fragments never produce an utterance; the latest one is kept for
incremental display.
"""

from __future__ import annotations

from typing import List, Optional

from voicebridge.core.types import CommitPolicy, TranscriptFragment


class TranscriptAggregator:
    """Per-session transcript buffer."""

    def __init__(self, policy: CommitPolicy = CommitPolicy.FINAL):
        self._policy = CommitPolicy(policy)
        self._buffer: List[str] = []
        self._interim: str = ""

    @property
    def policy(self) -> CommitPolicy:
        return self._policy

    @property
    def interim_text(self) -> str:
        """Latest interim hypothesis (empty once a final arrives)."""
        return self._interim

    @property
    def pending_text(self) -> str:
        """Buffered final text not yet committed."""
        return " ".join(self._buffer)

    def add(self, fragment: TranscriptFragment) -> Optional[str]:
        """
        Consume one fragment.

        Returns:
            The finalized utterance when this fragment completes one,
            otherwise None. Blank finals never produce an utterance.
        """
        if not fragment.is_final:
            self._interim = fragment.text.strip()
            return None

        self._interim = ""
        text = fragment.text.strip()
        if text:
            self._buffer.append(text)

        if self._policy is CommitPolicy.FINAL or fragment.speech_final:
            return self.flush()
        return None

    def flush(self) -> Optional[str]:
        """Return and clear any buffered text; None when nothing is pending."""
        utterance = " ".join(self._buffer).strip()
        self._buffer.clear()
        return utterance or None
