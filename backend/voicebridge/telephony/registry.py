"""
VoiceBridge - Session Registry

In-memory map from live telephony connection to the orchestrator that owns
it. Bounded to prevent memory exhaustion; nothing is persisted.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from voicebridge.core.exceptions import CallLimitError, DuplicateSessionError
from voicebridge.core.logging import mask_connection_id

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Registry of active call orchestrators.

    All access happens on the event loop thread, so plain dict operations
    are enough.

    Usage:
        registry = SessionRegistry(max_sessions=100)
        registry.register(connection_id, orchestrator)
        ...
        registry.remove(connection_id)
    """

    def __init__(self, max_sessions: int = 100):
        if max_sessions <= 0:
            raise ValueError("max_sessions must be positive")
        self._sessions: Dict[str, object] = {}
        self._max_sessions = max_sessions
        self._total_registered = 0

    @property
    def max_sessions(self) -> int:
        return self._max_sessions

    @property
    def total_registered(self) -> int:
        return self._total_registered

    def register(self, connection_id: str, orchestrator) -> None:
        """
        Add the orchestrator for a newly accepted connection.

        Raises:
            DuplicateSessionError: If the connection is already registered
            CallLimitError: If at capacity
        """
        if connection_id in self._sessions:
            raise DuplicateSessionError(
                f"Connection already registered: {mask_connection_id(connection_id)}"
            )
        if len(self._sessions) >= self._max_sessions:
            raise CallLimitError(
                f"Maximum concurrent calls ({self._max_sessions}) reached"
            )

        self._sessions[connection_id] = orchestrator
        self._total_registered += 1
        logger.info(
            "Call session registered: conn=%s, active=%d",
            mask_connection_id(connection_id),
            len(self._sessions),
        )

    def get(self, connection_id: str) -> Optional[object]:
        return self._sessions.get(connection_id)

    def remove(self, connection_id: str) -> bool:
        """Drop a connection's entry. Returns False if it was not present."""
        if self._sessions.pop(connection_id, None) is None:
            return False
        logger.info(
            "Call session removed: conn=%s, active=%d",
            mask_connection_id(connection_id),
            len(self._sessions),
        )
        return True

    def active_sessions(self) -> List[object]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._sessions
