"""
VoiceBridge - Test Configuration and Fixtures

Shared fixtures for all test modules. Collaborator fakes live in fakes.py.
"""

import base64
import json
import os
import sys
from typing import Generator

import pytest
from fastapi.testclient import TestClient

# Ensure backend package is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from voicebridge.config import Settings
from fakes import (
    FakeAgent,
    FakeRecognizer,
    FakeSynthesizer,
    RecordingDestination,
    RecordingSink,
)


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests requiring external dependencies")


# =============================================================================
# Settings Fixtures
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """
    Create test settings with safe defaults.

    Readiness polling is shortened so the bounded wait finishes quickly.
    """
    return Settings(
        app_env="testing",
        app_debug=True,
        app_log_level="WARNING",  # Reduce noise in tests
        deepgram_api_key="",
        salesforce_agent_id="",
        twilio_account_sid="",
        twilio_auth_token="",
        twilio_phone_number="",
        agent_ready_attempts=3,
        agent_ready_interval_seconds=0.01,
        teardown_grace_seconds=0.5,
        tts_chunk_bytes=160,
        tts_realtime_pacing=False,
        transcript_commit_policy="final",
    )


# =============================================================================
# Collaborator Fixtures
# =============================================================================

@pytest.fixture
def fake_recognizer() -> FakeRecognizer:
    return FakeRecognizer()


@pytest.fixture
def fake_agent() -> FakeAgent:
    return FakeAgent()


@pytest.fixture
def fake_synthesizer() -> FakeSynthesizer:
    return FakeSynthesizer()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def destination() -> RecordingDestination:
    return RecordingDestination()


# =============================================================================
# Sample Data Fixtures
# =============================================================================

@pytest.fixture
def start_message() -> str:
    """Twilio Media Streams start event."""
    return json.dumps({
        "event": "start",
        "sequenceNumber": "1",
        "start": {
            "streamSid": "MZ0001",
            "callSid": "CA0001",
            "accountSid": "AC0001",
            "customParameters": {},
            "mediaFormat": {"encoding": "audio/x-mulaw", "sampleRate": 8000, "channels": 1},
        },
        "streamSid": "MZ0001",
    })


@pytest.fixture
def media_message() -> str:
    """Media event carrying 160 bytes (20ms) of μ-law silence."""
    payload = base64.b64encode(b"\xff" * 160).decode("ascii")
    return json.dumps({
        "event": "media",
        "streamSid": "MZ0001",
        "media": {"track": "inbound", "chunk": "1", "timestamp": "5", "payload": payload},
    })


@pytest.fixture
def stop_message() -> str:
    return json.dumps({"event": "stop", "streamSid": "MZ0001", "stop": {"callSid": "CA0001"}})


# =============================================================================
# FastAPI App Fixture
# =============================================================================

@pytest.fixture
def app_recognizer() -> FakeRecognizer:
    """Recognizer for the app: the first audio frame produces one utterance."""
    return FakeRecognizer(auto_transcripts=["where is my order"])


@pytest.fixture
def app(app_recognizer: FakeRecognizer, fake_synthesizer: FakeSynthesizer):
    """Create a FastAPI app instance wired to fakes (no agent backend)."""
    # Import here to avoid circular imports
    from main import create_app
    from voicebridge.core.orchestrator import BridgeServices

    services = BridgeServices(
        recognizer=app_recognizer,
        agent=None,
        synthesizer=fake_synthesizer,
    )
    return create_app(services=services)


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Create a test client for the FastAPI app."""
    with TestClient(app) as c:
        yield c
