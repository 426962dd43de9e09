"""Shared test fixtures for the dental voice test suite."""

from __future__ import annotations

import os
from unittest.mock import MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("PRACTICE_API_KEY", "test-practice-key-456")
    os.environ.setdefault("INTENT_ROUTING_ENABLED", "false")


@pytest.fixture
def mock_practice_response():
    """Factory fixture for creating mock practice API responses."""

    def _make(data, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        return mock

    return _make


@pytest.fixture
def store():
    from dental_voice.services.conversation_store import ConversationStore

    return ConversationStore(ttl_seconds=1800)


@pytest.fixture
def incident_log():
    from dental_voice.services.incident_log import IncidentLog

    return IncidentLog(path=None)
