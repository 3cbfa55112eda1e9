"""Shared fixtures for the nudged test suite.

All tests use in-memory databases, temporary directories and mock objects.
Nothing touches ~/.nudged/ or a running daemon.
"""

import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add project root to path so imports work
_root = Path(__file__).parent.parent
sys.path.insert(0, str(_root))


@pytest.fixture
def conn():
    """In-memory database with the full schema applied."""
    from db_schema import open_db

    c = open_db(":memory:")
    yield c
    c.close()


@pytest.fixture
def checkins(conn):
    from checkins import CheckInRepository
    return CheckInRepository(conn)


@pytest.fixture
def goals(conn):
    from goals import GoalRepository
    return GoalRepository(conn)


@pytest.fixture
def message_log(conn):
    from session import MessageLog
    return MessageLog(conn)


@pytest.fixture
def fake_provider():
    """Provider following the format_system/format_messages/complete contract."""
    from providers import LLMResponse, Usage

    provider = MagicMock()
    provider.format_system = MagicMock(side_effect=lambda blocks: blocks)
    provider.format_messages = MagicMock(side_effect=lambda msgs: list(msgs))
    provider.complete = AsyncMock(return_value=LLMResponse(
        text="ok", stop_reason="end_turn", usage=Usage(input_tokens=10, output_tokens=5),
    ))
    return provider


@pytest.fixture
def fake_channel():
    channel = MagicMock()
    channel.send = AsyncMock(return_value=42)
    channel.send_typing = AsyncMock()
    return channel


@pytest.fixture
def minimal_toml_data():
    """Minimal valid config data (as parsed dict, not raw TOML)."""
    return {
        "agent": {
            "name": "TestAgent",
            "language": "en",
            "timezone": "Europe/Vienna",
        },
        "channel": {
            "type": "telegram",
            "telegram": {
                "token_env": "NUDGED_TELEGRAM_TOKEN",
                "allow_from": [123456789],
            },
        },
        "models": {
            "primary": {
                "provider": "anthropic-compat",
                "model": "claude-sonnet-4-5",
                "max_tokens": 1024,
            },
            "gating": {
                "provider": "anthropic-compat",
                "model": "claude-haiku-4-5",
                "max_tokens": 512,
            },
        },
        "routing": {
            "chat": "primary",
            "gating": "gating",
        },
        "proactive": {
            "enabled": True,
            "target_chat_id": 123456789,
        },
        "paths": {
            "state_dir": "/tmp/test-nudged",
            "db": "/tmp/test-nudged/nudged.db",
            "log_file": "/tmp/test-nudged/nudged.log",
        },
    }
