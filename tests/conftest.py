"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from turnkit.ai.orchestration.types import Session
from turnkit.services.settings import Settings

from tests.helpers import RecordingSink


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def session() -> Session:
    return Session(id="s-1", cwd="/work", allowed_tools=("read_file", "write_file", "execute_command"))


@pytest.fixture
def settings() -> Settings:
    """Buffered, delay-free settings so turns finish instantly."""
    return Settings(api_key="sk-test", stream=False, typing_delay=0.0)
