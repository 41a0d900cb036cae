"""Shared fixtures for context engine tests."""

import pytest

from src.domain.model.context.message import ContextMessage, MessageRole
from src.tests.unit.agent.context.test_helper import (
    FakeClock,
    InMemoryStorage,
    text_message,
    tool_result_message,
    tool_use_message,
)


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def conversation() -> list[ContextMessage]:
    """System prompt, a tool round trip and a few plain turns, 100 tokens each."""
    return [
        text_message("sys", "You are helpful.", role=MessageRole.SYSTEM, tokens=100),
        text_message("u1", "Find the bug", tokens=100),
        tool_use_message("a1", "call_1", tokens=100),
        tool_result_message("r1", "call_1", tokens=100),
        text_message("a2", "Found it", role=MessageRole.ASSISTANT, tokens=100),
        text_message("u2", "Fix it", tokens=100),
        text_message("a3", "Done", role=MessageRole.ASSISTANT, tokens=100),
    ]
