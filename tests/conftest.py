"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, AsyncMock

import pytest

from progsum.summarization import (
    Configuration,
    InMemoryStateStore,
    Message,
    SummarizationController,
    Summarizer,
)


class DummyLLM:
    """Dummy LLM for testing; records every request it receives."""

    def __init__(self, replies=None):
        self.call_count = 0
        self.requests = []
        self.replies = list(replies or [])

    async def generate(self, prompt) -> str:
        self.call_count += 1
        self.requests.append(prompt)
        if self.replies:
            reply = self.replies.pop(0)
            if isinstance(reply, BaseException):
                raise reply
            return reply
        return f"Summary #{self.call_count}"

    @property
    def last_prompt(self) -> str:
        return self.requests[-1][-1]["content"]


class BlockingLLM(DummyLLM):
    """LLM whose replies wait until the test releases them."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()
        self.started = asyncio.Event()

    async def generate(self, prompt) -> str:
        self.started.set()
        await self.release.wait()
        return await super().generate(prompt)


def make_message(msg_id, text="hello", *, is_user=True, speaker="Alice", sent_at=None, is_system=False) -> Message:
    return Message(
        id=msg_id,
        is_user=is_user,
        speaker_name=speaker,
        text=text,
        sent_at=float(sent_at if sent_at is not None else 1_700_000_000 + (msg_id or 0)),
        is_system=is_system,
    )


def sized_message(msg_id, tokens: int, **kwargs) -> Message:
    """Message whose estimate is exactly *tokens* (4 chars per token)."""
    return make_message(msg_id, "x" * (tokens * 4), **kwargs)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_db(temp_dir):
    """Create a temporary database file."""
    db_file = temp_dir / "test.db"
    yield str(db_file)


@pytest.fixture
def dummy_llm():
    return DummyLLM()


@pytest.fixture
def memory_store():
    return InMemoryStateStore()


@pytest.fixture
def summarizer(dummy_llm):
    """Summarizer with fixed wording so prompts don't depend on config files."""
    return Summarizer(dummy_llm, instructions="Summarize.", preview_chars=200, timeout=5)


@pytest.fixture
def controller(memory_store, summarizer):
    """Controller with an active conversation and summarization enabled."""
    ctrl = SummarizationController(memory_store, summarizer, Configuration(token_threshold=1000, enabled=True))
    ctrl.switch_conversation("chat-1")
    return ctrl


@pytest.fixture
def mock_discord_channel():
    """Create a mock Discord channel."""
    channel = MagicMock()
    channel.id = 123456789
    channel.name = "test-channel"
    channel.send = AsyncMock()
    return channel


@pytest.fixture
def mock_discord_ctx(mock_discord_channel):
    """Create a mock Discord command context."""
    ctx = MagicMock()
    ctx.author = MagicMock()
    ctx.author.id = 111222333
    ctx.author.name = "TestUser"
    ctx.channel = mock_discord_channel
    ctx.send = AsyncMock()
    ctx.reply = AsyncMock()
    return ctx


@pytest.fixture
def mock_bot(mock_discord_channel):
    """Create a mock Discord bot."""
    bot = MagicMock()
    bot.user = MagicMock()
    bot.user.id = 999888777
    bot.user.name = "TestBot"
    bot.get_channel = MagicMock(return_value=mock_discord_channel)
    invalid_ctx = MagicMock()
    invalid_ctx.valid = False
    bot.get_context = AsyncMock(return_value=invalid_ctx)
    return bot
