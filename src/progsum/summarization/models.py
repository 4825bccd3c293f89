"""Data types shared by the summarization controller, store and projection."""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass, field
from typing import Literal, Union

Identifier = Union[int, str]

MIN_TOKEN_THRESHOLD = 100
DEFAULT_TOKEN_THRESHOLD = 1000


@dataclass(frozen=True)
class Message:
    """A message from the host's live list. Read-only to this package."""

    id: Identifier | None
    is_user: bool
    speaker_name: str
    text: str
    sent_at: float
    is_system: bool = False


def message_key(message: Message) -> Identifier:
    """Return the identity used to track *message* as summarized.

    Hosts should always supply ``id``. When it is missing, a digest of
    speaker, timestamp and text stands in for it; editing such a message
    upstream changes its key.
    """
    if message.id is not None:
        return message.id
    digest = hashlib.sha1(
        f"{message.speaker_name}\x1f{message.sent_at!r}\x1f{message.text}".encode("utf-8")
    ).hexdigest()
    return f"h:{digest}"


@dataclass(frozen=True)
class SummaryRecord:
    """One generated summary. Never mutated after creation."""

    text: str
    created_at: float
    source_message_count: int
    source_token_count: int


@dataclass
class SummarizationState:
    """Per-conversation summarization state, persisted as one unit."""

    summaries: list[SummaryRecord] = field(default_factory=list)
    summarized_ids: set[Identifier] = field(default_factory=set)
    pending_token_count: int = 0

    def copy(self) -> SummarizationState:
        return SummarizationState(
            summaries=list(self.summaries),
            summarized_ids=set(self.summarized_ids),
            pending_token_count=self.pending_token_count,
        )


@dataclass
class Configuration:
    """Installation-wide settings."""

    token_threshold: int = DEFAULT_TOKEN_THRESHOLD
    enabled: bool = False

    def __post_init__(self):
        if self.token_threshold < MIN_TOKEN_THRESHOLD:
            raise ValueError(
                f"token_threshold must be at least {MIN_TOKEN_THRESHOLD}, got {self.token_threshold}"
            )


@dataclass(frozen=True)
class Decision:
    """Outcome of evaluating the live list against the threshold."""

    action: Literal["summarize", "wait"]
    batch: tuple[Message, ...] = ()
    batch_tokens: int = 0
    unsummarized_count: int = 0

    @property
    def should_summarize(self) -> bool:
        return self.action == "summarize"


def new_summary_record(text: str, message_count: int, token_count: int) -> SummaryRecord:
    """Build a SummaryRecord stamped with the current time."""
    return SummaryRecord(
        text=text,
        created_at=time.time(),
        source_message_count=message_count,
        source_token_count=token_count,
    )
