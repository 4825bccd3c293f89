"""Filtered view of the live message list handed to the generation backend."""

from __future__ import annotations

import logging
from typing import Sequence

from .models import Message, SummarizationState, SummaryRecord, message_key

_LOG = logging.getLogger(__name__)

SUMMARY_MESSAGE_ID = "progsum:summary"
SUMMARY_SPEAKER = "Conversation Summary"


def render_summaries(summaries: Sequence[SummaryRecord]) -> str:
    return "\n\n".join(f"Summary {n}: {record.text}" for n, record in enumerate(summaries, start=1))


def summary_message(summaries: Sequence[SummaryRecord]) -> Message:
    """Build the synthetic system message carrying every summary."""
    return Message(
        id=SUMMARY_MESSAGE_ID,
        is_user=False,
        speaker_name=SUMMARY_SPEAKER,
        text=render_summaries(summaries),
        sent_at=summaries[-1].created_at,
        is_system=True,
    )


def project(live_messages: Sequence[Message], state: SummarizationState) -> list[Message]:
    """Drop summarized messages and inject the running summaries.

    The summary message goes after any leading system messages and before
    the first non-system one. *live_messages* is never mutated; the result
    depends only on the arguments.
    """
    kept = [msg for msg in live_messages if message_key(msg) not in state.summarized_ids]

    if state.summaries and kept:
        insert_at = 0
        while insert_at < len(kept) and kept[insert_at].is_system:
            insert_at += 1
        kept.insert(insert_at, summary_message(state.summaries))

    _LOG.debug(
        "Projected %d of %d messages, %d summaries injected",
        len(kept),
        len(live_messages),
        len(state.summaries) if kept else 0,
    )
    return kept
