"""Summary generation: prompt assembly and the backend call."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol, Sequence

from progsum import settings

from .errors import BackendFailure
from .models import Message, SummaryRecord

_LOG = logging.getLogger(__name__)


class LLMProtocol(Protocol):
    """Protocol for LLM interface.

    ``prompt`` is a list of ``{"role", "content"}`` dicts; a ``system`` entry
    carries the fixed instruction.
    """

    async def generate(self, prompt: Any) -> str:
        """Generate text from a prompt."""
        ...


def preview_text(text: str, limit: int) -> str:
    """Truncate *text* to *limit* characters, marking the cut with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def build_summary_prompt(
    previous: Sequence[SummaryRecord],
    batch: Sequence[Message],
    instructions: str,
    preview_chars: int = 200,
) -> str:
    """
    Build the summarization request for one batch.

    Args:
        previous: Existing summaries, oldest first
        batch: Messages to fold into the new summary
        instructions: Prompt wording (configurable template text)
        preview_chars: Max characters kept from each message body

    Returns:
        Formatted prompt for LLM
    """
    sections = ["Please provide a concise summary of the following conversation."]

    if previous:
        lines = [f"Summary {n}: {record.text}" for n, record in enumerate(previous, start=1)]
        sections.append("Previous summaries:\n" + "\n".join(lines))

    lines = [f"{msg.speaker_name}: {preview_text(msg.text or '', preview_chars)}" for msg in batch]
    sections.append("Messages to summarize:\n" + "\n".join(lines))

    if instructions:
        sections.append(instructions)

    return "\n\n".join(sections)


class Summarizer:
    """Turns a batch of messages into summary text using an LLM."""

    def __init__(
        self,
        llm: LLMProtocol,
        *,
        system_instruction: str | None = None,
        instructions: str | None = None,
        preview_chars: int | None = None,
        timeout: float | None = None,
    ):
        """
        Initialize summarizer.

        Args:
            llm: LLM instance that implements generate() method
            system_instruction: Fixed system message for every request
            instructions: Prompt wording; None re-reads the configured template per call
            preview_chars: Per-message truncation length for the request
            timeout: Seconds to wait for the backend before giving up
        """
        self.llm = llm
        self.system_instruction = system_instruction or settings.SUMMARY_SYSTEM_INSTRUCTION
        self._instructions = instructions
        self.preview_chars = preview_chars if preview_chars is not None else settings.preview_chars()
        self.timeout = timeout if timeout is not None else settings.backend_timeout()

    @property
    def instructions(self) -> str:
        if self._instructions is not None:
            return self._instructions
        return settings.get_summary_prompt_instructions()

    def build_request(
        self,
        previous: Sequence[SummaryRecord],
        batch: Sequence[Message],
    ) -> list[dict[str, str]]:
        prompt = build_summary_prompt(previous, batch, self.instructions, self.preview_chars)
        return [
            {"role": "system", "content": self.system_instruction},
            {"role": "user", "content": prompt},
        ]

    async def summarize_batch(
        self,
        previous: Sequence[SummaryRecord],
        batch: Sequence[Message],
    ) -> str:
        """
        Generate summary text for *batch*.

        Raises:
            BackendFailure: on transport errors, timeouts or an empty reply
        """
        request = self.build_request(previous, batch)
        try:
            summary_text = await asyncio.wait_for(self.llm.generate(request), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise BackendFailure(f"summary generation timed out after {self.timeout:.0f}s") from exc
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise BackendFailure(f"summary generation failed: {exc}") from exc

        if not isinstance(summary_text, str) or not summary_text.strip():
            raise BackendFailure("summary generation returned an empty result")

        return summary_text.strip()
