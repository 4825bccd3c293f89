"""Approximate token counting for threshold comparisons."""

import math

from .models import Message

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Estimate backend tokens for *text* as ``ceil(len / 4)``.

    Only used for threshold checks and display, never for backend limits.
    """
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(message: Message) -> int:
    return estimate_tokens(message.text or "")
