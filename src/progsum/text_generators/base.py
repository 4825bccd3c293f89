from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Sequence, Union

PromptInput = Union[str, Sequence[Dict[str, Any]]]


class TextGeneratorAPI(ABC):
    """Abstract base class for text generator providers."""

    @abstractmethod
    async def generate(self, prompt: PromptInput) -> str:
        """Return generated text for the given prompt."""
        raise NotImplementedError


def normalize_messages(prompt: PromptInput) -> List[Dict[str, Any]]:
    """Turn a string or a role/content list into a list of message dicts."""
    if isinstance(prompt, str):
        return [{"role": "user", "content": prompt}]
    if isinstance(prompt, Sequence):
        if not all(isinstance(m, dict) and "role" in m and "content" in m for m in prompt):
            raise TypeError("Each message must be a dict with 'role' and 'content' keys")
        return [dict(m) for m in prompt]
    raise TypeError("prompt must be either a string or a sequence of message dicts")
