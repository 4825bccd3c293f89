# text_generators/openai_chatgpt.py
from __future__ import annotations

from typing import Dict
import logging

from openai import AsyncOpenAI, OpenAIError

from .base import PromptInput, TextGeneratorAPI, normalize_messages

_CLIENT_CACHE: Dict[str, AsyncOpenAI] = {}
_LOG = logging.getLogger(__name__)


class OpenAIChatTextGenerator(TextGeneratorAPI):
    """Text-generation backend for OpenAI chat models via Chat Completions.

    Requires OPENAI_API_KEY in the environment.
    Accepts either a single string or a list of {role, content} messages.
    """

    def __init__(self, model: str = "gpt-4o-mini") -> None:
        self.model = model

    def _get_client(self) -> AsyncOpenAI:
        if "default" not in _CLIENT_CACHE:
            _CLIENT_CACHE["default"] = AsyncOpenAI()  # picks up OPENAI_API_KEY
        return _CLIENT_CACHE["default"]

    async def generate(self, prompt: PromptInput, *, temperature: float = 1.0) -> str:
        messages = normalize_messages(prompt)
        client = self._get_client()
        try:
            resp = await client.chat.completions.create(
                model=self.model,
                messages=messages,  # type: ignore[arg-type]
                temperature=temperature,
            )
        except OpenAIError as e:
            _LOG.error("OpenAI request failed for model %s: %s", self.model, e)
            raise
        if not resp.choices:
            return ""
        return (resp.choices[0].message.content or "").strip()
