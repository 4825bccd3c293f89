"""Detects conversation switches, by event or by polling the host."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from .controller import SummarizationController

_LOG = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0


class ConversationWatcher:
    """Keeps the controller's session in step with the host's active conversation."""

    def __init__(
        self,
        controller: SummarizationController,
        get_active_conversation_id: Callable[[], str | None],
    ):
        self.controller = controller
        self.get_active_conversation_id = get_active_conversation_id

    def check(self) -> bool:
        """Switch the controller if the host's active conversation changed.

        Returns True when a switch happened.
        """
        current = self.get_active_conversation_id()
        if current == self.controller.conversation_id:
            return False
        _LOG.info("Conversation changed: %s -> %s", self.controller.conversation_id, current)
        self.controller.switch_conversation(current)
        return True

    async def run(self, interval: float = DEFAULT_POLL_INTERVAL) -> None:
        """Poll check() every *interval* seconds until cancelled."""
        while True:
            try:
                self.check()
            except Exception:  # noqa: BLE001
                _LOG.exception("Conversation poll failed")
            await asyncio.sleep(interval)
