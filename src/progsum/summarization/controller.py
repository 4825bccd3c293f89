"""Summarization controller: threshold policy and transactional state updates."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Sequence, Union

from progsum import settings

from .errors import BackendFailure, NoActiveConversation, PersistenceFailure
from .models import (
    MIN_TOKEN_THRESHOLD,
    Configuration,
    Decision,
    Message,
    SummarizationState,
    SummaryRecord,
    message_key,
    new_summary_record,
)
from .projection import project
from .store import StateStore
from .summarizer import Summarizer
from .tokens import estimate_message_tokens

_LOG = logging.getLogger(__name__)

SummarizedListener = Callable[[str, frozenset], Union[Awaitable[None], None]]


@dataclass
class ConversationSession:
    """State handle for one conversation, plus its summarization lock."""

    conversation_id: str
    state: SummarizationState
    # Bumped on clear; a result generated under an older epoch is stale
    epoch: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)
    pending_jobs: int = field(default=0, compare=False)


class SummarizationController:
    """Decides when to summarize, runs the summarizer and commits the result.

    At most one summarization runs per conversation. A result always commits
    to the session it was generated for, so switching away does not lose it;
    a result that arrives after that conversation was cleared is discarded.
    """

    def __init__(
        self,
        store: StateStore,
        summarizer: Summarizer,
        config: Configuration | None = None,
    ):
        """
        Initialize controller.

        Args:
            store: Keyed persistent store for state and config
            summarizer: Summarizer wrapping the generation backend
            config: Installation config; loaded from the store (or env defaults) when None
        """
        self.store = store
        self.summarizer = summarizer
        self.config = config if config is not None else self._load_config()
        self.session: ConversationSession | None = None
        self.status = "Ready"
        self.last_warning: str | None = None
        # Sessions with a summarize call running or queued; dropped when the last one finishes
        self._running: dict[str, ConversationSession] = {}
        self._listeners: list[SummarizedListener] = []

    # ---------------------------------------------------------------- helpers

    def _load_config(self) -> Configuration:
        try:
            stored = self.store.load_config()
        except PersistenceFailure:
            _LOG.warning("Could not load summarization config; using defaults", exc_info=True)
            stored = None
        if stored is not None:
            return stored
        threshold = max(MIN_TOKEN_THRESHOLD, settings.default_token_threshold())
        return Configuration(token_threshold=threshold, enabled=settings.default_enabled())

    def _persist(self, session: ConversationSession) -> bool:
        try:
            self.store.save_state(session.conversation_id, session.state)
        except PersistenceFailure as exc:
            self.last_warning = (
                f"Summary state for {session.conversation_id} is only kept in memory: {exc}"
            )
            _LOG.warning(self.last_warning)
            return False
        return True

    def add_listener(self, callback: SummarizedListener) -> None:
        """Register a callback receiving (conversation_id, newly summarized ids) after each commit."""
        self._listeners.append(callback)

    async def _notify(self, conversation_id: str, ids: frozenset) -> None:
        for callback in list(self._listeners):
            try:
                result = callback(conversation_id, ids)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001
                _LOG.exception("Summarized-listener failed for conversation %s", conversation_id)

    # ---------------------------------------------------------------- read accessors

    @property
    def conversation_id(self) -> str | None:
        return self.session.conversation_id if self.session else None

    @property
    def summaries(self) -> tuple[SummaryRecord, ...]:
        return tuple(self.session.state.summaries) if self.session else ()

    @property
    def summarized_count(self) -> int:
        return len(self.session.state.summarized_ids) if self.session else 0

    @property
    def pending_token_count(self) -> int:
        return self.session.state.pending_token_count if self.session else 0

    def is_busy(self, conversation_id: str | None = None) -> bool:
        key = conversation_id or self.conversation_id
        return key is not None and key in self._running

    # ---------------------------------------------------------------- conversation switching

    def switch_conversation(self, conversation_id: str | None) -> ConversationSession | None:
        """Load the state for *conversation_id*, replacing the active session wholesale.

        A conversation with a summarization still running keeps its session, so
        the result lands in the state the host sees after switching back.
        """
        if self.session is not None and self.session.conversation_id == conversation_id:
            return self.session

        if conversation_id is None:
            _LOG.info("No active conversation; summarization state unloaded")
            self.session = None
            return None

        running = self._running.get(conversation_id)
        if running is not None:
            self.session = running
            _LOG.info("Resumed conversation %s with a summarization in flight", conversation_id)
            return running

        try:
            state = self.store.load_state(conversation_id)
        except PersistenceFailure:
            _LOG.warning("Could not load summaries for %s; starting empty", conversation_id, exc_info=True)
            state = None

        self.session = ConversationSession(conversation_id, state or SummarizationState())
        _LOG.info(
            "Loaded conversation %s: %d summaries, %d summarized messages",
            conversation_id,
            len(self.session.state.summaries),
            len(self.session.state.summarized_ids),
        )
        return self.session

    # ---------------------------------------------------------------- threshold policy

    def evaluate(
        self,
        live_messages: Sequence[Message],
        session: ConversationSession | None = None,
    ) -> Decision:
        """
        Select the next batch of unsummarized messages.

        Messages are taken in order. A message that would push the total past
        the threshold is taken only if that lands strictly closer to the
        threshold than stopping short does; nothing is added once the
        threshold is reached. The first message is always taken so a single
        oversized message still makes progress.

        This is not a strict "never exceed the threshold" window. A strict
        window could never reach the threshold with [400, 400, 400] at 700,
        yet that input must summarize the first two messages (800 tokens),
        while the same input at 1000 must wait on [400, 400]. Taking the
        crossing message only when it lands nearer the threshold satisfies
        both. As a consequence [600, 500] at 1000 yields an 1100-token batch.

        Returns:
            Decision to summarize the batch, or to wait
        """
        session = session or self.session
        if session is None:
            return Decision("wait")

        state = session.state
        threshold = self.config.token_threshold
        unsummarized = [m for m in live_messages if message_key(m) not in state.summarized_ids]

        batch: list[Message] = []
        batch_tokens = 0
        for msg in unsummarized:
            tokens = estimate_message_tokens(msg)
            if batch:
                if batch_tokens >= threshold:
                    break
                overshoot = batch_tokens + tokens - threshold
                if overshoot > 0 and overshoot >= threshold - batch_tokens:
                    break
            batch_tokens += tokens
            batch.append(msg)

        state.pending_token_count = batch_tokens

        action = "summarize" if batch and batch_tokens >= threshold else "wait"
        return Decision(action, tuple(batch), batch_tokens, len(unsummarized))

    # ---------------------------------------------------------------- summarization

    async def summarize(
        self,
        batch: Sequence[Message],
        session: ConversationSession | None = None,
    ) -> SummaryRecord | None:
        """
        Summarize *batch* and commit the result.

        Calls for the same conversation are serialized. Messages summarized by
        an earlier call while this one waited are skipped.

        Returns:
            The new SummaryRecord, or None if nothing was committed

        Raises:
            NoActiveConversation: no session given or loaded
            BackendFailure: generation failed; state is unchanged
        """
        session = session or self.session
        if session is None:
            raise NoActiveConversation("summarize called with no active conversation")

        session = self._running.setdefault(session.conversation_id, session)
        session.pending_jobs += 1
        try:
            async with session.lock:
                return await self._summarize_locked(batch, session)
        finally:
            session.pending_jobs -= 1
            if not session.pending_jobs:
                del self._running[session.conversation_id]

    async def _summarize_locked(
        self,
        batch: Sequence[Message],
        session: ConversationSession,
    ) -> SummaryRecord | None:
        batch = [m for m in batch if message_key(m) not in session.state.summarized_ids]
        if not batch:
            return None

        epoch = session.epoch
        previous = list(session.state.summaries)
        self.status = "Summarizing..."
        try:
            summary_text = await self.summarizer.summarize_batch(previous, batch)
        except BackendFailure:
            self.status = "Error during summarization"
            raise

        if epoch != session.epoch:
            _LOG.warning(
                "Discarding summary for %s: conversation cleared while generating",
                session.conversation_id,
            )
            self.status = "Ready"
            return None

        record = new_summary_record(
            summary_text,
            message_count=len(batch),
            token_count=sum(estimate_message_tokens(m) for m in batch),
        )
        new_ids = frozenset(message_key(m) for m in batch)

        committed = session.state.copy()
        committed.summaries.append(record)
        committed.summarized_ids.update(new_ids)
        committed.pending_token_count = 0
        session.state = committed
        self.last_warning = None
        self._persist(session)

        self.status = f"Summarized {len(batch)} messages"
        _LOG.info(
            "Conversation %s: summary %d covers %d messages (%d tokens)",
            session.conversation_id,
            len(committed.summaries),
            record.source_message_count,
            record.source_token_count,
        )
        await self._notify(session.conversation_id, new_ids)
        return record

    async def trigger(
        self,
        live_messages: Sequence[Message],
        *,
        manual: bool = False,
        session: ConversationSession | None = None,
    ) -> SummaryRecord | None:
        """
        Evaluate the live list and summarize if the policy allows.

        Automatic triggers need the feature enabled and the threshold reached.
        Manual triggers summarize whatever batch the window produces as long as
        one unsummarized message exists. Backend failures are logged and leave
        the batch eligible for the next trigger. *session* defaults to the
        active one; hosts that await before triggering pass it explicitly.
        """
        session = session or self.session
        if session is None:
            _LOG.debug("Trigger ignored: no active conversation")
            return None
        if not manual and not self.config.enabled:
            return None
        if self.is_busy(session.conversation_id):
            _LOG.debug("Summarization already running for %s; trigger ignored", session.conversation_id)
            return None

        decision = self.evaluate(live_messages, session)
        if manual:
            if not decision.batch:
                self.status = "No new messages to summarize"
                return None
        elif not decision.should_summarize:
            return None

        _LOG.info(
            "%s: summarizing %d of %d unsummarized messages",
            "Manual summarize" if manual else "Threshold reached",
            len(decision.batch),
            decision.unsummarized_count,
        )
        try:
            return await self.summarize(decision.batch, session)
        except BackendFailure as exc:
            _LOG.warning("Summarization failed for %s: %s", session.conversation_id, exc)
            return None

    async def on_message_appended(
        self,
        live_messages: Sequence[Message],
        session: ConversationSession | None = None,
    ) -> SummaryRecord | None:
        return await self.trigger(live_messages, session=session)

    async def manual_summarize_now(
        self,
        live_messages: Sequence[Message],
        session: ConversationSession | None = None,
    ) -> SummaryRecord | None:
        return await self.trigger(live_messages, manual=True, session=session)

    # ---------------------------------------------------------------- commands

    def clear(self, session: ConversationSession | None = None) -> None:
        """Drop every summary and summarized id for the conversation. Irreversible."""
        session = session or self.session
        if session is None:
            raise NoActiveConversation("clear called with no active conversation")
        session.epoch += 1
        session.state = SummarizationState()
        self._persist(session)
        self.status = "Summaries cleared"
        _LOG.info("Cleared summaries for conversation %s", session.conversation_id)

    def clear_all(self) -> None:
        self.clear()

    def _save_config(self) -> None:
        try:
            self.store.save_config(self.config)
        except PersistenceFailure as exc:
            self.last_warning = f"Summarization settings not saved: {exc}"
            _LOG.warning(self.last_warning)

    def set_enabled(self, enabled: bool) -> None:
        self.config = Configuration(self.config.token_threshold, bool(enabled))
        self._save_config()

    def set_token_threshold(self, threshold: int) -> None:
        """Raises ValueError for thresholds below the minimum."""
        self.config = Configuration(int(threshold), self.config.enabled)
        self._save_config()

    # ---------------------------------------------------------------- generation pipeline

    def project_for_generation(self, live_messages: Sequence[Message]) -> list[Message]:
        """Return what a generation call should see for the active conversation."""
        if self.session is None or not self.config.enabled:
            return list(live_messages)
        return project(live_messages, self.session.state)
