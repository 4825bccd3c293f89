"""Tests for the summarization controller: threshold policy, commits, failures."""

from __future__ import annotations

import asyncio
import sqlite3

import pytest

from conftest import BlockingLLM, DummyLLM, make_message, sized_message
from progsum.summarization import (
    BackendFailure,
    Configuration,
    InMemoryStateStore,
    NoActiveConversation,
    PersistenceFailure,
    SqliteStateStore,
    SummarizationController,
    SummarizationState,
    Summarizer,
    message_key,
)


def _controller(llm, threshold=1000, enabled=True, store=None):
    ctrl = SummarizationController(
        store or InMemoryStateStore(),
        Summarizer(llm, instructions="Summarize.", timeout=5),
        Configuration(token_threshold=threshold, enabled=enabled),
    )
    ctrl.switch_conversation("chat-1")
    return ctrl


class FailingStore(InMemoryStateStore):
    def save_state(self, conversation_id, state):
        raise PersistenceFailure(conversation_id, "disk full")


class TestEvaluate:
    """Threshold windowing over unsummarized messages."""

    def test_below_threshold_waits_with_first_two(self, controller):
        messages = [sized_message(1, 400), sized_message(2, 400), sized_message(3, 400)]

        decision = controller.evaluate(messages)

        assert not decision.should_summarize
        assert [m.id for m in decision.batch] == [1, 2]
        assert decision.batch_tokens == 800
        assert controller.pending_token_count == 800

    def test_crossing_message_kept_when_closer_to_threshold(self, dummy_llm):
        ctrl = _controller(dummy_llm, threshold=1000)
        messages = [sized_message(1, 600), sized_message(2, 500), sized_message(3, 10)]

        decision = ctrl.evaluate(messages)

        assert decision.should_summarize
        assert [m.id for m in decision.batch] == [1, 2]
        assert decision.batch_tokens == 1100

    def test_lower_threshold_summarizes_first_two(self, dummy_llm):
        ctrl = _controller(dummy_llm, threshold=700)
        messages = [sized_message(1, 400), sized_message(2, 400), sized_message(3, 400)]

        decision = ctrl.evaluate(messages)

        assert decision.should_summarize
        assert [m.id for m in decision.batch] == [1, 2]
        assert decision.batch_tokens == 800

    def test_reaching_threshold_exactly_summarizes(self, controller):
        messages = [sized_message(1, 400), sized_message(2, 600), sized_message(3, 10)]

        decision = controller.evaluate(messages)

        assert decision.should_summarize
        assert [m.id for m in decision.batch] == [1, 2]

    def test_single_oversized_message_still_batched(self, controller):
        messages = [sized_message(1, 5000), sized_message(2, 10)]

        decision = controller.evaluate(messages)

        assert decision.should_summarize
        assert [m.id for m in decision.batch] == [1]
        assert decision.batch_tokens == 5000

    def test_skips_summarized_messages(self, controller):
        controller.session.state.summarized_ids.update({1, 2})
        messages = [sized_message(1, 400), sized_message(2, 400), sized_message(3, 400)]

        decision = controller.evaluate(messages)

        assert [m.id for m in decision.batch] == [3]
        assert decision.unsummarized_count == 1

    def test_empty_list_waits(self, controller):
        decision = controller.evaluate([])

        assert not decision.should_summarize
        assert decision.batch == ()
        assert controller.pending_token_count == 0

    def test_no_active_conversation_waits(self, memory_store, summarizer):
        ctrl = SummarizationController(memory_store, summarizer, Configuration())

        decision = ctrl.evaluate([sized_message(1, 5000)])

        assert not decision.should_summarize

    def test_messages_without_ids_use_content_key(self, controller):
        anon = make_message(None, "x" * 1600)
        controller.session.state.summarized_ids.add(message_key(anon))

        decision = controller.evaluate([anon, sized_message(2, 400)])

        assert [m.id for m in decision.batch] == [2]


class TestSummarize:
    """Committing a batch."""

    @pytest.mark.asyncio
    async def test_success_commits_all_fields(self, controller, memory_store):
        batch = [sized_message(1, 400), sized_message(2, 400)]
        controller.evaluate(batch)

        record = await controller.summarize(batch)

        assert record.text == "Summary #1"
        assert record.source_message_count == 2
        assert record.source_token_count == 800
        state = controller.session.state
        assert state.summaries == [record]
        assert state.summarized_ids == {1, 2}
        assert state.pending_token_count == 0

        stored = memory_store.load_state("chat-1")
        assert stored.summaries == [record]
        assert stored.summarized_ids == {1, 2}
        assert stored.pending_token_count == 0

    @pytest.mark.asyncio
    async def test_no_double_summarization(self, dummy_llm):
        ctrl = _controller(dummy_llm, threshold=700)
        messages = [sized_message(i, 400) for i in range(1, 6)]

        first = ctrl.evaluate(messages)
        await ctrl.summarize(first.batch)
        second = ctrl.evaluate(messages)

        first_ids = {m.id for m in first.batch}
        assert first_ids.isdisjoint(m.id for m in second.batch)
        assert [m.id for m in second.batch] == [3, 4]

    @pytest.mark.asyncio
    async def test_prior_summaries_included_in_prompt(self, controller, dummy_llm):
        await controller.summarize([make_message(1, "first topic")])
        await controller.summarize([make_message(2, "second topic")])

        prompt = dummy_llm.last_prompt
        assert "Summary 1: Summary #1" in prompt
        assert "Alice: second topic" in prompt
        assert "first topic" not in prompt

    @pytest.mark.asyncio
    async def test_backend_failure_leaves_state_untouched(self):
        llm = DummyLLM(replies=[ConnectionError("boom")])
        ctrl = _controller(llm)
        ctrl.session.state.summarized_ids.add(99)
        ctrl.session.state.pending_token_count = 321
        before = ctrl.session.state.copy()

        with pytest.raises(BackendFailure):
            await ctrl.summarize([sized_message(1, 400)])

        after = ctrl.session.state
        assert after.summaries == before.summaries
        assert after.summarized_ids == before.summarized_ids
        assert after.pending_token_count == before.pending_token_count
        assert ctrl.status == "Error during summarization"

    @pytest.mark.asyncio
    async def test_empty_reply_is_backend_failure(self):
        ctrl = _controller(DummyLLM(replies=["   "]))

        with pytest.raises(BackendFailure):
            await ctrl.summarize([sized_message(1, 400)])

        assert ctrl.session.state.summaries == []

    @pytest.mark.asyncio
    async def test_failed_batch_is_retried_next_trigger(self):
        llm = DummyLLM(replies=[TimeoutError("slow"), "Recovered"])
        ctrl = _controller(llm, threshold=100)
        messages = [sized_message(1, 150)]

        assert await ctrl.trigger(messages) is None
        record = await ctrl.trigger(messages)

        assert record.text == "Recovered"
        assert ctrl.session.state.summarized_ids == {1}

    @pytest.mark.asyncio
    async def test_persistence_failure_keeps_memory_state(self, dummy_llm):
        ctrl = _controller(dummy_llm, store=FailingStore())

        record = await ctrl.summarize([sized_message(1, 400)])

        assert record is not None
        assert ctrl.session.state.summarized_ids == {1}
        assert "only kept in memory" in ctrl.last_warning

    @pytest.mark.asyncio
    async def test_no_session_raises(self, memory_store, summarizer):
        ctrl = SummarizationController(memory_store, summarizer, Configuration())

        with pytest.raises(NoActiveConversation):
            await ctrl.summarize([sized_message(1, 400)])

    @pytest.mark.asyncio
    async def test_already_summarized_batch_is_noop(self, controller, dummy_llm):
        batch = [sized_message(1, 400)]
        await controller.summarize(batch)

        assert await controller.summarize(batch) is None
        assert dummy_llm.call_count == 1

    @pytest.mark.asyncio
    async def test_listeners_receive_new_ids(self, controller):
        seen = []

        async def listener(conversation_id, ids):
            seen.append((conversation_id, ids))

        def broken_listener(conversation_id, ids):
            raise RuntimeError("badge failed")

        controller.add_listener(broken_listener)
        controller.add_listener(listener)

        await controller.summarize([sized_message(1, 10), sized_message(2, 10)])

        assert seen == [("chat-1", frozenset({1, 2}))]


class TestConcurrency:
    """Serialization and stale results."""

    @pytest.mark.asyncio
    async def test_trigger_ignored_while_in_flight(self):
        llm = BlockingLLM()
        ctrl = _controller(llm, threshold=100)
        messages = [sized_message(1, 150), sized_message(2, 150)]

        first = asyncio.create_task(ctrl.trigger(messages))
        await llm.started.wait()
        assert ctrl.is_busy()

        assert await ctrl.trigger(messages) is None

        llm.release.set()
        record = await first
        assert record.source_message_count == 1
        assert llm.call_count == 1

    @pytest.mark.asyncio
    async def test_queued_summarize_skips_covered_messages(self):
        llm = BlockingLLM()
        ctrl = _controller(llm)
        batch = [sized_message(1, 150)]

        first = asyncio.create_task(ctrl.summarize(batch))
        await llm.started.wait()
        second = asyncio.create_task(ctrl.summarize(batch))
        await asyncio.sleep(0)
        llm.release.set()

        assert (await first) is not None
        assert (await second) is None
        assert len(ctrl.session.state.summaries) == 1

    @pytest.mark.asyncio
    async def test_result_commits_to_own_conversation_after_switch(self, memory_store):
        llm = BlockingLLM()
        ctrl = _controller(llm, store=memory_store)

        task = asyncio.create_task(ctrl.summarize([sized_message(1, 150)]))
        await llm.started.wait()
        ctrl.switch_conversation("chat-2")
        llm.release.set()

        assert (await task) is not None
        assert ctrl.conversation_id == "chat-2"
        assert ctrl.session.state.summaries == []
        assert memory_store.load_state("chat-1").summarized_ids == {1}
        assert memory_store.load_state("chat-2") is None

    @pytest.mark.asyncio
    async def test_switching_back_resumes_running_session(self, memory_store):
        llm = BlockingLLM()
        ctrl = _controller(llm, store=memory_store)
        running = ctrl.session

        task = asyncio.create_task(ctrl.summarize([sized_message(1, 150)]))
        await llm.started.wait()
        ctrl.switch_conversation("chat-2")
        assert ctrl.switch_conversation("chat-1") is running
        assert ctrl.is_busy()
        llm.release.set()
        await task

        assert ctrl.summarized_count == 1
        assert not ctrl.is_busy()

    @pytest.mark.asyncio
    async def test_finished_conversations_release_their_locks(self, dummy_llm):
        ctrl = _controller(dummy_llm)

        for conversation_id in ("chat-1", "chat-2", "chat-3"):
            ctrl.switch_conversation(conversation_id)
            await ctrl.summarize([sized_message(1, 150)])

        assert ctrl._running == {}

    @pytest.mark.asyncio
    async def test_result_discarded_after_clear(self):
        llm = BlockingLLM()
        ctrl = _controller(llm)

        task = asyncio.create_task(ctrl.summarize([sized_message(1, 150)]))
        await llm.started.wait()
        ctrl.clear()
        llm.release.set()

        assert (await task) is None
        assert ctrl.session.state == SummarizationState()


class TestTrigger:
    """Automatic and manual triggers."""

    @pytest.mark.asyncio
    async def test_automatic_requires_enabled(self, dummy_llm):
        ctrl = _controller(dummy_llm, threshold=100, enabled=False)

        assert await ctrl.on_message_appended([sized_message(1, 500)]) is None
        assert dummy_llm.call_count == 0

    @pytest.mark.asyncio
    async def test_automatic_waits_below_threshold(self, controller, dummy_llm):
        assert await controller.on_message_appended([sized_message(1, 100)]) is None
        assert dummy_llm.call_count == 0
        assert controller.pending_token_count == 100

    @pytest.mark.asyncio
    async def test_manual_summarizes_below_threshold(self, controller):
        record = await controller.manual_summarize_now([sized_message(1, 100), sized_message(2, 100)])

        assert record.source_message_count == 2
        assert controller.status == "Summarized 2 messages"

    @pytest.mark.asyncio
    async def test_manual_with_nothing_new(self, controller, dummy_llm):
        await controller.manual_summarize_now([sized_message(1, 100)])

        assert await controller.manual_summarize_now([sized_message(1, 100)]) is None
        assert controller.status == "No new messages to summarize"
        assert dummy_llm.call_count == 1

    @pytest.mark.asyncio
    async def test_no_active_conversation_is_noop(self, memory_store, summarizer, dummy_llm):
        ctrl = SummarizationController(memory_store, summarizer, Configuration(enabled=True))

        assert await ctrl.manual_summarize_now([sized_message(1, 100)]) is None
        assert dummy_llm.call_count == 0


class TestClearAndConfig:
    """Clearing state and installation settings."""

    @pytest.mark.asyncio
    async def test_clear_resets_fully(self, controller, memory_store):
        messages = [sized_message(1, 400), sized_message(2, 400), sized_message(3, 400)]
        fresh = controller.evaluate(messages)
        await controller.summarize(fresh.batch)

        controller.clear_all()

        assert controller.summaries == ()
        assert controller.summarized_count == 0
        assert controller.pending_token_count == 0
        assert memory_store.load_state("chat-1") == SummarizationState()
        assert controller.evaluate(messages) == fresh

    def test_clear_without_conversation_raises(self, memory_store, summarizer):
        ctrl = SummarizationController(memory_store, summarizer, Configuration())

        with pytest.raises(NoActiveConversation):
            ctrl.clear()

    def test_threshold_validation(self, controller):
        with pytest.raises(ValueError):
            controller.set_token_threshold(99)
        controller.set_token_threshold(100)
        assert controller.config.token_threshold == 100

    def test_settings_are_saved(self, controller, memory_store):
        controller.set_enabled(False)
        controller.set_token_threshold(2500)

        assert memory_store.load_config() == Configuration(token_threshold=2500, enabled=False)

    def test_config_loaded_from_store(self, memory_store, summarizer):
        memory_store.save_config(Configuration(token_threshold=300, enabled=True))

        ctrl = SummarizationController(memory_store, summarizer)

        assert ctrl.config == Configuration(token_threshold=300, enabled=True)

    def test_config_defaults_from_env(self, memory_store, summarizer, monkeypatch):
        monkeypatch.setenv("SUMMARY_TOKEN_THRESHOLD", "1500")
        monkeypatch.setenv("SUMMARY_ENABLED", "yes")

        ctrl = SummarizationController(memory_store, summarizer)

        assert ctrl.config == Configuration(token_threshold=1500, enabled=True)

    def test_corrupt_stored_config_falls_back_to_defaults(self, temp_db, summarizer, monkeypatch):
        monkeypatch.delenv("SUMMARY_TOKEN_THRESHOLD", raising=False)
        monkeypatch.delenv("SUMMARY_ENABLED", raising=False)
        store = SqliteStateStore(temp_db)
        with sqlite3.connect(temp_db) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO installation_settings (key, value) VALUES (?, ?)",
                ("progressive_summarization", '{"token_threshold": 10, "enabled": true}'),
            )

        ctrl = SummarizationController(store, summarizer)

        assert ctrl.config == Configuration(token_threshold=1000, enabled=False)

    @pytest.mark.asyncio
    async def test_commit_after_unsaved_clear_overwrites_old_summary(self, temp_db):
        class FlakyClearStore(SqliteStateStore):
            fail_next = False

            def save_state(self, conversation_id, state):
                if self.fail_next:
                    self.fail_next = False
                    raise PersistenceFailure(conversation_id, "disk full")
                super().save_state(conversation_id, state)

        store = FlakyClearStore(temp_db)
        ctrl = _controller(DummyLLM(replies=["OLD", "NEW"]), store=store)
        await ctrl.summarize([sized_message(1, 150)])

        store.fail_next = True
        ctrl.clear()
        await ctrl.summarize([sized_message(2, 150)])

        stored = store.load_state("chat-1")
        assert [r.text for r in stored.summaries] == ["NEW"]
        assert stored.summarized_ids == {2}


class TestSwitching:
    """Loading per-conversation state."""

    @pytest.mark.asyncio
    async def test_state_is_per_conversation(self, controller):
        await controller.summarize([sized_message(1, 100)])

        controller.switch_conversation("chat-2")
        assert controller.summaries == ()

        controller.switch_conversation("chat-1")
        assert controller.summarized_count == 1

    def test_switch_to_same_conversation_keeps_session(self, controller):
        session = controller.session
        assert controller.switch_conversation("chat-1") is session

    def test_switch_to_none_unloads(self, controller):
        assert controller.switch_conversation(None) is None
        assert controller.conversation_id is None

    def test_project_for_generation_respects_enabled(self, controller):
        controller.session.state.summarized_ids.add(1)
        messages = [make_message(1), make_message(2)]

        controller.set_enabled(False)
        assert controller.project_for_generation(messages) == messages

        controller.set_enabled(True)
        assert [m.id for m in controller.project_for_generation(messages)] == [2]
