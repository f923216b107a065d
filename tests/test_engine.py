"""End-to-end generation turns through TurnKVEngine with the fake backend."""

import asyncio
import threading

import pytest

from turnkv_engine.turnkv_config import ModelConfiguration, SamplerSettings, TurnRole
from turnkv_engine.turnkv_conversation import ContextAnchor, ConversationLog
from turnkv_engine.turnkv_engine import TurnKVEngine
from turnkv_engine.turnkv_infer import PROMPT_PROGRESS_LABEL, is_cancelled
from turnkv_engine.turnkv_state import (
    BudgetUnsatisfiableError, DecodeError, EngineUnavailableError, RenderError, StopReason
)

from conftest import FakeBackend, FakeRenderer

FIRST_PROMPT = "[user]hi\n[assistant]"


def _encode(text):
    return list(text.encode("utf-8"))


@pytest.fixture
def log():
    log = ConversationLog()
    log.add(TurnRole.USER, "hi")
    return log


class TestGenerationTurn:
    @pytest.mark.asyncio
    async def test_reply_streams_into_a_new_turn(self, engine, backend, log):
        backend.script_text("Hello")
        deltas = []

        outcome = await engine.run_generation_turn(log, on_text_delta=deltas.append)

        assert outcome.text == "Hello"
        assert "".join(deltas) == "Hello"
        assert outcome.stop_reason == StopReason.END_MARKER
        assert not outcome.was_cancelled and not outcome.was_truncated
        assert len(log) == 2
        assert log.last.role == TurnRole.AI
        assert log.last.content == "Hello"
        assert outcome.turn_id == log.last.turn_id

    @pytest.mark.asyncio
    async def test_resident_sequence_holds_prompt_and_reply(self, engine, backend, log):
        backend.script_text("Hello")

        outcome = await engine.run_generation_turn(log)

        expected = _encode(FIRST_PROMPT + "Hello")
        assert list(engine.resident_tokens) == expected
        assert backend.sequence == expected
        assert outcome.prompt_tokens == len(FIRST_PROMPT)
        assert outcome.new_prompt_tokens == len(FIRST_PROMPT)
        assert outcome.generated_tokens == 5
        assert set(outcome.metrics) >= {"time_to_first_token_sec", "generation_tokens_per_sec"}

    @pytest.mark.asyncio
    async def test_next_turn_ingests_only_the_new_suffix(self, engine, backend, log):
        backend.script_text("Hello")
        await engine.run_generation_turn(log)
        resident_before = engine.resident_token_count
        log.add(TurnRole.USER, "more")
        backend.decode_calls.clear()
        backend.script_text("Ok")

        outcome = await engine.run_generation_turn(log)

        suffix = "\n[user]more\n[assistant]"
        assert outcome.new_prompt_tokens == len(suffix)
        first_tokens, first_positions, _ = backend.decode_calls[0]
        assert first_tokens == _encode(suffix)
        assert first_positions[0] == resident_before
        assert backend.invalidations == []

    @pytest.mark.asyncio
    async def test_multibyte_reply_is_never_split(self, engine, backend, log):
        backend.script_text("née €5")
        deltas = []

        outcome = await engine.run_generation_turn(log, on_text_delta=deltas.append)

        assert outcome.text == "née €5"
        assert all("\ufffd" not in d for d in deltas)

    @pytest.mark.asyncio
    async def test_async_callbacks_are_awaited(self, engine, backend, log):
        backend.script_text("ab")
        deltas = []

        async def on_text(text):
            await asyncio.sleep(0)
            deltas.append(text)

        await engine.run_generation_turn(log, on_text_delta=on_text)

        assert deltas == ["a", "b"]

    @pytest.mark.asyncio
    async def test_progress_is_reported_and_cleared(self, engine, backend, log):
        backend.script_text("x")
        events = []

        await engine.run_generation_turn(log, on_progress=lambda f, label: events.append((f, label)))

        assert events[0] == (0.0, PROMPT_PROGRESS_LABEL)
        assert (1.0, PROMPT_PROGRESS_LABEL) in events
        assert events[-1] == (None, None)

    @pytest.mark.asyncio
    async def test_system_message_is_rendered(self, engine, backend, renderer, log):
        config = ModelConfiguration(context_length=4096, reserved_context_buffer=256, system_message="Be brief.")

        await engine.run_generation_turn(log, config)

        assert renderer.calls[-1]["system_text"] == "Be brief."


class TestStopConditions:
    @pytest.mark.asyncio
    async def test_max_generation_length_truncates(self, engine, backend, log):
        backend.script_text("Hello")
        config = ModelConfiguration(context_length=4096, max_generation_length=3, reserved_context_buffer=256)

        outcome = await engine.run_generation_turn(log, config)

        assert outcome.text == "Hel"
        assert outcome.stop_reason == StopReason.MAX_LENGTH
        assert outcome.was_truncated
        assert log.last.content == "Hel"

    @pytest.mark.asyncio
    async def test_full_context_finishes_the_turn(self, renderer, log):
        backend = FakeBackend(context_capacity=30)
        config = ModelConfiguration(context_length=30, reserved_context_buffer=5)
        engine = TurnKVEngine()
        await engine.attach(backend, renderer, config)
        backend.script_text("x" * 50)

        outcome = await engine.run_generation_turn(log)

        assert outcome.stop_reason == StopReason.CONTEXT_FULL
        assert outcome.was_truncated
        assert outcome.text == "x" * (30 - len(FIRST_PROMPT))
        assert engine.resident_token_count == 30


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_during_sampling_keeps_partial_reply(self, engine, backend, log):
        backend.script_text("Hello")
        cancel = threading.Event()

        outcome = await engine.run_generation_turn(log, on_text_delta=lambda t: cancel.set(), cancel_flag=cancel)

        assert outcome.was_cancelled
        assert outcome.stop_reason == StopReason.CANCELLED
        assert outcome.text == "H"
        assert log.last.content == "H"
        assert list(engine.resident_tokens) == _encode(FIRST_PROMPT + "H")

    @pytest.mark.asyncio
    async def test_cancel_before_ingestion_touches_nothing(self, engine, backend, log):
        outcome = await engine.run_generation_turn(log, cancel_flag=lambda: True)

        assert outcome.was_cancelled
        assert outcome.text == ""
        assert backend.decode_calls == []
        assert engine.resident_token_count == 0

    def test_cancel_flag_forms(self):
        event = threading.Event()
        assert not is_cancelled(event)
        event.set()
        assert is_cancelled(event)
        assert is_cancelled(lambda: True)
        assert is_cancelled(True)
        assert not is_cancelled(None)


class TestContinuing:
    @pytest.mark.asyncio
    async def test_continue_appends_to_the_last_turn(self, engine, backend, renderer, log):
        log.add(TurnRole.AI, "Hel")
        backend.script_text("lo")

        outcome = await engine.run_generation_turn(log, continuing=True)

        assert len(log) == 2
        assert log.last.content == "Hello"
        assert outcome.text == "lo"
        assert outcome.turn_id == log.last.turn_id
        assert renderer.calls[-1]["continuing"] is True
        assert list(engine.resident_tokens) == _encode("[user]hi\n[assistant]Hello")


class TestFailures:
    @pytest.mark.asyncio
    async def test_render_failure_creates_no_placeholder(self, engine, backend, renderer, log):
        renderer.fail = True

        with pytest.raises(RenderError):
            await engine.run_generation_turn(log)

        assert len(log) == 1
        assert backend.decode_calls == []

    @pytest.mark.asyncio
    async def test_ingestion_failure_removes_placeholder(self, engine, backend, log):
        backend.fail_at_call = 0

        with pytest.raises(DecodeError):
            await engine.run_generation_turn(log)

        assert len(log) == 1
        assert engine.resident_token_count == 0

    @pytest.mark.asyncio
    async def test_sampling_failure_keeps_partial_reply(self, engine, backend, log):
        backend.script_text("Hello")
        backend.fail_at_call = 2  # prompt batch, first generated token, then fail

        with pytest.raises(DecodeError):
            await engine.run_generation_turn(log)

        assert log.last.content == "H"
        assert list(engine.resident_tokens) == _encode(FIRST_PROMPT + "H")

    @pytest.mark.asyncio
    async def test_render_failure_leaves_the_anchor_unchanged(self, engine, renderer, log):
        anchor = ContextAnchor()
        renderer.fail = True

        with pytest.raises(RenderError):
            await engine.run_generation_turn(log, anchor=anchor)

        assert anchor.turn_id is None

    @pytest.mark.asyncio
    async def test_unexpected_sampling_error_removes_empty_placeholder(self, engine, backend, log):
        def broken_sampler():
            raise RuntimeError("probability tensor contains nan")

        backend.sample_next = broken_sampler

        with pytest.raises(RuntimeError):
            await engine.run_generation_turn(log)

        assert len(log) == 1
        assert list(engine.resident_tokens) == _encode(FIRST_PROMPT)

    @pytest.mark.asyncio
    async def test_prompt_over_capacity_removes_placeholder(self, renderer, log):
        backend = FakeBackend(context_capacity=15)
        config = ModelConfiguration(context_length=15, reserved_context_buffer=0)
        engine = TurnKVEngine()
        await engine.attach(backend, renderer, config)

        with pytest.raises(BudgetUnsatisfiableError):
            await engine.run_generation_turn(log)

        assert len(log) == 1

    @pytest.mark.asyncio
    async def test_no_model_loaded(self, log):
        with pytest.raises(EngineUnavailableError):
            await TurnKVEngine().run_generation_turn(log, ModelConfiguration())


class TestEstimate:
    @pytest.mark.asyncio
    async def test_estimate_matches_the_rendered_prompt(self, engine, log):
        anchor = ContextAnchor()

        count = await engine.estimate_prompt_token_count(log, anchor=anchor)

        assert count == len(FIRST_PROMPT)
        assert not anchor.is_set

    @pytest.mark.asyncio
    async def test_estimate_does_not_touch_the_resident_sequence(self, engine, backend, log):
        await engine.estimate_prompt_token_count(log)
        assert backend.decode_calls == []

    @pytest.mark.asyncio
    async def test_estimate_without_engine_uses_the_fallback(self, log):
        count = await TurnKVEngine().estimate_prompt_token_count(log, ModelConfiguration())
        # max(1, len("hi") // 4) + per-turn overhead
        assert count == 11


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_switch_conversation_discards_resident_sequence(self, engine, backend, log):
        backend.script_text("Hi")
        await engine.run_generation_turn(log)

        await engine.switch_conversation("other")

        assert engine.resident_token_count == 0
        assert backend.sequence == []
        assert engine.active_conversation_id == "other"

    @pytest.mark.asyncio
    async def test_unload_releases_backend(self, engine, backend):
        await engine.unload_model()

        assert backend.unloaded
        assert not engine.is_loaded

    @pytest.mark.asyncio
    async def test_attach_replaces_previous_backend(self, engine, backend, config):
        other = FakeBackend()
        await engine.attach(other, FakeRenderer(), config)

        assert backend.unloaded
        assert engine.context_capacity == other.context_capacity


class TestEngineHeldAnchor:
    @pytest.mark.asyncio
    async def test_anchor_persists_across_turns_without_a_caller_anchor(self, renderer):
        backend = FakeBackend(context_capacity=200)
        config = ModelConfiguration(context_length=200, max_generation_length=20, reserved_context_buffer=60,
                                    sampler=SamplerSettings(temperature=0.0))
        engine = TurnKVEngine()
        await engine.attach(backend, renderer, config)
        log = ConversationLog()
        invalidations = []

        for letter in "abcde":
            log.add(TurnRole.USER, letter * 40)
            backend.script_text("ok")
            backend.invalidations.clear()
            await engine.run_generation_turn(log)
            invalidations.append(list(backend.invalidations))

        # turn costs are 50 per user line and 12 per reply; the fourth turn
        # overflows the 180-token budget and slides to the third user line
        assert invalidations == [[], [], [], [len("[user]")], []]
        assert engine.conversation_anchor().turn_id == log[4].turn_id

    @pytest.mark.asyncio
    async def test_switching_clears_the_entered_conversation_anchor(self, engine, backend, log):
        await engine.switch_conversation("c1")
        await engine.run_generation_turn(log)
        assert engine.conversation_anchor().turn_id == log[0].turn_id

        await engine.switch_conversation("c2")
        assert engine.conversation_anchor("c1").is_set
        await engine.switch_conversation("c1")

        assert not engine.conversation_anchor().is_set

    @pytest.mark.asyncio
    async def test_caller_anchor_takes_precedence(self, engine, log):
        anchor = ContextAnchor()

        await engine.run_generation_turn(log, anchor=anchor)

        assert anchor.turn_id == log[0].turn_id
        assert not engine.conversation_anchor().is_set
