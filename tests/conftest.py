"""Shared fixtures: a deterministic in-memory inference backend and prompt renderer."""

import logging
from typing import List, Optional, Sequence

import pytest
import pytest_asyncio

from turnkv_engine.turnkv_cache import ResidentSequenceTracker
from turnkv_engine.turnkv_config import ModelConfiguration, SamplerSettings
from turnkv_engine.turnkv_engine import TurnKVEngine
from turnkv_engine.turnkv_ingest import BatchedDecodeScheduler
from turnkv_engine.turnkv_state import DecodeError, RenderError

END = 256
BOS = 257


# ---------------------------------------------------------------------------
# Fake engine: one token per UTF-8 byte
# ---------------------------------------------------------------------------


class FakeBackend:
    """Byte-level tokenizer and a sequence that records every engine call.

    Sampling returns the scripted tokens in order, then the end marker.
    `fail_at_call` makes the n-th (0-based) decode_batch call raise.
    """

    def __init__(self, context_capacity: int = 4096, max_batch_size: int = 512, adds_leading_marker: bool = False):
        self._context_capacity = context_capacity
        self._max_batch_size = max_batch_size
        self._adds_leading_marker = adds_leading_marker
        self.sequence: List[int] = []
        self.decode_calls: List[tuple] = []
        self.invalidations: List[int] = []
        self.script: List[int] = []
        self.fail_at_call: Optional[int] = None
        self.unloaded = False
        self._has_logits = False

    @property
    def context_capacity(self) -> int:
        return self._context_capacity

    @property
    def max_batch_size(self) -> int:
        return self._max_batch_size

    @property
    def adds_leading_marker(self) -> bool:
        return self._adds_leading_marker

    def script_text(self, text: str) -> None:
        self.script = list(text.encode("utf-8"))

    def tokenize(self, text: str, add_leading_marker: bool) -> List[int]:
        tokens = list(text.encode("utf-8"))
        return [BOS] + tokens if add_leading_marker else tokens

    def decode_batch(self, tokens: Sequence[int], positions: Sequence[int], needs_output: Sequence[bool]) -> None:
        call_index = len(self.decode_calls)
        self.decode_calls.append((list(tokens), list(positions), list(needs_output)))
        if self.fail_at_call is not None and call_index == self.fail_at_call:
            raise DecodeError("injected decode failure")
        if list(positions) != list(range(len(self.sequence), len(self.sequence) + len(tokens))):
            raise DecodeError(f"positions {list(positions)} do not continue a sequence of {len(self.sequence)}")
        if len(self.sequence) + len(tokens) > self._context_capacity:
            raise DecodeError("context overflow")
        self.sequence.extend(tokens)
        self._has_logits = bool(needs_output[-1])

    def invalidate_from(self, position: int) -> None:
        self.invalidations.append(position)
        del self.sequence[position:]
        self._has_logits = False

    def sample_next(self) -> int:
        if not self._has_logits:
            raise DecodeError("no logits for sampling")
        self._has_logits = False
        return self.script.pop(0) if self.script else END

    def token_to_bytes(self, token: int) -> bytes:
        return bytes([token]) if token < 256 else b""

    def is_end_marker(self, token: int) -> bool:
        return token == END

    def unload(self) -> None:
        self.unloaded = True
        self.sequence.clear()

    @property
    def ingested_tokens(self) -> List[int]:
        return [t for call in self.decode_calls for t in call[0]]


class FakeRenderer:
    """Renders `[role]content` lines. `fail` makes render raise."""

    def __init__(self):
        self.calls: List[dict] = []
        self.fail = False

    def render(self, messages, system_text, template, continuing, enable_thinking=True):
        self.calls.append({
            "messages": list(messages), "system_text": system_text, "template": template, "continuing": continuing,
        })
        if self.fail:
            raise RenderError("template failed")
        parts = []
        if system_text:
            parts.append(f"[system]{system_text}\n")
        for message in messages:
            parts.append(f"[{message.role.renderer_role}]{message.content}\n")
        prompt = "".join(parts)
        if continuing:
            return prompt[:-1] if prompt.endswith("\n") else prompt
        return prompt + "[assistant]"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("turnkv_engine.tests")


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def tracker(backend, logger) -> ResidentSequenceTracker:
    return ResidentSequenceTracker(backend, logger)


@pytest.fixture
def scheduler(backend, tracker, logger) -> BatchedDecodeScheduler:
    return BatchedDecodeScheduler(backend, tracker, logger)


@pytest.fixture
def config() -> ModelConfiguration:
    return ModelConfiguration(
        model_path="fake",
        context_length=4096,
        max_generation_length=0,
        reserved_context_buffer=256,
        sampler=SamplerSettings(temperature=0.0),
    )


@pytest_asyncio.fixture
async def engine(backend, renderer, config) -> TurnKVEngine:
    eng = TurnKVEngine(instance_id="test")
    await eng.attach(backend, renderer, config)
    return eng
