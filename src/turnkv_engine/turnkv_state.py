# Copyright (c) 2025 turnkv
# Author: alexeiv-ai <188820640+alexeiv-ai@users.noreply.github.com>
# AI-Assistance: Portions of this file were drafted using AI coding tools
# (e.g., ChatGPT, Gemini, Codex) under active human design supervision.
# Contact: Please open an issue or discussion on GitHub.
# SPDX-License-Identifier: Apache-2.0
"""State, errors and per-turn bookkeeping for the turnkv engine."""
import time
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any

from .turnkv_utils import TextFragmentAccumulator, round_floats

# Define specific exceptions
class TurnKVError(Exception): ...
class ConfigurationError(TurnKVError): pass
class BusyError(TurnKVError): pass

class EngineUnavailableError(TurnKVError):
    """No model/context is loaded, so nothing can be tokenized or generated."""
    def __init__(self, message: str = "No model is loaded; load a model before generating."):
        super().__init__(message)

class RenderError(TurnKVError):
    """The prompt could not be built from the selected turns."""
    pass

class DecodeError(TurnKVError):
    """A batch submitted to the engine failed to decode.

    `ingested_tokens` is the number of tokens of the failing request that were
    committed before the failure; the resident tracker already reflects them.
    """
    def __init__(self, message: str = "Failed to decode the next batch of tokens", ingested_tokens: int = 0):
        super().__init__(message)
        self.ingested_tokens = ingested_tokens

class BudgetUnsatisfiableError(TurnKVError):
    """Not even a single turn fits in the available token budget."""
    def __init__(self, required: int, budget: int, message: Optional[str] = None):
        if message is None:
            message = (f"The conversation needs at least {required} tokens but only {budget} are available "
                       f"after reserving space for the reply. Increase the context length or shorten the last message.")
        super().__init__(message)
        self.required = required
        self.budget = budget


class BackendStatus(Enum):
    """Process-wide status of the inference backend."""
    OFFLINE = "offline"
    READY = "ready"
    SHUT_DOWN = "shut_down"

class TurnState(Enum):
    """Lifecycle of a single generation turn."""
    IDLE = "idle"
    BUILDING_PROMPT = "building_prompt"
    RECONCILING = "reconciling"
    INGESTING = "ingesting"
    SAMPLING = "sampling"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

class StopReason(str, Enum):
    END_MARKER = "end_marker"
    MAX_LENGTH = "max_length"
    CONTEXT_FULL = "context_full"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class GenerationSession:
    """Ephemeral state for one generation turn. Cleared when the turn stops."""
    max_new_tokens: int = 0  # 0 means unbounded
    step_count: int = 0
    done: bool = False
    stop_reason: Optional[StopReason] = None
    state: TurnState = TurnState.IDLE
    accumulator: TextFragmentAccumulator = field(default_factory=TextFragmentAccumulator)
    emitted_text: str = ""

    def limit_reached(self) -> bool:
        return self.max_new_tokens != 0 and self.step_count >= self.max_new_tokens

    def finish(self, reason: StopReason) -> str:
        """Marks the session done and returns whatever text was still buffered."""
        self.done = True
        self.stop_reason = reason
        remaining = self.accumulator.flush()
        self.emitted_text += remaining
        return remaining

    def clear(self) -> None:
        self.accumulator.reset()
        self.step_count = 0


@dataclass
class TurnMetrics:
    """Timing and token statistics for a completed turn."""
    start_time_mono: float = field(default_factory=time.monotonic)
    first_token_time_mono: Optional[float] = None
    end_time_mono: Optional[float] = None
    new_prompt_tokens: int = 0
    prompt_tokens: int = 0
    generated_tokens: int = 0

    def mark_first_token(self) -> None:
        if self.first_token_time_mono is None:
            self.first_token_time_mono = time.monotonic()

    def close(self) -> None:
        self.end_time_mono = time.monotonic()

    @property
    def time_to_first_token_sec(self) -> Optional[float]:
        if self.first_token_time_mono is None:
            return None
        return self.first_token_time_mono - self.start_time_mono

    @property
    def prompt_tokens_per_sec(self) -> Optional[float]:
        ttft = self.time_to_first_token_sec
        if not ttft:
            return None
        return self.new_prompt_tokens / ttft

    @property
    def generation_tokens_per_sec(self) -> Optional[float]:
        if self.first_token_time_mono is None or self.end_time_mono is None:
            return None
        elapsed = self.end_time_mono - self.first_token_time_mono
        if elapsed <= 0 or self.generated_tokens < 2:
            return None
        return (self.generated_tokens - 1) / elapsed

    def summary(self) -> Dict[str, Any]:
        return round_floats({
            "new_prompt_tokens": self.new_prompt_tokens,
            "prompt_tokens": self.prompt_tokens,
            "generated_tokens": self.generated_tokens,
            "time_to_first_token_sec": self.time_to_first_token_sec,
            "prompt_tokens_per_sec": self.prompt_tokens_per_sec,
            "generation_tokens_per_sec": self.generation_tokens_per_sec,
        })
