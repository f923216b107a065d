# Copyright (c) 2025 turnkv
# Author: alexeiv-ai <188820640+alexeiv-ai@users.noreply.github.com>
# AI-Assistance: Portions of this file were drafted using AI coding tools
# (e.g., ChatGPT, Gemini, Codex) under active human design supervision.
# Contact: Please open an issue or discussion on GitHub.
# SPDX-License-Identifier: Apache-2.0
"""turnkv Engine - selection of the conversation window that goes into the prompt."""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .turnkv_config import ModelConfiguration
from .turnkv_conversation import ContextAnchor, ConversationLog, RenderMessage, Turn
from .turnkv_state import BudgetUnsatisfiableError

# Default per-turn allowance for role markers and separators added by chat templates.
DEFAULT_PER_TURN_OVERHEAD = 10


@dataclass(frozen=True)
class TokenBudget:
    """Token space available to the prompt for one turn."""
    context_capacity: int
    generation_reservation: int
    runway_reserve: int

    @property
    def budget(self) -> int:
        return max(0, self.context_capacity - self.generation_reservation)

    @property
    def limit_with_runway(self) -> int:
        """Target used when the window has to slide, leaving room for a few more turns."""
        return max(0, self.budget - self.runway_reserve)

    @classmethod
    def from_config(cls, config: ModelConfiguration, context_capacity: Optional[int] = None) -> "TokenBudget":
        capacity = context_capacity if context_capacity is not None else config.context_length
        reservation = config.generation_reservation
        runway = config.reserved_context_buffer if config.reserved_context_buffer is not None else reservation
        return cls(context_capacity=max(0, capacity), generation_reservation=max(0, reservation), runway_reserve=max(0, runway))


@dataclass(frozen=True)
class WindowSelection:
    turns: Tuple[Turn, ...]
    start_index: int
    estimated_tokens: int
    anchor_id: Optional[str]
    slid: bool = False

    @property
    def messages(self) -> List[RenderMessage]:
        return [RenderMessage(t.role, t.response_text.strip()) for t in self.turns]


class ContextWindowSelector:
    """
    Picks the contiguous tail of the conversation that fits the token budget.

    The window starts at a sticky anchor. While everything from the anchor on
    fits, the anchor stays put so the resident sequence keeps its prefix.
    When it no longer fits, the anchor jumps forward far enough to also free
    the runway reserve, so the next few turns fit without sliding again.
    """

    def __init__(self, token_counter: Callable[[str], int], logger: logging.Logger,
                 per_turn_overhead: int = DEFAULT_PER_TURN_OVERHEAD):
        self._count_tokens = token_counter
        self.logger = logger
        self.per_turn_overhead = max(0, per_turn_overhead)

    def turn_cost(self, turn: Turn) -> int:
        return self._count_tokens(turn.response_text) + self.per_turn_overhead

    def select(self, log: ConversationLog, anchor: ContextAnchor, budget: TokenBudget, commit: bool = True) -> WindowSelection:
        """
        Returns the turns eligible for the prompt. With `commit=False` the anchor
        is left untouched (except for clearing a dangling one).
        Raises `BudgetUnsatisfiableError` if the newest turn alone does not fit.
        """
        count = len(log)
        start_index = anchor.resolve(log)
        anchor_was_set = start_index is not None
        if start_index is None:
            start_index = 0

        costs = [self.turn_cost(log[i]) for i in range(start_index, count)]
        total = sum(costs)
        new_anchor_id = anchor.turn_id
        slid = False

        if total > budget.budget:
            limit = budget.limit_with_runway
            old_start = start_index
            while total > limit and start_index < count - 1:
                total -= costs[start_index - old_start]
                start_index += 1
            if total > budget.budget:
                raise BudgetUnsatisfiableError(required=total, budget=budget.budget)
            new_anchor_id = log[start_index].turn_id
            slid = True
            self.logger.info(
                f"[window] Budget of {budget.budget} tokens exceeded; anchor moved from turn {old_start} to {start_index} "
                f"({total} estimated tokens, runway target {limit})."
            )
        elif not anchor_was_set and count > 0:
            new_anchor_id = log[0].turn_id

        if commit:
            anchor.turn_id = new_anchor_id

        turns = tuple(t for t in log[start_index:] if t.response_text.strip())
        return WindowSelection(turns=turns, start_index=start_index, estimated_tokens=total,
                               anchor_id=new_anchor_id, slid=slid)
