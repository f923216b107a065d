# Copyright (c) 2025 turnkv
# Author: alexeiv-ai <188820640+alexeiv-ai@users.noreply.github.com>
# AI-Assistance: Portions of this file were drafted using AI coding tools
# (e.g., ChatGPT, Gemini, Codex) under active human design supervision.
# Contact: Please open an issue or discussion on GitHub.
# SPDX-License-Identifier: Apache-2.0
"""turnkv Engine - resident token sequence tracking and prefix reconciliation."""

import logging
from dataclasses import dataclass
from typing import List, Sequence, Tuple, TYPE_CHECKING

from .turnkv_state import BudgetUnsatisfiableError

if TYPE_CHECKING:
    from .turnkv_backend import InferenceBackend


def common_prefix_length(a: Sequence[int], b: Sequence[int]) -> int:
    """Number of leading positions where `a` and `b` hold the same token."""
    count = 0
    for x, y in zip(a, b):
        if x != y:
            break
        count += 1
    return count


@dataclass(frozen=True)
class ReconcilePlan:
    """What has to be (re)ingested to bring the engine's memory in line with a new prompt."""
    prompt_length: int
    keep_count: int  # resident tokens kept; also the absolute position of suffix[0]
    matched_count: int  # common prefix before the last-token refresh rule
    suffix: Tuple[int, ...]
    invalidated_count: int

    @property
    def start_position(self) -> int:
        return self.keep_count

    @property
    def new_token_count(self) -> int:
        """Prompt tokens that were not resident before reconciliation."""
        return self.prompt_length - self.matched_count


class ResidentSequenceTracker:
    """
    Mirrors the tokens the engine currently holds in its working memory.

    Every change to the engine's memory goes through this tracker, and the
    tracker is only extended after the engine has actually ingested the tokens,
    so a cancelled or failed ingestion never leaves the two out of sync.
    """

    def __init__(self, backend: "InferenceBackend", logger: logging.Logger):
        self._backend = backend
        self.logger = logger
        self._tokens: List[int] = []

    @property
    def capacity(self) -> int:
        return self._backend.context_capacity

    @property
    def tokens(self) -> Tuple[int, ...]:
        return tuple(self._tokens)

    def __len__(self) -> int:
        return len(self._tokens)

    @property
    def is_full(self) -> bool:
        return len(self._tokens) >= self.capacity

    def reconcile(self, new_tokens: Sequence[int]) -> ReconcilePlan:
        """
        Trims the engine's memory to the longest prefix shared with `new_tokens`
        and returns the suffix that still has to be ingested.

        When the whole prompt is already resident the last token is still
        re-ingested: the engine keeps no output distribution for cached tokens,
        so sampling needs a fresh forward pass over it.
        """
        new_tokens = list(new_tokens)
        if len(new_tokens) > self.capacity:
            raise BudgetUnsatisfiableError(
                required=len(new_tokens), budget=self.capacity,
                message=f"The prompt needs {len(new_tokens)} tokens but the loaded context only holds {self.capacity}.",
            )

        matched = common_prefix_length(new_tokens, self._tokens)
        keep = matched
        if keep == len(new_tokens) and keep > 0:
            keep -= 1

        invalidated = 0
        if keep < len(self._tokens):
            invalidated = len(self._tokens) - keep
            self._backend.invalidate_from(keep)
            del self._tokens[keep:]

        plan = ReconcilePlan(
            prompt_length=len(new_tokens),
            keep_count=keep,
            matched_count=matched,
            suffix=tuple(new_tokens[keep:]),
            invalidated_count=invalidated,
        )
        self.logger.debug(
            f"[cache] Reconciled prompt of {plan.prompt_length} tokens: kept {keep}, "
            f"invalidated {invalidated}, ingesting {len(plan.suffix)}."
        )
        return plan

    def record_ingested(self, tokens: Sequence[int], start_position: int) -> None:
        """Records tokens the engine has just ingested at `start_position`."""
        if start_position != len(self._tokens):
            raise ValueError(
                f"Ingested tokens start at position {start_position} but {len(self._tokens)} tokens are resident."
            )
        if len(self._tokens) + len(tokens) > self.capacity:
            raise ValueError(f"Resident sequence would exceed the context capacity of {self.capacity} tokens.")
        self._tokens.extend(tokens)

    def commit_generated(self, token: int) -> None:
        """Feeds a sampled token to the engine and appends it. Generated tokens are never reconciled."""
        position = len(self._tokens)
        self._backend.decode_batch([token], [position], [True])
        self._tokens.append(token)

    def discard(self) -> None:
        """Drops everything resident, e.g. when switching to another conversation."""
        if self._tokens:
            self._backend.invalidate_from(0)
            self.logger.debug(f"[cache] Discarded {len(self._tokens)} resident tokens.")
        self._tokens.clear()
