# Copyright (c) 2025 turnkv
# Author: alexeiv-ai <188820640+alexeiv-ai@users.noreply.github.com>
# AI-Assistance: Portions of this file were drafted using AI coding tools
# (e.g., ChatGPT, Gemini, Codex) under active human design supervision.
# Contact: Please open an issue or discussion on GitHub.
# SPDX-License-Identifier: Apache-2.0
"""turnkv Engine - batched prompt ingestion with progress and cooperative cancellation."""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence, TYPE_CHECKING

from .turnkv_cache import ReconcilePlan, ResidentSequenceTracker
from .turnkv_state import DecodeError

if TYPE_CHECKING:
    from .turnkv_backend import InferenceBackend

ProgressCallback = Callable[[float], Any]
ContinueCallback = Callable[[], Any]


async def maybe_await(value: Any) -> Any:
    """Lets callbacks be plain functions or coroutine functions."""
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass(frozen=True)
class IngestReport:
    plan: ReconcilePlan
    ingested_count: int

    @property
    def completed(self) -> bool:
        return self.ingested_count == len(self.plan.suffix)


class BatchedDecodeScheduler:
    """
    Feeds a token suffix to the engine in chunks of at most `max_batch_size`.

    Chunks go in strictly in order; each one is recorded on the tracker only
    after the engine accepted it. Only the last token of the whole suffix asks
    for output logits, since that is the one the next sample is drawn from.
    """

    def __init__(self, backend: "InferenceBackend", tracker: ResidentSequenceTracker, logger: logging.Logger,
                 max_batch_size: Optional[int] = None):
        self._backend = backend
        self._tracker = tracker
        self.logger = logger
        limit = backend.max_batch_size
        if max_batch_size is not None:
            limit = min(limit, max_batch_size)
        self.max_batch_size = max(1, limit)

    async def ingest(
        self,
        suffix: Sequence[int],
        start_position: int,
        needs_output_for_last: bool = True,
        progress: Optional[ProgressCallback] = None,
        should_continue: Optional[ContinueCallback] = None,
    ) -> int:
        """Returns the number of tokens ingested, which is less than `len(suffix)` if cancelled."""
        total = len(suffix)
        ingested = 0
        for offset in range(0, total, self.max_batch_size):
            if should_continue is not None and not await maybe_await(should_continue()):
                self.logger.info(f"[ingest] Cancelled after {ingested}/{total} tokens.")
                break

            chunk = list(suffix[offset:offset + self.max_batch_size])
            chunk_start = start_position + offset
            positions = [chunk_start + j for j in range(len(chunk))]
            needs_output = [needs_output_for_last and (offset + j == total - 1) for j in range(len(chunk))]

            try:
                await asyncio.to_thread(self._backend.decode_batch, chunk, positions, needs_output)
            except DecodeError as e:
                e.ingested_tokens = ingested
                self.logger.error(f"[ingest] Decode failed at position {chunk_start} after {ingested}/{total} tokens: {e}")
                raise
            except Exception as e:
                self.logger.error(f"[ingest] Decode failed at position {chunk_start} after {ingested}/{total} tokens: {e}")
                raise DecodeError(f"Failed to decode the prompt: {e}", ingested_tokens=ingested) from e

            self._tracker.record_ingested(chunk, chunk_start)
            ingested += len(chunk)
            if progress is not None:
                await maybe_await(progress(ingested / total))
        return ingested


async def reconcile_and_ingest(
    tracker: ResidentSequenceTracker,
    scheduler: BatchedDecodeScheduler,
    new_tokens: Sequence[int],
    progress: Optional[ProgressCallback] = None,
    should_continue: Optional[ContinueCallback] = None,
) -> IngestReport:
    """Brings the engine's memory up to `new_tokens`, ingesting only what is not already resident."""
    if progress is not None:
        await maybe_await(progress(0.0))

    plan = tracker.reconcile(new_tokens)
    ingested = 0
    if plan.suffix:
        ingested = await scheduler.ingest(
            plan.suffix, plan.start_position, True, progress=progress, should_continue=should_continue
        )

    report = IngestReport(plan=plan, ingested_count=ingested)
    if progress is not None and report.completed:
        await maybe_await(progress(1.0))
    return report
