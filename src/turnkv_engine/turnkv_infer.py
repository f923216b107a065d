# Copyright (c) 2025 turnkv
# Author: alexeiv-ai <188820640+alexeiv-ai@users.noreply.github.com>
# AI-Assistance: Portions of this file were drafted using AI coding tools
# (e.g., ChatGPT, Gemini, Codex) under active human design supervision.
# Contact: Please open an issue or discussion on GitHub.
# SPDX-License-Identifier: Apache-2.0
"""turnkv Inference Logic - one generation turn from prompt building to the last sampled token."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

from .turnkv_backend import InferenceBackend, PromptRenderer
from .turnkv_cache import ResidentSequenceTracker
from .turnkv_config import ModelConfiguration, TurnOutcome, TurnRole
from .turnkv_conversation import ContextAnchor, ConversationLog, Turn
from .turnkv_ingest import BatchedDecodeScheduler, maybe_await, reconcile_and_ingest
from .turnkv_state import (
    BudgetUnsatisfiableError, GenerationSession, StopReason, TurnMetrics, TurnState
)
from .turnkv_utils import estimate_tokens_fallback
from .turnkv_window import ContextWindowSelector, TokenBudget, WindowSelection

PROMPT_PROGRESS_LABEL = "Processing prompt..."

ProgressSink = Callable[[Optional[float], Optional[str]], Any]
TextSink = Callable[[str], Any]


@dataclass
class LoadedContext:
    """Everything bound to one loaded model. Owned by the engine and used under its lock."""
    backend: InferenceBackend
    renderer: PromptRenderer
    tracker: ResidentSequenceTracker
    scheduler: BatchedDecodeScheduler
    logger: logging.Logger

    def count_tokens(self, text: str) -> int:
        return len(self.backend.tokenize(text, False))


def is_cancelled(flag: Any) -> bool:
    """Reads a cancellation flag: an Event-like object, a callable, or a plain bool."""
    if flag is None:
        return False
    if hasattr(flag, "is_set"):
        return bool(flag.is_set())
    if callable(flag):
        return bool(flag())
    return bool(flag)


def select_window(ctx: Optional[LoadedContext], log: ConversationLog, anchor: ContextAnchor,
                  config: ModelConfiguration, logger: logging.Logger, commit: bool = True) -> WindowSelection:
    if ctx is not None:
        counter = ctx.count_tokens
        budget = TokenBudget.from_config(config, ctx.backend.context_capacity)
    else:
        counter = estimate_tokens_fallback
        budget = TokenBudget.from_config(config)
    selector = ContextWindowSelector(counter, logger, per_turn_overhead=config.per_turn_overhead)
    return selector.select(log, anchor, budget, commit=commit)


def build_prompt(ctx: LoadedContext, log: ConversationLog, anchor: ContextAnchor, config: ModelConfiguration,
                 continuing: bool, commit: bool = True) -> Tuple[str, WindowSelection]:
    selection = select_window(ctx, log, anchor, config, ctx.logger, commit=commit)
    prompt = ctx.renderer.render(
        selection.messages,
        system_text=config.system_message,
        template=config.chat_template,
        continuing=continuing,
        enable_thinking=config.enable_thinking,
    )
    return prompt, selection


async def estimate_prompt_token_count_logic(ctx: Optional[LoadedContext], log: ConversationLog, anchor: ContextAnchor,
                                            config: ModelConfiguration, logger: logging.Logger) -> int:
    """
    Tokens the next prompt would take. Does not move the anchor. Without a loaded
    model this falls back to a character-based estimate of the window.
    """
    if ctx is None:
        try:
            return select_window(None, log, anchor, config, logger, commit=False).estimated_tokens
        except BudgetUnsatisfiableError as e:
            return e.required
    prompt, _ = build_prompt(ctx, log, anchor, config, continuing=False, commit=False)
    tokens = await asyncio.to_thread(ctx.backend.tokenize, prompt, ctx.backend.adds_leading_marker)
    return len(tokens)


async def _sampling_step(ctx: LoadedContext, session: GenerationSession, metrics: TurnMetrics) -> str:
    """Samples one token and returns the text that became decodable with it."""
    if ctx.tracker.is_full:
        return session.finish(StopReason.CONTEXT_FULL)
    if session.limit_reached():
        return session.finish(StopReason.MAX_LENGTH)

    token = await asyncio.to_thread(ctx.backend.sample_next)
    if ctx.backend.is_end_marker(token):
        return session.finish(StopReason.END_MARKER)

    await asyncio.to_thread(ctx.tracker.commit_generated, token)
    session.step_count += 1
    metrics.generated_tokens += 1
    metrics.mark_first_token()

    text = session.accumulator.push(ctx.backend.token_to_bytes(token))
    session.emitted_text += text
    return text


async def run_generation_turn_logic(
    ctx: LoadedContext,
    log: ConversationLog,
    anchor: ContextAnchor,
    config: ModelConfiguration,
    continuing: bool = False,
    on_progress: Optional[ProgressSink] = None,
    on_text_delta: Optional[TextSink] = None,
    cancel_flag: Any = None,
) -> TurnOutcome:
    """
    Runs one turn: window selection and rendering, cache reconciliation and
    prompt ingestion, then token-by-token sampling into the target turn.

    A render failure raises before anything is touched; the anchor only moves
    once the prompt is rendered and tokenized. An ingestion failure removes the
    placeholder turn and raises. A sampling failure keeps any partial reply and
    drops the placeholder only if it is still empty. Cancellation is not an error: the
    turn keeps whatever was generated and the outcome is marked cancelled.
    """
    logger = ctx.logger
    session = GenerationSession(max_new_tokens=config.max_generation_length)
    metrics = TurnMetrics()

    async def report_progress(fraction: Optional[float], label: Optional[str] = PROMPT_PROGRESS_LABEL) -> None:
        if fraction and session.state == TurnState.RECONCILING:
            session.state = TurnState.INGESTING
        if on_progress is not None:
            await maybe_await(on_progress(fraction, label if fraction is not None else None))

    async def emit(target: Turn, text: str) -> None:
        if not text:
            return
        target.append_text(text)
        if on_text_delta is not None:
            await maybe_await(on_text_delta(text))

    # --- building the prompt ---
    session.state = TurnState.BUILDING_PROMPT
    prompt, selection = build_prompt(ctx, log, anchor, config, continuing, commit=False)
    prompt_tokens = await asyncio.to_thread(ctx.backend.tokenize, prompt, ctx.backend.adds_leading_marker)
    anchor.turn_id = selection.anchor_id
    logger.debug(f"[infer] Window starts at turn {selection.start_index} with {len(selection.turns)} turns; prompt is {len(prompt_tokens)} tokens.")

    created_placeholder = False
    if continuing and log.last is not None:
        target = log.last
    else:
        target = log.append(Turn(role=TurnRole.AI, content=""))
        created_placeholder = True

    # --- reconciling and ingesting ---
    session.state = TurnState.RECONCILING
    try:
        report = await reconcile_and_ingest(
            ctx.tracker,
            ctx.scheduler,
            prompt_tokens,
            progress=report_progress,
            should_continue=lambda: not is_cancelled(cancel_flag),
        )
    except Exception:
        session.state = TurnState.FAILED
        if created_placeholder:
            log.remove(target.turn_id)
        raise
    finally:
        await report_progress(None)
    if not report.completed:
        logger.info(f"[infer] Prompt ingestion stopped early at {len(ctx.tracker)}/{report.plan.prompt_length} tokens.")
    metrics.new_prompt_tokens = report.ingested_count
    metrics.prompt_tokens = len(ctx.tracker)

    # --- sampling ---
    session.state = TurnState.SAMPLING
    try:
        while not session.done:
            if is_cancelled(cancel_flag):
                await emit(target, session.finish(StopReason.CANCELLED))
                logger.info(f"[infer] Generation cancelled after {session.step_count} tokens.")
                break
            await emit(target, await _sampling_step(ctx, session, metrics))
    except Exception:
        session.state = TurnState.FAILED
        target.append_text(session.finish(StopReason.ERROR))
        if created_placeholder and not target.content:
            log.remove(target.turn_id)
        logger.error(f"[infer] Token generation failed after {session.step_count} tokens.")
        raise

    session.state = TurnState.CANCELLED if session.stop_reason == StopReason.CANCELLED else TurnState.DONE
    metrics.close()
    summary = metrics.summary()
    logger.info(
        f"[infer] Generation complete ({session.stop_reason.value}): "
        f"ttft={summary['time_to_first_token_sec']}s, prompt={metrics.new_prompt_tokens} new tokens "
        f"@ {summary['prompt_tokens_per_sec']} t/s, generation={metrics.generated_tokens} tokens "
        f"@ {summary['generation_tokens_per_sec']} t/s"
    )

    outcome = TurnOutcome(
        turn_id=target.turn_id,
        text=session.emitted_text,
        stop_reason=session.stop_reason,
        was_cancelled=session.stop_reason == StopReason.CANCELLED,
        was_truncated=session.stop_reason in (StopReason.MAX_LENGTH, StopReason.CONTEXT_FULL),
        new_prompt_tokens=metrics.new_prompt_tokens,
        prompt_tokens=metrics.prompt_tokens,
        generated_tokens=metrics.generated_tokens,
        metrics=summary,
    )
    session.clear()
    return outcome
