# Copyright (c) 2025 turnkv
# Author: alexeiv-ai <188820640+alexeiv-ai@users.noreply.github.com>
# AI-Assistance: Portions of this file were drafted using AI coding tools
# (e.g., ChatGPT, Gemini, Codex) under active human design supervision.
# Contact: Please open an issue or discussion on GitHub.
# SPDX-License-Identifier: Apache-2.0
"""Interfaces the core drives (inference engine, prompt renderer) and process-wide backend lifecycle."""
import gc
import os
import logging
import threading
from typing import List, Optional, Protocol, Sequence, runtime_checkable

from .turnkv_conversation import RenderMessage
from .turnkv_state import BackendStatus

logger = logging.getLogger(__name__)


@runtime_checkable
class InferenceBackend(Protocol):
    """
    A loaded model plus its single-sequence working memory (KV cache).

    Positions are absolute indices into the sequence. `decode_batch` raises
    `DecodeError` on failure and must leave the engine holding exactly the
    tokens it had before the failing call.
    """

    @property
    def context_capacity(self) -> int: ...

    @property
    def max_batch_size(self) -> int: ...

    @property
    def adds_leading_marker(self) -> bool:
        """True if prompts should be tokenized with the model's BOS marker."""
        ...

    def tokenize(self, text: str, add_leading_marker: bool) -> List[int]: ...

    def decode_batch(self, tokens: Sequence[int], positions: Sequence[int], needs_output: Sequence[bool]) -> None: ...

    def invalidate_from(self, position: int) -> None: ...

    def sample_next(self) -> int: ...

    def token_to_bytes(self, token: int) -> bytes: ...

    def is_end_marker(self, token: int) -> bool: ...

    def unload(self) -> None: ...


@runtime_checkable
class PromptRenderer(Protocol):
    """Turns selected messages into prompt text. Raises `RenderError` on failure."""

    def render(
        self,
        messages: Sequence[RenderMessage],
        system_text: Optional[str],
        template: Optional[str],
        continuing: bool,
        enable_thinking: bool = True,
    ) -> str: ...


# --- Module-level backend lifecycle state ---
_BACKEND_STATUS = BackendStatus.OFFLINE
_backend_lock = threading.Lock()


def default_thread_count() -> int:
    """Leaves a couple of cores free, capped at 8."""
    return max(1, min(8, (os.cpu_count() or 1) - 2))


def backend_status() -> BackendStatus:
    return _BACKEND_STATUS


def initialize_backend(num_threads: Optional[int] = None) -> BackendStatus:
    """Process-wide backend setup. Call once at application start; repeated calls are no-ops."""
    global _BACKEND_STATUS
    with _backend_lock:
        if _BACKEND_STATUS == BackendStatus.READY:
            return _BACKEND_STATUS
        import torch
        threads = num_threads or default_thread_count()
        torch.set_num_threads(threads)
        _BACKEND_STATUS = BackendStatus.READY
        logger.info(f"[backend] Initialized (torch {torch.__version__}, {threads} CPU threads, cuda={torch.cuda.is_available()}).")
        return _BACKEND_STATUS


def shutdown_backend() -> BackendStatus:
    """Releases process-wide backend resources. Call once at application exit."""
    global _BACKEND_STATUS
    with _backend_lock:
        if _BACKEND_STATUS != BackendStatus.READY:
            return _BACKEND_STATUS
        import torch
        gc.collect()
        if torch.cuda.is_available():
            torch.cuda.empty_cache()
        _BACKEND_STATUS = BackendStatus.SHUT_DOWN
        logger.info("[backend] Shut down.")
        return _BACKEND_STATUS
