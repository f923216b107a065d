# Copyright (c) 2025 turnkv
# Author: alexeiv-ai <188820640+alexeiv-ai@users.noreply.github.com>
# AI-Assistance: Portions of this file were drafted using AI coding tools
# (e.g., ChatGPT, Gemini, Codex) under active human design supervision.
# Contact: Please open an issue or discussion on GitHub.
# SPDX-License-Identifier: Apache-2.0
"""turnkv Engine - incremental context cache manager for chat generation."""

import logging
# Create a global logger for the engine module
logger = logging.getLogger(__name__)

import asyncio, contextvars, functools, inspect, threading

# --- Context-aware Logging Support ---
instance_id_var = contextvars.ContextVar('instance_id', default='system')
_LOGGER_RECONFIGURED = False
_logger_lock = threading.Lock()

class InstanceIdFilter(logging.Filter):
    """A logging filter that injects the instance_id from a context variable."""
    def filter(self, record):
        record.instance_id = instance_id_var.get()
        return True

def set_log_context(func):
    """A decorator to set the instance_id in the logging context for the duration of an async method."""
    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        token = instance_id_var.set(self.instance_id)
        try:
            return await func(self, *args, **kwargs)
        finally:
            instance_id_var.reset(token)
    return wrapper

class EngineLogContextMeta(type):
    """Metaclass to automatically apply the set_log_context decorator to public async methods."""
    def __new__(cls, name, bases, dct):
        for attr_name, attr_value in dct.items():
            if not attr_name.startswith('_') and inspect.iscoroutinefunction(attr_value):
                dct[attr_name] = set_log_context(attr_value)
        return super().__new__(cls, name, bases, dct)
# --- End Context-aware Logging Support ---

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from .turnkv_backend import InferenceBackend, PromptRenderer
from .turnkv_cache import ResidentSequenceTracker
from .turnkv_config import ModelConfiguration, TurnOutcome
from .turnkv_conversation import ContextAnchor, ConversationLog
from .turnkv_infer import (
    LoadedContext, ProgressSink, TextSink, estimate_prompt_token_count_logic, run_generation_turn_logic
)
from .turnkv_ingest import BatchedDecodeScheduler
from .turnkv_state import EngineUnavailableError


def configure_instance_logging(instance_id_width: int = 10) -> None:
    """One-time logger reconfiguration so every engine record carries its instance id."""
    global _LOGGER_RECONFIGURED
    with _logger_lock:
        if _LOGGER_RECONFIGURED:
            return
        formatter = logging.Formatter(f'%(asctime)s [%(levelname)s] [%(instance_id)-{instance_id_width}s] %(message)s')
        package_logger = logging.getLogger(__package__)
        package_logger.addFilter(InstanceIdFilter())
        if not package_logger.handlers:
            handler = logging.StreamHandler()
            handler.addFilter(InstanceIdFilter())
            handler.setFormatter(formatter)
            package_logger.addHandler(handler)
            package_logger.propagate = False
        else:
            for handler in package_logger.handlers:
                handler.addFilter(InstanceIdFilter())
                handler.setFormatter(formatter)
        _LOGGER_RECONFIGURED = True


class TurnKVEngine(metaclass=EngineLogContextMeta):
    """
    Owns one loaded model and its resident token sequence.

    All operations that touch the engine's memory (generation, unload,
    conversation switch) are serialized through a single lock, so only one
    turn ever runs against the resident sequence at a time.
    """

    def __init__(self, instance_id: str = "default", log_with_instance_id: bool = False):
        self.instance_id = instance_id
        self.logger = logger
        self._lock = asyncio.Lock()
        self._ctx: Optional[LoadedContext] = None
        self.config: Optional[ModelConfiguration] = None
        self.active_conversation_id: Optional[str] = None
        # Window anchors for callers that do not keep their own, keyed by conversation id.
        self._anchors: Dict[Optional[str], ContextAnchor] = {}
        if log_with_instance_id:
            configure_instance_logging()

    @property
    def is_loaded(self) -> bool:
        return self._ctx is not None

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    @property
    def context_capacity(self) -> Optional[int]:
        return self._ctx.backend.context_capacity if self._ctx else None

    @property
    def resident_token_count(self) -> int:
        return len(self._ctx.tracker) if self._ctx else 0

    @property
    def resident_tokens(self) -> tuple:
        return self._ctx.tracker.tokens if self._ctx else ()

    def conversation_anchor(self, conversation_id: Optional[str] = None) -> ContextAnchor:
        """The anchor used for `conversation_id` (default: the active one) when a turn is run without one."""
        key = self.active_conversation_id if conversation_id is None else conversation_id
        return self._anchors.setdefault(key, ContextAnchor())

    @asynccontextmanager
    async def _exclusive(self) -> AsyncIterator[LoadedContext]:
        async with self._lock:
            if self._ctx is None:
                raise EngineUnavailableError()
            yield self._ctx

    def _bind(self, backend: InferenceBackend, renderer: PromptRenderer, config: ModelConfiguration) -> None:
        tracker = ResidentSequenceTracker(backend, self.logger)
        scheduler = BatchedDecodeScheduler(backend, tracker, self.logger, max_batch_size=config.max_batch_size)
        self._ctx = LoadedContext(backend=backend, renderer=renderer, tracker=tracker, scheduler=scheduler, logger=self.logger)
        self.config = config

    async def attach(self, backend: InferenceBackend, renderer: PromptRenderer, config: ModelConfiguration) -> None:
        """Uses an already constructed backend and renderer, replacing any loaded model."""
        async with self._lock:
            self._release_unlocked()
            self._bind(backend, renderer, config)
            self.logger.info(f"[engine] Attached backend {type(backend).__name__} (context {backend.context_capacity}, batch {backend.max_batch_size}).")

    async def load_model(self, config: ModelConfiguration) -> None:
        """Unloads the current model, then loads the one named by `config.model_path`."""
        from .turnkv_hf import HFBackend
        from .turnkv_render import ChatTemplateRenderer

        async with self._lock:
            self._release_unlocked()
            backend = await asyncio.to_thread(HFBackend.load, config, self.logger)
            self._bind(backend, ChatTemplateRenderer(backend.tokenizer, self.logger), config)
            self.logger.info(f"[engine] Model loading complete (context {backend.context_capacity} tokens).")

    async def unload_model(self) -> None:
        async with self._lock:
            self._release_unlocked()

    def _release_unlocked(self) -> None:
        if self._ctx is None:
            return
        self._ctx.backend.unload()
        self._ctx = None
        self.logger.info("[engine] Model unloaded.")

    async def switch_conversation(self, conversation_id: Optional[str]) -> None:
        """Discards the resident sequence and the entered conversation's engine-held anchor."""
        async with self._lock:
            if self._ctx is not None:
                self._ctx.tracker.discard()
            self.active_conversation_id = conversation_id
            self._anchors.pop(conversation_id, None)
            self.logger.debug(f"[engine] Active conversation is now {conversation_id}.")

    async def run_generation_turn(
        self,
        log: ConversationLog,
        config: Optional[ModelConfiguration] = None,
        anchor: Optional[ContextAnchor] = None,
        continuing: bool = False,
        on_progress: Optional[ProgressSink] = None,
        on_text_delta: Optional[TextSink] = None,
        cancel_flag: Any = None,
    ) -> TurnOutcome:
        """Generates (or continues) the assistant reply at the end of `log`."""
        async with self._exclusive() as ctx:
            effective = config or self.config
            return await run_generation_turn_logic(
                ctx, log, anchor if anchor is not None else self.conversation_anchor(), effective,
                continuing=continuing, on_progress=on_progress, on_text_delta=on_text_delta, cancel_flag=cancel_flag,
            )

    async def estimate_prompt_token_count(self, log: ConversationLog, config: Optional[ModelConfiguration] = None,
                                          anchor: Optional[ContextAnchor] = None) -> int:
        """Token count of the prompt the next turn would use. Read-only: takes no lock and keeps the anchor."""
        effective = config or self.config
        if effective is None:
            effective = ModelConfiguration()
        return await estimate_prompt_token_count_logic(
            self._ctx, log, anchor if anchor is not None else self.conversation_anchor(), effective, self.logger
        )
