# Copyright (c) 2025 turnkv
# Author: alexeiv-ai <188820640+alexeiv-ai@users.noreply.github.com>
# AI-Assistance: Portions of this file were drafted using AI coding tools
# (e.g., ChatGPT, Gemini, Codex) under active human design supervision.
# Contact: Please open an issue or discussion on GitHub.
# SPDX-License-Identifier: Apache-2.0
"""turnkv engine package - incremental context cache manager for chat generation."""

from .turnkv_config import (
    TurnRole, SamplerSettings, ModelConfiguration, TurnOutcome,
    load_model_configuration, save_model_configuration
)
from .turnkv_state import (
    BackendStatus, TurnState, StopReason,
    TurnKVError, ConfigurationError, EngineUnavailableError, RenderError,
    DecodeError, BudgetUnsatisfiableError, BusyError
)
from .turnkv_conversation import Turn, ConversationLog, ContextAnchor, RenderMessage
from .turnkv_backend import (
    InferenceBackend, PromptRenderer, initialize_backend, shutdown_backend, backend_status
)
from .turnkv_cache import ResidentSequenceTracker, ReconcilePlan, common_prefix_length
from .turnkv_ingest import BatchedDecodeScheduler, IngestReport, reconcile_and_ingest
from .turnkv_window import ContextWindowSelector, TokenBudget, WindowSelection
from .turnkv_utils import TextFragmentAccumulator, parse_thinking
from .turnkv_engine import TurnKVEngine
from .turnkv_engine import logger as logger

# The Hugging Face backend and renderer import torch/transformers; they are
# loaded on demand by TurnKVEngine.load_model and not re-exported here.

__all__ = [
    # Config classes
    "TurnRole", "SamplerSettings", "ModelConfiguration", "TurnOutcome",
    "load_model_configuration", "save_model_configuration",

    # State classes
    "BackendStatus", "TurnState", "StopReason",

    # Error classes
    "TurnKVError", "ConfigurationError", "EngineUnavailableError", "RenderError",
    "DecodeError", "BudgetUnsatisfiableError", "BusyError",

    # Conversation
    "Turn", "ConversationLog", "ContextAnchor", "RenderMessage",

    # Backend interfaces and lifecycle
    "InferenceBackend", "PromptRenderer", "initialize_backend", "shutdown_backend", "backend_status",

    # Cache, ingestion and window
    "ResidentSequenceTracker", "ReconcilePlan", "common_prefix_length",
    "BatchedDecodeScheduler", "IngestReport", "reconcile_and_ingest",
    "ContextWindowSelector", "TokenBudget", "WindowSelection",
    "TextFragmentAccumulator", "parse_thinking",

    # Engine class
    "TurnKVEngine", "logger",
]
