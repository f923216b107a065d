# Copyright (c) 2025 turnkv
# Author: alexeiv-ai <188820640+alexeiv-ai@users.noreply.github.com>
# AI-Assistance: Portions of this file were drafted using AI coding tools
# (e.g., ChatGPT, Gemini, Codex) under active human design supervision.
# Contact: Please open an issue or discussion on GitHub.
# SPDX-License-Identifier: Apache-2.0
"""Configuration classes for turn generation and the inference backend."""

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, Union
import json

from .turnkv_state import StopReason, ConfigurationError


class TurnRole(str, Enum):
    """Who authored a turn in the conversation."""
    USER = "user"
    AI = "ai"
    SYSTEM = "system"

    @property
    def renderer_role(self) -> str:
        """The role name chat templates expect for this sender."""
        return _RENDERER_ROLES[self]

# Every TurnRole must have an entry here.
_RENDERER_ROLES: Dict[TurnRole, str] = {
    TurnRole.USER: "user",
    TurnRole.AI: "assistant",
    TurnRole.SYSTEM: "system",
}


class SamplerSettings(BaseModel):
    """Token sampling parameters applied by the backend."""
    temperature: float = Field(0.7, ge=0.0)
    top_k: int = Field(40, ge=0)
    top_p: float = Field(0.95, gt=0.0, le=1.0)
    min_p: float = Field(0.05, ge=0.0, le=1.0)
    repeat_penalty: float = Field(1.05, gt=0.0)
    repeat_last_n: int = Field(2048, ge=0)
    seed: int = Field(0, ge=0, description="0 selects a nondeterministic seed.")

    model_config = {
        "extra": "ignore", "validate_assignment": True
    }


class ModelConfiguration(BaseModel):
    """Model, context and generation settings for a chat."""
    model_path: str = Field("", description="Path or Hub ID of the model to load")
    chat_template: Optional[str] = Field(None, description="Chat template override. None uses the model's own template.")
    enable_thinking: bool = Field(True, description="Passed to chat templates that support reasoning toggles.")
    system_message: Optional[str] = None
    context_length: int = Field(4096, description="Capacity of the resident token sequence.")
    max_generation_length: int = Field(0, description="Maximum tokens per reply. 0 means unbounded.")
    reserved_context_buffer: Optional[int] = Field(
        1024,
        description="Tokens kept free for the reply when generation is unbounded; also the runway used when the window slides."
    )
    per_turn_overhead: int = Field(10, description="Pessimistic per-turn allowance for template and role markers.")
    max_batch_size: int = Field(512, description="Largest number of tokens submitted to the engine in one decode call.")
    device_map: str = "auto"
    torch_dtype: str = "auto"
    trust_remote_code: bool = False
    sampler: SamplerSettings = Field(default_factory=SamplerSettings)

    @field_validator('context_length', 'max_batch_size')
    @classmethod
    def check_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"must be a positive integer, got {v}")
        return v

    @field_validator('max_generation_length', 'per_turn_overhead')
    @classmethod
    def check_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"must not be negative, got {v}")
        return v

    @field_validator('reserved_context_buffer')
    @classmethod
    def check_reserved_buffer(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError(f"reserved_context_buffer must not be negative, got {v}")
        return v

    @field_validator('torch_dtype')
    @classmethod
    def check_dtype(cls, v: str) -> str:
        allowed_dtypes = ["auto", "float16", "bfloat16", "float32"]
        if v not in allowed_dtypes:
            raise ValueError(f"Invalid torch_dtype: '{v}'. Must be one of {allowed_dtypes}.")
        return v

    @model_validator(mode='after')
    def check_generation_fits(self) -> 'ModelConfiguration':
        if self.max_generation_length >= self.context_length:
            raise ValueError(
                f"max_generation_length ({self.max_generation_length}) must be smaller than context_length ({self.context_length})."
            )
        return self

    @property
    def generation_reservation(self) -> int:
        """Tokens held back from the prompt for the reply."""
        if self.max_generation_length != 0:
            return self.max_generation_length
        return self.reserved_context_buffer or 0

    model_config = {
        "extra": "ignore", "validate_assignment": True, "protected_namespaces": ()
    }


class TurnOutcome(BaseModel):
    """Result of one generation turn."""
    turn_id: str
    text: str = ""
    stop_reason: StopReason
    was_cancelled: bool = False
    was_truncated: bool = False
    new_prompt_tokens: int = 0
    prompt_tokens: int = 0
    generated_tokens: int = 0
    metrics: Dict[str, Any] = Field(default_factory=dict)


def load_model_configuration(path: Union[str, Path]) -> Optional[ModelConfiguration]:
    """Reads a configuration JSON file. Returns None when the file does not exist."""
    path = Path(path)
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return ModelConfiguration.model_validate(data)
    except (json.JSONDecodeError, ValidationError) as e:
        raise ConfigurationError(f"Invalid configuration file {path}: {e}") from e


def save_model_configuration(config: ModelConfiguration, save_to_path: Union[str, Path]) -> None:
    save_to_path = Path(save_to_path)
    save_to_path.parent.mkdir(parents=True, exist_ok=True)
    with open(save_to_path, "w", encoding="utf-8") as f:
        json.dump(config.model_dump(), f, indent=2)
