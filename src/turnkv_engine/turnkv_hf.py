# Copyright (c) 2025 turnkv
# Author: alexeiv-ai <188820640+alexeiv-ai@users.noreply.github.com>
# AI-Assistance: Portions of this file were drafted using AI coding tools
# (e.g., ChatGPT, Gemini, Codex) under active human design supervision.
# Contact: Please open an issue or discussion on GitHub.
# SPDX-License-Identifier: Apache-2.0
"""turnkv Engine - inference backend over a Hugging Face causal LM and its KV cache."""

import gc
import re
import inspect
import logging
from typing import Any, List, Optional, Sequence, Set

import torch
from transformers import AutoTokenizer
from transformers.models.auto.modeling_auto import AutoModelForCausalLM
from transformers.cache_utils import DynamicCache
from transformers.generation.logits_process import (
    LogitsProcessorList,
    MinPLogitsWarper,
    RepetitionPenaltyLogitsProcessor,
    TemperatureLogitsWarper,
    TopKLogitsWarper,
    TopPLogitsWarper,
)
from transformers.models.gpt2.tokenization_gpt2 import bytes_to_unicode

from .turnkv_config import ModelConfiguration, SamplerSettings
from .turnkv_state import DecodeError, EngineUnavailableError

_BYTE_FALLBACK_RE = re.compile(r"^<0x([0-9A-Fa-f]{2})>$")
_SENTENCEPIECE_SPACE = "▁"


def first_module_device(model: torch.nn.Module) -> torch.device:
    try:
        return next(model.parameters()).device
    except StopIteration:
        return torch.device("cpu")


def _resolve_dtype(name: str) -> Any:
    if name == "auto":
        return "auto"
    return getattr(torch, name)


def _collect_eos_ids(tokenizer: Any, model: Any) -> Set[int]:
    eos_ids: Set[int] = set()
    candidates = [getattr(tokenizer, "eos_token_id", None)]
    generation_config = getattr(model, "generation_config", None)
    if generation_config is not None:
        candidates.append(getattr(generation_config, "eos_token_id", None))
    for candidate in candidates:
        if isinstance(candidate, int):
            eos_ids.add(candidate)
        elif isinstance(candidate, (list, tuple)):
            eos_ids.update(int(c) for c in candidate)
    return eos_ids


class HFBackend:
    """
    Single-sequence engine over `AutoModelForCausalLM` with a `DynamicCache`.

    `invalidate_from` crops the cache; logits are kept only for the last token
    of a batch that asks for output, and sampling consumes them.
    """

    def __init__(self, model: Any, tokenizer: Any, logger: logging.Logger, context_capacity: int,
                 max_batch_size: int = 512, sampler: Optional[SamplerSettings] = None):
        self.model = model
        self.tokenizer = tokenizer
        self.logger = logger
        self._max_batch_size = max(1, max_batch_size)
        self.sampler = sampler or SamplerSettings()

        model_limit = getattr(getattr(model, "config", None), "max_position_embeddings", None)
        if isinstance(model_limit, int) and 0 < model_limit < context_capacity:
            self.logger.warning(f"[hf] Requested context of {context_capacity} tokens exceeds the model limit; using {model_limit}.")
            context_capacity = model_limit
        self._context_capacity = context_capacity

        self.device = first_module_device(model)
        self._eos_ids = _collect_eos_ids(tokenizer, model)
        self._special_ids = set(getattr(tokenizer, "all_special_ids", []) or [])
        self._byte_decoder = {c: b for b, c in bytes_to_unicode().items()}
        self._byte_level = self._detect_byte_level()
        forward_params = inspect.signature(model.forward).parameters
        self._logits_kwarg = next((k for k in ("logits_to_keep", "num_logits_to_keep") if k in forward_params), None)

        self._cache = DynamicCache()
        self._history: List[int] = []
        self._last_logits: Optional[torch.Tensor] = None
        self._generator = torch.Generator(device="cpu")
        if self.sampler.seed:
            self._generator.manual_seed(self.sampler.seed)
        else:
            self._generator.seed()

    @classmethod
    def load(cls, config: ModelConfiguration, logger: logging.Logger) -> "HFBackend":
        """Loads model and tokenizer from `config.model_path`. Blocking; run it off the event loop."""
        if not config.model_path:
            raise EngineUnavailableError("No model path configured.")
        load_kwargs: dict = {"torch_dtype": _resolve_dtype(config.torch_dtype), "trust_remote_code": config.trust_remote_code}
        device_map = config.device_map
        if device_map == "auto" and not torch.cuda.is_available():
            device_map = "cpu"
        if device_map != "cpu":
            load_kwargs["device_map"] = device_map

        logger.info(f"[hf] Loading model '{config.model_path}' (device_map={device_map}, dtype={config.torch_dtype}).")
        try:
            tokenizer = AutoTokenizer.from_pretrained(config.model_path, trust_remote_code=config.trust_remote_code)
            model = AutoModelForCausalLM.from_pretrained(config.model_path, **load_kwargs)
        except (OSError, ValueError) as e:
            raise EngineUnavailableError(f"Failed to load the model from {config.model_path}: {e}") from e
        model.eval()
        return cls(model, tokenizer, logger, context_capacity=config.context_length,
                   max_batch_size=config.max_batch_size, sampler=config.sampler)

    # --- InferenceBackend ---

    @property
    def context_capacity(self) -> int:
        return self._context_capacity

    @property
    def max_batch_size(self) -> int:
        return self._max_batch_size

    @property
    def adds_leading_marker(self) -> bool:
        return getattr(self.tokenizer, "bos_token", None) is not None

    @property
    def sequence_length(self) -> int:
        return len(self._history)

    def tokenize(self, text: str, add_leading_marker: bool) -> List[int]:
        bos = getattr(self.tokenizer, "bos_token", None)
        if add_leading_marker and bos and text.startswith(bos):
            # chat template already wrote the marker
            add_leading_marker = False
        return list(self.tokenizer.encode(text, add_special_tokens=add_leading_marker))

    def decode_batch(self, tokens: Sequence[int], positions: Sequence[int], needs_output: Sequence[bool]) -> None:
        if not tokens:
            return
        start = len(self._history)
        if positions[0] != start or list(positions) != list(range(start, start + len(tokens))):
            raise DecodeError(f"Batch positions {positions[0]}..{positions[-1]} do not continue the cached sequence of {start} tokens.")
        if start + len(tokens) > self._context_capacity:
            raise DecodeError(f"Batch would overflow the context of {self._context_capacity} tokens.")

        want_logits = bool(needs_output[-1])
        input_ids = torch.tensor([list(tokens)], dtype=torch.long, device=self.device)
        cache_position = torch.arange(start, start + len(tokens), dtype=torch.long, device=self.device)
        kwargs = {
            "input_ids": input_ids,
            "past_key_values": self._cache,
            "use_cache": True,
            "cache_position": cache_position,
            "position_ids": cache_position.unsqueeze(0),
        }
        if self._logits_kwarg is not None:
            kwargs[self._logits_kwarg] = 1
        try:
            with torch.inference_mode():
                out = self.model(**kwargs)
        except (RuntimeError, ValueError, IndexError) as e:
            self._cache.crop(start)
            raise DecodeError(f"Model forward pass failed: {e}") from e

        self._cache = out.past_key_values
        self._history.extend(int(t) for t in tokens)
        self._last_logits = out.logits[0, -1].float() if want_logits else None

    def invalidate_from(self, position: int) -> None:
        position = max(0, position)
        if position < len(self._history):
            self._cache.crop(position)
            del self._history[position:]
        self._last_logits = None

    def sample_next(self) -> int:
        if self._last_logits is None:
            raise DecodeError("No output logits are available; the last token must be decoded with output enabled.")
        scores = self._last_logits.unsqueeze(0)
        self._last_logits = None
        settings = self.sampler

        try:
            return self._sample(scores, settings)
        except (RuntimeError, ValueError, IndexError) as e:
            raise DecodeError(f"Sampling failed: {e}") from e

    def _sample(self, scores: torch.Tensor, settings: SamplerSettings) -> int:
        if settings.temperature == 0:
            return int(torch.argmax(scores, dim=-1).item())

        recent = self._history[-settings.repeat_last_n:] if settings.repeat_last_n else []
        input_ids = torch.tensor([recent], dtype=torch.long, device=scores.device)
        processors = LogitsProcessorList()
        if recent and settings.repeat_penalty != 1.0:
            processors.append(RepetitionPenaltyLogitsProcessor(penalty=settings.repeat_penalty))
        if settings.top_k > 0:
            processors.append(TopKLogitsWarper(top_k=settings.top_k))
        if settings.top_p < 1.0:
            processors.append(TopPLogitsWarper(top_p=settings.top_p))
        if settings.min_p > 0:
            processors.append(MinPLogitsWarper(min_p=settings.min_p))
        processors.append(TemperatureLogitsWarper(temperature=settings.temperature))
        scores = processors(input_ids, scores)

        probs = torch.softmax(scores, dim=-1).cpu()
        return int(torch.multinomial(probs[0], num_samples=1, generator=self._generator).item())

    def token_to_bytes(self, token: int) -> bytes:
        try:
            piece = self.tokenizer.convert_ids_to_tokens(int(token))
        except (IndexError, ValueError, OverflowError) as e:
            raise DecodeError(f"Token {token} is not in the vocabulary: {e}") from e
        if piece is None:
            return b""
        if token in self._special_ids:
            return piece.encode("utf-8")
        match = _BYTE_FALLBACK_RE.match(piece)
        if match:
            return bytes([int(match.group(1), 16)])
        if self._byte_level and all(c in self._byte_decoder for c in piece):
            return bytes(self._byte_decoder[c] for c in piece)
        return piece.replace(_SENTENCEPIECE_SPACE, " ").encode("utf-8")

    def is_end_marker(self, token: int) -> bool:
        return int(token) in self._eos_ids

    def unload(self) -> None:
        self._cache = DynamicCache()
        self._history.clear()
        self._last_logits = None
        self.model = None
        gc.collect()
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    # --- helpers ---

    def _detect_byte_level(self) -> bool:
        """GPT-2 style byte-level vocabularies spell a leading space as 'Ġ'."""
        try:
            ids = self.tokenizer.encode(" a", add_special_tokens=False)
            pieces = self.tokenizer.convert_ids_to_tokens(ids) or []
        except (TypeError, ValueError, AttributeError):
            return False
        return any(isinstance(p, str) and p.startswith("Ġ") for p in pieces)
