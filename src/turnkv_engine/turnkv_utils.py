# Copyright (c) 2025 turnkv
# Author: alexeiv-ai <188820640+alexeiv-ai@users.noreply.github.com>
# AI-Assistance: Portions of this file were drafted using AI coding tools
# (e.g., ChatGPT, Gemini, Codex) under active human design supervision.
# Contact: Please open an issue or discussion on GitHub.
# SPDX-License-Identifier: Apache-2.0
"""Utility functions for the turnkv engine."""
import re
from dataclasses import dataclass
from typing import Any, Optional

THINK_OPEN_TAG = "<think>"
_COMPLETE_THINK_RE = re.compile(r"<think>([\s\S]*?)</think>")
_OPEN_THINK_RE = re.compile(r"<think>([\s\S]*)$")

# Rough chars-per-token ratio for English text, used only when no tokenizer is loaded.
FALLBACK_CHARS_PER_TOKEN = 4


def round_floats(obj: Any, precision: int = 2) -> Any:
    """Recursively rounds float values in a nested data structure (dict, list)."""
    if isinstance(obj, float):
        return round(obj, precision)
    if isinstance(obj, dict):
        return {k: round_floats(v, precision) for k, v in obj.items()}
    if isinstance(obj, list):
        return [round_floats(i, precision) for i in obj]
    return obj


def estimate_tokens_fallback(text: str) -> int:
    """Last-resort token estimate for when no tokenizer is available. Not accurate."""
    return max(1, len(text) // FALLBACK_CHARS_PER_TOKEN)


@dataclass(frozen=True)
class ParsedContent:
    """Message content split into its reasoning block and the visible response."""
    thinking: Optional[str]
    response: str


def parse_thinking(content: str) -> ParsedContent:
    """
    Splits `<think>...</think>` reasoning out of a message.
    An opening tag without a closing tag means the model is still thinking:
    everything after it is reasoning and the response is empty.
    """
    if THINK_OPEN_TAG not in content:
        return ParsedContent(thinking=None, response=content)

    match = _COMPLETE_THINK_RE.search(content)
    if match:
        thinking = match.group(1).strip()
        response = _COMPLETE_THINK_RE.sub("", content).strip()
        return ParsedContent(thinking=thinking or None, response=response)

    match = _OPEN_THINK_RE.search(content)
    thinking = match.group(1).strip() if match else ""
    return ParsedContent(thinking=thinking or None, response="")


class TextFragmentAccumulator:
    """
    Assembles text from per-token byte fragments.

    A token can end in the middle of a multi-byte UTF-8 character, so fragments
    are buffered and only the longest decodable prefix is returned. An incomplete
    sequence at the end of the buffer is kept for the next fragment. Bytes that
    can never become valid (a bad start or continuation byte) are replaced
    with U+FFFD so they don't block the stream.
    """
    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending_bytes(self) -> bytes:
        return bytes(self._buffer)

    def push(self, fragment: bytes) -> str:
        self._buffer.extend(fragment)
        out = []
        while self._buffer:
            try:
                out.append(self._buffer.decode("utf-8"))
                self._buffer.clear()
            except UnicodeDecodeError as exc:
                out.append(self._buffer[:exc.start].decode("utf-8"))
                if exc.reason == "unexpected end of data" and exc.end >= len(self._buffer):
                    # incomplete tail, may complete on the next fragment
                    del self._buffer[:exc.start]
                    break
                out.append("\ufffd")
                del self._buffer[:exc.end]
        return "".join(out)

    def flush(self) -> str:
        """Returns whatever is still buffered, replacing undecodable bytes."""
        text = self._buffer.decode("utf-8", errors="replace")
        self._buffer.clear()
        return text

    def reset(self) -> None:
        self._buffer.clear()
