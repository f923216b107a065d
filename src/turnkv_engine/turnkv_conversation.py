# Copyright (c) 2025 turnkv
# Author: alexeiv-ai <188820640+alexeiv-ai@users.noreply.github.com>
# AI-Assistance: Portions of this file were drafted using AI coding tools
# (e.g., ChatGPT, Gemini, Codex) under active human design supervision.
# Contact: Please open an issue or discussion on GitHub.
# SPDX-License-Identifier: Apache-2.0
"""Conversation turns, the ordered log that holds them and the window anchor."""
from __future__ import annotations

import time
import uuid
from typing import Dict, Any, Iterator, List, NamedTuple, Optional

from .turnkv_config import TurnRole
from .turnkv_utils import ParsedContent, parse_thinking


class RenderMessage(NamedTuple):
    """A (role, text) pair handed to the prompt renderer."""
    role: TurnRole
    content: str


class Turn:
    """One role-tagged message. `turn_id` stays the same for the turn's whole lifetime."""

    def __init__(self, role: TurnRole, content: str = "", turn_id: Optional[str] = None, created_at: Optional[float] = None):
        self.role = TurnRole(role)
        self.turn_id = turn_id or uuid.uuid4().hex
        self.created_at = created_at if created_at is not None else time.time()
        self._content = content
        self._parsed: Optional[ParsedContent] = None

    @property
    def content(self) -> str:
        return self._content

    @content.setter
    def content(self, value: str) -> None:
        self._content = value
        self._parsed = None

    @property
    def parsed(self) -> ParsedContent:
        # Parsed on read; streaming appends only invalidate it.
        if self._parsed is None:
            self._parsed = parse_thinking(self._content)
        return self._parsed

    @property
    def response_text(self) -> str:
        """Content with any reasoning block removed."""
        return self.parsed.response

    @property
    def thinking_text(self) -> Optional[str]:
        return self.parsed.thinking

    def append_text(self, text: str) -> None:
        if text:
            self.content = self._content + text

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.turn_id, "role": self.role.value, "content": self._content, "created_at": self.created_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Turn":
        return cls(role=TurnRole(data["role"]), content=data.get("content", ""),
                   turn_id=data.get("id"), created_at=data.get("created_at"))

    def __repr__(self) -> str:
        preview = self._content[:24].replace("\n", " ")
        return f"Turn(role={self.role.value}, id={self.turn_id[:8]}, content={preview!r})"


class ConversationLog:
    """Insertion-ordered list of turns."""

    def __init__(self, turns: Optional[List[Turn]] = None):
        self._turns: List[Turn] = list(turns or [])

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(self._turns)

    def __getitem__(self, index):
        return self._turns[index]

    @property
    def last(self) -> Optional[Turn]:
        return self._turns[-1] if self._turns else None

    def append(self, turn: Turn) -> Turn:
        self._turns.append(turn)
        return turn

    def add(self, role: TurnRole, content: str) -> Turn:
        return self.append(Turn(role=role, content=content))

    def index_of(self, turn_id: Optional[str]) -> Optional[int]:
        if turn_id is None:
            return None
        for i, turn in enumerate(self._turns):
            if turn.turn_id == turn_id:
                return i
        return None

    def get(self, turn_id: str) -> Optional[Turn]:
        index = self.index_of(turn_id)
        return None if index is None else self._turns[index]

    def remove(self, turn_id: str) -> bool:
        index = self.index_of(turn_id)
        if index is None:
            return False
        del self._turns[index]
        return True

    def purge_from(self, turn_id: str) -> int:
        """Removes the turn and everything after it. Returns the number of turns removed."""
        index = self.index_of(turn_id)
        if index is None:
            return 0
        removed = len(self._turns) - index
        del self._turns[index:]
        return removed

    def clear(self) -> None:
        self._turns.clear()

    def to_list(self) -> List[Dict[str, Any]]:
        return [t.to_dict() for t in self._turns]

    @classmethod
    def from_list(cls, items: List[Dict[str, Any]]) -> "ConversationLog":
        return cls([Turn.from_dict(item) for item in items])


class ContextAnchor:
    """
    Identity reference to the first turn eligible for the prompt window.
    Never holds the turn itself: it is resolved by id against the log, and a
    missing turn simply clears it.
    """

    def __init__(self, turn_id: Optional[str] = None):
        self.turn_id = turn_id

    @property
    def is_set(self) -> bool:
        return self.turn_id is not None

    def set(self, turn: Optional[Turn]) -> None:
        self.turn_id = turn.turn_id if turn is not None else None

    def clear(self) -> None:
        self.turn_id = None

    def resolve(self, log: ConversationLog) -> Optional[int]:
        """Index of the anchored turn in `log`, clearing the anchor if it no longer exists."""
        if self.turn_id is None:
            return None
        index = log.index_of(self.turn_id)
        if index is None:
            self.turn_id = None
        return index

    def __repr__(self) -> str:
        return f"ContextAnchor({self.turn_id!r})"
