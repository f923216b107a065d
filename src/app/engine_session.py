# Copyright (c) 2025 turnkv
# Author: alexeiv-ai <188820640+alexeiv-ai@users.noreply.github.com>
# AI-Assistance: Portions of this file were drafted using AI coding tools
# (e.g., ChatGPT, Gemini, Codex) under active human design supervision.
# Contact: Please open an issue or discussion on GitHub.
# SPDX-License-Identifier: MIT
from __future__ import annotations
import time
import json
import uuid
import asyncio
import functools
import threading
from pathlib import Path
from typing import List, Dict, Any, Optional, Union

from turnkv_engine import logger
from turnkv_engine.turnkv_config import ModelConfiguration, TurnOutcome, TurnRole
from turnkv_engine.turnkv_conversation import ContextAnchor, ConversationLog, Turn
from turnkv_engine.turnkv_engine import TurnKVEngine
from turnkv_engine.turnkv_state import BudgetUnsatisfiableError, BusyError


class Colors:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    CYAN = "\033[36m"
    BRIGHT_BLACK = "\033[90m"  # Grey

    YOU_HEADER = f"{BOLD}{GREEN}"
    LLM_HEADER = f"{YELLOW}"
    LLM_CONTENT = f"{BOLD}{YELLOW}"
    THINKING = f"{DIM}{CYAN}"
    SYSTEM = f"{CYAN}"
    METRICS = f"{DIM}{BRIGHT_BLACK}"
    ERROR = f"{BOLD}{RED}"


class ChatSession:
    """A single conversation: its log, its window anchor and its last known prompt size."""
    def __init__(self,
                 id: Optional[str] = None,
                 title: Optional[str] = None,
                 system_message: Optional[str] = None,
                 log: Optional[ConversationLog] = None,
                 anchor_turn_id: Optional[str] = None,
                 created_at: Optional[float] = None,
                 updated_at: Optional[float] = None):
        self.id: str = id or str(uuid.uuid4())
        self.title: str = title or ""
        self.system_message: Optional[str] = system_message
        self.log: ConversationLog = log or ConversationLog()
        self.anchor: ContextAnchor = ContextAnchor(anchor_turn_id)
        self.created_at: float = created_at if created_at is not None else time.time()
        self.updated_at: float = updated_at if updated_at is not None else self.created_at
        # Updated by EngineSession after every edit, switch and generation.
        self.prompt_token_count: Optional[int] = None
        self.last_outcome: Optional[TurnOutcome] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "system_message": self.system_message,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "anchor_turn_id": self.anchor.turn_id,
            "turns": self.log.to_list(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatSession":
        log = ConversationLog.from_list(data.get("turns", []))
        session = cls(
            id=data.get("id"),
            title=data.get("title"),
            system_message=data.get("system_message"),
            log=log,
            anchor_turn_id=data.get("anchor_turn_id"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
        session.anchor.resolve(log)
        return session


def _with_lock(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)
    return wrapper


class EngineSession:
    """
    Holds several conversations and drives the engine for the active one.

    Structural changes (adding, removing, selecting conversations) are guarded
    by a reentrant lock. Anything that changes what the next prompt would be
    (an edit, a switch, a finished turn) is followed by a prompt token recount.
    Switching conversations discards the engine's resident sequence and clears
    the anchor of the conversation being entered.
    """
    def __init__(self, engine: TurnKVEngine, config: Optional[ModelConfiguration] = None,
                 name: str = f"untitled_{int(time.time())}"):
        self.id = str(uuid.uuid4())
        self.name = name
        self.engine = engine
        self.config: ModelConfiguration = config or ModelConfiguration()
        self.conversations: List[ChatSession] = []
        self.active_index: Optional[int] = None
        self.creation_timestamp: float = time.time()
        self._lock = threading.RLock()

    # --- conversations ---

    @property
    def active(self) -> Optional[ChatSession]:
        if self.active_index is None:
            return None
        return self.conversations[self.active_index]

    def _require_active(self) -> ChatSession:
        chat = self.active
        if chat is None:
            raise IndexError("No conversation is selected.")
        return chat

    @_with_lock
    def get_conversations_count(self) -> int:
        return len(self.conversations)

    @_with_lock
    def get_conversation(self, index: int) -> ChatSession:
        if 0 <= index < len(self.conversations):
            return self.conversations[index]
        raise IndexError("Conversation index out of range.")

    @_with_lock
    def add_conversation(self, title: Optional[str] = None, system_message: Optional[str] = None) -> ChatSession:
        """Creates a conversation. It is not selected; call `select_conversation`."""
        chat = ChatSession(title=title, system_message=system_message if system_message is not None else self.config.system_message)
        self.conversations.append(chat)
        return chat

    @_with_lock
    def rename_conversation(self, index: int, title: str) -> ChatSession:
        chat = self.get_conversation(index)
        chat.title = title
        chat.updated_at = time.time()
        return chat

    @_with_lock
    def touch_conversation(self, index: int) -> int:
        """Moves conversation `index` to the front of the list, most recent first. Returns its new index."""
        chat = self.get_conversation(index)
        del self.conversations[index]
        self.conversations.insert(0, chat)
        chat.updated_at = time.time()
        if self.active_index == index:
            self.active_index = 0
        elif self.active_index is not None and self.active_index < index:
            self.active_index += 1
        return 0

    async def select_conversation(self, index: int) -> ChatSession:
        """Makes conversation `index` active. Changing conversations discards the resident sequence."""
        chat = self.get_conversation(index)
        if index != self.active_index:
            if self.engine.is_busy:
                raise BusyError("Cannot switch conversations while a turn is being generated.")
            await self.engine.switch_conversation(chat.id)
            chat.anchor.clear()
            with self._lock:
                self.active_index = index
            logger.info(f"[session] Switched to conversation '{chat.title or chat.id}'.")
        await self.recount_prompt_tokens()
        return chat

    async def remove_conversation(self, index: int) -> None:
        with self._lock:
            chat = self.get_conversation(index)
            was_active = index == self.active_index
            del self.conversations[index]
            if self.active_index is not None and index < self.active_index:
                self.active_index -= 1
            elif was_active:
                self.active_index = None
        if was_active:
            await self.engine.switch_conversation(None)
            if self.conversations:
                await self.select_conversation(min(index, len(self.conversations) - 1))
        logger.debug(f"[session] Removed conversation {chat.id}.")

    # --- turns ---

    def add_user(self, content: str) -> Turn:
        return self._require_active().log.add(TurnRole.USER, content)

    async def remove_turn(self, turn_id: str) -> bool:
        chat = self._require_active()
        removed = chat.log.remove(turn_id)
        if removed:
            chat.anchor.resolve(chat.log)
            await self.recount_prompt_tokens()
        return removed

    async def purge_from(self, turn_id: str) -> int:
        """Removes the turn and every later turn from the active conversation."""
        chat = self._require_active()
        removed = chat.log.purge_from(turn_id)
        if removed:
            chat.anchor.resolve(chat.log)
            await self.recount_prompt_tokens()
        return removed

    async def clear_all(self) -> None:
        chat = self._require_active()
        chat.log.clear()
        chat.anchor.clear()
        await self.recount_prompt_tokens()

    # --- engine ---

    def effective_config(self, chat: Optional[ChatSession] = None) -> ModelConfiguration:
        chat = chat or self.active
        if chat is None or chat.system_message == self.config.system_message:
            return self.config
        return self.config.model_copy(update={"system_message": chat.system_message})

    async def load_model(self, config: Optional[ModelConfiguration] = None) -> None:
        if config is not None:
            self.config = config
        await self.engine.load_model(self.config)
        await self.recount_prompt_tokens()

    async def recount_prompt_tokens(self) -> Optional[int]:
        """Refreshes the active conversation's prompt size. Does not move its anchor."""
        chat = self.active
        if chat is None:
            return None
        try:
            chat.prompt_token_count = await self.engine.estimate_prompt_token_count(
                chat.log, self.effective_config(chat), chat.anchor
            )
        except BudgetUnsatisfiableError as e:
            chat.prompt_token_count = e.required
        return chat.prompt_token_count

    async def generate(self, continuing: bool = False, on_progress=None, on_text_delta=None, cancel_flag=None) -> TurnOutcome:
        """Runs one assistant turn in the active conversation."""
        chat = self._require_active()
        outcome = await self.engine.run_generation_turn(
            chat.log,
            self.effective_config(chat),
            anchor=chat.anchor,
            continuing=continuing,
            on_progress=on_progress,
            on_text_delta=on_text_delta,
            cancel_flag=cancel_flag,
        )
        chat.last_outcome = outcome
        with self._lock:
            if chat in self.conversations:
                self.touch_conversation(self.conversations.index(chat))
        await self.recount_prompt_tokens()
        return outcome

    # --- persistence ---

    @_with_lock
    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "creation_timestamp": self.creation_timestamp,
            "active_index": self.active_index,
            "conversations": [c.to_dict() for c in self.conversations],
        }

    def serialize(self, file_path: Optional[Union[str, Path]] = None) -> Optional[str]:
        """
        Serializes the session.
        - If file_path is provided, writes to the file and returns None.
        - If file_path is None, returns the session as a JSON string.
        """
        data = self.to_dict()
        if file_path:
            with open(file_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            return None
        return json.dumps(data, indent=2)

    async def async_serialize(self, file_path: Optional[Union[str, Path]] = None) -> Optional[str]:
        return await asyncio.to_thread(self.serialize, file_path)

    @classmethod
    def deserialize(cls, source: Union[str, Path], engine: TurnKVEngine,
                    config: Optional[ModelConfiguration] = None) -> "EngineSession":
        """Loads a session from a JSON file path or a JSON string. The engine's resident sequence is not restored."""
        if isinstance(source, str) and source.strip().startswith('{'):
            try:
                data = json.loads(source)
            except json.JSONDecodeError as e:
                raise ValueError("The provided string is not valid JSON.") from e
        else:
            with open(source, "r", encoding="utf-8") as f:
                data = json.load(f)

        session = cls(engine, config=config, name=data.get("name", f"loaded_{int(time.time())}"))
        session.id = data.get("id", session.id)
        session.creation_timestamp = data.get("creation_timestamp", session.creation_timestamp)
        session.conversations = [ChatSession.from_dict(c) for c in data.get("conversations", [])]
        active_index = data.get("active_index")
        if isinstance(active_index, int) and 0 <= active_index < len(session.conversations):
            session.active_index = active_index
        return session
