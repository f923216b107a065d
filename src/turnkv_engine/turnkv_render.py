# Copyright (c) 2025 turnkv
# Author: alexeiv-ai <188820640+alexeiv-ai@users.noreply.github.com>
# AI-Assistance: Portions of this file were drafted using AI coding tools
# (e.g., ChatGPT, Gemini, Codex) under active human design supervision.
# Contact: Please open an issue or discussion on GitHub.
# SPDX-License-Identifier: Apache-2.0
"""Prompt rendering through the tokenizer's chat template."""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from .turnkv_config import TurnRole
from .turnkv_conversation import RenderMessage
from .turnkv_state import RenderError


class ChatTemplateRenderer:
    """
    Renders messages with a Hugging Face tokenizer's chat template.
    `template` overrides the tokenizer's own template for one call; without
    any template a plain `<|role|>` format is used.
    """

    def __init__(self, tokenizer: Any, logger: logging.Logger):
        self.tokenizer = tokenizer
        self.logger = logger

    @staticmethod
    def _to_chat_messages(messages: Sequence[RenderMessage], system_text: Optional[str]) -> List[Dict[str, str]]:
        chat: List[Dict[str, str]] = []
        if system_text:
            chat.append({"role": TurnRole.SYSTEM.renderer_role, "content": system_text})
        for message in messages:
            chat.append({"role": TurnRole(message.role).renderer_role, "content": message.content})
        return chat

    def render(
        self,
        messages: Sequence[RenderMessage],
        system_text: Optional[str],
        template: Optional[str],
        continuing: bool,
        enable_thinking: bool = True,
    ) -> str:
        chat = self._to_chat_messages(messages, system_text)
        has_template = bool(template) or bool(getattr(self.tokenizer, "chat_template", None))

        if has_template and hasattr(self.tokenizer, "apply_chat_template"):
            try:
                prompt = self.tokenizer.apply_chat_template(
                    chat,
                    tokenize=False,
                    add_generation_prompt=not continuing,
                    chat_template=template,
                    enable_thinking=enable_thinking,
                    **template_date_context(),
                )
                prompt = str(prompt)
            except Exception as e:
                raise RenderError(f"Failed to apply the chat template: {e}") from e
        else:
            prompt = format_plain_prompt(chat, add_generation_prompt=not continuing)

        # Templates may close the final message with an end-of-turn marker,
        # which would stop a continuation immediately. Cut after its content.
        if continuing and messages:
            last_content = messages[-1].content
            cut = prompt.rfind(last_content) if last_content else -1
            if cut >= 0:
                prompt = prompt[:cut + len(last_content)]

        if not prompt:
            raise RenderError("The chat template produced an empty prompt.")
        self.logger.debug(f"[render] PROMPT------>\n{prompt}\n<----END PROMPT")
        return prompt


def template_date_context(now: Optional[datetime] = None) -> Dict[str, str]:
    """`today`, `yesterday` and `now` variables for chat templates that mention the date."""
    now = now or datetime.now().astimezone()
    yesterday = now - timedelta(days=1)
    return {
        "today": f"{now:%B} {now.day}, {now.year}",
        "yesterday": f"{yesterday:%B} {yesterday.day}, {yesterday.year}",
        "now": now.isoformat(timespec="seconds"),
    }


def format_plain_prompt(chat: Sequence[Dict[str, str]], add_generation_prompt: bool) -> str:
    """Fallback format for models that ship without a chat template."""
    parts = [f"<|{message['role']}|>\n{message['content']}\n" for message in chat]
    prompt = "\n".join(parts)
    if add_generation_prompt:
        prompt += f"<|{TurnRole.AI.renderer_role}|>\n"
    return prompt
