"""Small text helpers around the chat model: prompt improvement and conversation titles."""

from __future__ import annotations

from typing import Any

import structlog

from universal_studio.agents.base import build_chat_llm, extract_llm_content
from universal_studio.core.errors import TransportError
from universal_studio.core.settings import Settings

log = structlog.get_logger(__name__)

IMPROVE_PROMPT_TEMPLATE = (
    "You are a prompt-enhancing AI. Your goal is to take a user's prompt and make it more detailed, "
    "specific, and clear to generate the best possible result from an AI model. Do not fulfill the "
    'prompt, only improve it. Return only the improved prompt. User\'s prompt: "{prompt}"'
)

TITLE_PROMPT_TEMPLATE = (
    "Create a very short, concise title (4-5 words max) for a chat conversation that starts with "
    'this prompt: "{prompt}". Just return the title, nothing else.'
)

DEFAULT_TITLE = "New Chat"


class PromptTools:
    def __init__(self, settings: Settings, *, api_key: str | None = None, llm: Any | None = None) -> None:
        self._settings = settings
        self._api_key = api_key
        self._llm = llm

    def _get_llm(self) -> Any:
        if self._llm is None:
            if not self._api_key:
                raise TransportError("API Key must be set before calling the Gemini API.")
            self._llm = build_chat_llm(self._settings.TITLE_MODEL, self._api_key)
        return self._llm

    async def improve_prompt(self, prompt: str) -> str:
        resp = await self._get_llm().ainvoke(IMPROVE_PROMPT_TEMPLATE.format(prompt=prompt))
        return extract_llm_content(getattr(resp, "content", None)).strip()

    async def generate_chat_title(self, prompt: str) -> str:
        resp = await self._get_llm().ainvoke(TITLE_PROMPT_TEMPLATE.format(prompt=prompt))
        title = extract_llm_content(getattr(resp, "content", None)).strip().replace('"', "")
        return title or DEFAULT_TITLE
