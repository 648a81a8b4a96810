"""Shared helpers for the LangChain-backed text agents."""

from __future__ import annotations

from typing import Any

from langchain_google_genai import ChatGoogleGenerativeAI


def extract_llm_content(content: Any) -> str:
    """Extract text content from a LangChain message payload.

    Gemini 3 models return content as a list of blocks:
    [{'type': 'text', 'text': 'Hello', 'extras': {...}}]

    Older models return a simple string.
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                texts.append(block.get("text", ""))
            elif isinstance(block, str):
                texts.append(block)
        return "\n".join(texts)
    return ""


def build_chat_llm(model: str, api_key: str, *, temperature: float | None = None, **kwargs: Any) -> ChatGoogleGenerativeAI:
    """Create a Gemini chat model.

    Gemini 3 models are left at the vendor default temperature (1.0).
    """
    if temperature is None:
        temperature = 1.0 if model.startswith("gemini-3") else 0.3
    return ChatGoogleGenerativeAI(
        model=model,
        google_api_key=api_key,
        temperature=temperature,
        **kwargs,
    )
