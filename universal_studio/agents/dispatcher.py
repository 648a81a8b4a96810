"""TaskDispatcher: turns a free-form request into an ordered list of capability tasks.

The classification itself is delegated to a JSON-mode Gemini call. Its output
is checked only for shape (`{"tasks": [...]}`); anything else degrades to a
single CHAT task so every turn still gets a conversational answer.
"""

from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Any

import httpx
import structlog
from google.genai import errors as genai_errors
from langchain_google_genai.chat_models import ChatGoogleGenerativeAIError
from pydantic import ValidationError

from universal_studio.agents.base import build_chat_llm, extract_llm_content
from universal_studio.core.settings import Settings
from universal_studio.models.capabilities import PREVIOUS_RESULT, Capability, DispatchResponse, RawTask

log = structlog.get_logger(__name__)


# =============================================================================
# Capability Registry
# =============================================================================

@dataclass(frozen=True)
class CapabilityMetadata:
    """Prompt and display metadata for one capability."""
    capability: Capability
    label: str
    description: str
    progress_message: str


class CapabilityRegistry:
    """Capability metadata used to build the classifier prompt and UI labels."""

    def __init__(self) -> None:
        self._entries: dict[Capability, CapabilityMetadata] = {}

    def register(self, metadata: CapabilityMetadata) -> None:
        self._entries[metadata.capability] = metadata

    def get(self, capability: Capability) -> CapabilityMetadata | None:
        return self._entries.get(capability)

    def get_all(self) -> list[CapabilityMetadata]:
        return list(self._entries.values())

    def missing(self) -> set[Capability]:
        """Capabilities without metadata; must be empty for a usable registry."""
        return set(Capability) - set(self._entries)

    def label_for(self, capability: Capability | None) -> str:
        entry = self.get(capability) if capability is not None else None
        return entry.label if entry else "Unknown"

    def progress_message_for(self, capability: Capability | None) -> str:
        entry = self.get(capability) if capability is not None else None
        return entry.progress_message if entry else "Processing..."

    def build_prompt_section(self) -> str:
        lines = ["Available features:"]
        for entry in self.get_all():
            lines.append(f'- "{entry.capability.value}": {entry.description}')
        return "\n".join(lines)


def create_default_registry() -> CapabilityRegistry:
    registry = CapabilityRegistry()
    registry.register(CapabilityMetadata(
        capability=Capability.image_generation,
        label="Image Generation",
        description="For requests to create, generate, or draw an image.",
        progress_message="Creating your image...",
    ))
    registry.register(CapabilityMetadata(
        capability=Capability.image_editing,
        label="Image Editing",
        description=(
            "For requests to edit, change, or modify an existing image. "
            "This is the correct tool if an image has been provided."
        ),
        progress_message="Editing your image...",
    ))
    registry.register(CapabilityMetadata(
        capability=Capability.video_generation,
        label="Video Generation",
        description="For requests to create, generate, or animate a video.",
        progress_message="Generating video... This may take a few minutes.",
    ))
    registry.register(CapabilityMetadata(
        capability=Capability.tts,
        label="Audio",
        description=(
            "For requests to say, speak, narrate, or generate audio. The prompt for this should be "
            f'"{PREVIOUS_RESULT}" if it follows a text-generating task.'
        ),
        progress_message="Generating audio...",
    ))
    registry.register(CapabilityMetadata(
        capability=Capability.search,
        label="Search",
        description="For requests about recent events, facts, or information that requires up-to-date knowledge.",
        progress_message="Searching the web...",
    ))
    registry.register(CapabilityMetadata(
        capability=Capability.chat,
        label="Chat",
        description=(
            "For general conversation, questions, stories, poems, code, "
            "or any request not covered by the other tools."
        ),
        progress_message="Thinking...",
    ))

    missing = registry.missing()
    if missing:
        raise RuntimeError(f"Capabilities without registry metadata: {sorted(c.value for c in missing)}")
    return registry


DISPATCH_PROMPT_TEMPLATE = """You are an intelligent AI assistant that routes user requests to the appropriate tool.
Analyze the user's prompt and determine which of the following tools is most suitable.
You must respond with a JSON object containing an array of 'tasks'. Each task object should have a 'feature' and a 'prompt'.

{available_features}

The user has provided an image: {has_image}.

User Prompt: "{user_prompt}"

Analyze the prompt and return a valid JSON object in the format {{ "tasks": [{{ "feature": "FEATURE_NAME", "prompt": "prompt_for_the_model" }}] }}.
If multiple steps are needed, include multiple task objects in the array. For example, generating a story then reading it aloud would be two tasks: CHAT then TTS.
"""


def _strip_code_fence(raw: str) -> str:
    if raw.startswith("```"):
        parts = raw.split("```")
        if len(parts) >= 2:
            raw = parts[1]
            if raw.startswith("json"):
                raw = raw[4:]
            raw = raw.strip()
    return raw


class TaskDispatcher:
    """Classifies a user request into capability tasks, falling back to CHAT."""

    def __init__(
        self,
        settings: Settings,
        *,
        api_key: str | None = None,
        llm: Any | None = None,
        registry: CapabilityRegistry | None = None,
    ) -> None:
        self._model = settings.DISPATCHER_MODEL
        self._registry = registry or create_default_registry()

        # Without a key there is no classifier; every request degrades to CHAT.
        self._llm = llm
        if self._llm is None and api_key:
            self._llm = build_chat_llm(
                self._model,
                api_key,
                temperature=0.0,
                response_mime_type="application/json",
            )

        self.last_trace: dict[str, Any] | None = None

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    def build_prompt(self, user_text: str, has_attached_image: bool) -> str:
        return DISPATCH_PROMPT_TEMPLATE.format(
            available_features=self._registry.build_prompt_section(),
            has_image=str(has_attached_image).lower(),
            user_prompt=user_text,
        )

    async def classify(self, user_text: str, has_attached_image: bool) -> list[RawTask]:
        """Return the classifier's task list in execution order.

        Individual tasks are passed through untouched; a malformed task fails
        later, when it is executed.
        """
        prompt = self.build_prompt(user_text, has_attached_image)
        raw: str | None = None
        start = time.perf_counter()

        if self._llm is None or not hasattr(self._llm, "ainvoke"):
            return self._fallback(user_text, prompt, raw, reason="no_classifier")

        try:
            resp = await self._llm.ainvoke(prompt)
            raw = _strip_code_fence(extract_llm_content(getattr(resp, "content", None)).strip())
            parsed = DispatchResponse.model_validate_json(raw)
        except ValidationError as e:
            return self._fallback(user_text, prompt, raw, reason=f"invalid_response: {e.error_count()} error(s)")
        except (
            ValueError,
            KeyError,
            IndexError,
            AttributeError,
            TypeError,
            RuntimeError,
            TimeoutError,
            OSError,
            httpx.HTTPError,
            genai_errors.APIError,
            ChatGoogleGenerativeAIError,
        ) as e:
            return self._fallback(user_text, prompt, raw, reason=f"classifier_error: {e}")

        latency_ms = (time.perf_counter() - start) * 1000.0
        self.last_trace = {
            "agent": "task_dispatcher",
            "stage": "classification",
            "model": self._model,
            "prompt": prompt[:500],
            "raw_output": raw,
            "parsed_output": parsed.tasks,
            "latency_ms": latency_ms,
            "degraded": False,
            "reason": None,
        }
        log.info("dispatcher_classified", task_count=len(parsed.tasks), latency_ms=round(latency_ms, 1))
        return parsed.tasks

    def _fallback(self, user_text: str, prompt: str, raw: str | None, *, reason: str) -> list[RawTask]:
        tasks: list[RawTask] = [{"feature": Capability.chat.value, "prompt": user_text}]
        self.last_trace = {
            "agent": "task_dispatcher",
            "stage": "fallback",
            "model": self._model,
            "prompt": prompt[:500],
            "raw_output": raw,
            "parsed_output": tasks,
            "latency_ms": None,
            "degraded": True,
            "reason": reason,
        }
        log.warning("dispatcher_fallback_to_chat", reason=reason, raw_output=(raw or "")[:200])
        return tasks
