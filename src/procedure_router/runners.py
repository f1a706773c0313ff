from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from langchain_core.messages import HumanMessage, SystemMessage

from .llm import get_chat_model
from .models import RequestClassification, WorkflowDefinition
from .prompts import (
    CLASSIFICATION_SYSTEM_PROMPT,
    CLASSIFICATION_VOCABULARY,
    build_selection_system_prompt,
    classification_request,
    selection_request,
)
from .settings import RouterSettings

logger = logging.getLogger(__name__)

_STRIP_CHARS = " \t\r\n\"'`.*"


class RoutingRunnerError(RuntimeError):
    """Raised when a routing call times out, fails in transport, or answers off-vocabulary."""


@runtime_checkable
class RoutingRunner(Protocol):
    """Capability interface for the agent runner used during selection."""

    async def classify(self, request_text: str, timeout: float) -> RequestClassification: ...

    async def select_direct(
        self,
        request_text: str,
        candidates: Sequence[WorkflowDefinition],
        valid_names: Sequence[str],
        timeout: float,
    ) -> str: ...


def _content_to_text(content: Any) -> str:
    """Recursively extract plain text from heterogeneous chat-model content."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
            elif isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    chunks.append(text_value)
                elif item.get("content") is not None:
                    chunks.append(_content_to_text(item["content"]))
                else:
                    chunks.append(json.dumps(item, sort_keys=True))
            else:
                chunks.append(str(item))
        return "".join(chunks)
    return "" if content is None else str(content)


def extract_agent_text(response: Any) -> str:
    """Extract the final text content from a chat-model response.

    Args:
        response: Raw response (message object, dict with messages/output/content, or str).

    Returns:
        Extracted text string.
    """
    if isinstance(response, str):
        return response
    if isinstance(response, dict):
        if isinstance(response.get("messages"), list) and response["messages"]:
            return extract_agent_text(response["messages"][-1])
        if "output" in response:
            return extract_agent_text(response["output"])
        if "content" in response:
            return _content_to_text(response["content"])
    content = getattr(response, "content", None)
    if content is not None:
        return _content_to_text(content)
    return _content_to_text(response)


def normalize_reply(text: str, vocabulary: Sequence[str]) -> str:
    """Map a single-token reply onto ``vocabulary``.

    Matching ignores case, surrounding quotes and markdown emphasis.

    Raises:
        RoutingRunnerError: If the reply is empty or not in the vocabulary.
    """
    candidate = text.strip().strip(_STRIP_CHARS).lower()
    if not candidate:
        raise RoutingRunnerError("Runner returned an empty reply")
    lookup = {name.lower(): name for name in vocabulary}
    if candidate in lookup:
        return lookup[candidate]
    first_line = candidate.splitlines()[0].strip(_STRIP_CHARS)
    if first_line in lookup:
        return lookup[first_line]
    raise RoutingRunnerError(f"Runner reply {text.strip()[:80]!r} is not one of: {', '.join(vocabulary)}")


class ChatModelRoutingRunner:
    """Routing runner over any LangChain chat model exposing ``ainvoke``."""

    runner_kind = "chat"

    def __init__(self, model: Any) -> None:
        self.model = model

    async def _ask(self, system_prompt: str, user_prompt: str, timeout: float) -> str:
        messages = [SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)]
        try:
            response = await asyncio.wait_for(self.model.ainvoke(messages), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise RoutingRunnerError(f"{self.runner_kind} runner timed out after {timeout}s") from exc
        except Exception as exc:  # noqa: BLE001 - transport errors surface as runner failures
            raise RoutingRunnerError(f"{self.runner_kind} runner failed: {exc}") from exc
        return extract_agent_text(response)

    async def classify(self, request_text: str, timeout: float) -> RequestClassification:
        reply = await self._ask(CLASSIFICATION_SYSTEM_PROMPT, classification_request(request_text), timeout)
        return RequestClassification(normalize_reply(reply, CLASSIFICATION_VOCABULARY))

    async def select_direct(
        self,
        request_text: str,
        candidates: Sequence[WorkflowDefinition],
        valid_names: Sequence[str],
        timeout: float,
    ) -> str:
        reply = await self._ask(build_selection_system_prompt(candidates), selection_request(request_text), timeout)
        return normalize_reply(reply, valid_names)


class OpenAIRoutingRunner(ChatModelRoutingRunner):
    runner_kind = "openai"

    @classmethod
    def from_settings(cls, settings: RouterSettings, repo_root: Path | None = None) -> "OpenAIRoutingRunner":
        model = get_chat_model(
            provider="openai",
            model_name=settings.resolved_model,
            timeout=settings.timeout_seconds,
            repo_root=repo_root,
        )
        return cls(model)


class GeminiRoutingRunner(ChatModelRoutingRunner):
    runner_kind = "gemini"

    @classmethod
    def from_settings(cls, settings: RouterSettings, repo_root: Path | None = None) -> "GeminiRoutingRunner":
        model = get_chat_model(
            provider="gemini",
            model_name=settings.resolved_model,
            timeout=settings.timeout_seconds,
            repo_root=repo_root,
        )
        return cls(model)


_RUNNERS: dict[str, type[OpenAIRoutingRunner] | type[GeminiRoutingRunner]] = {
    "openai": OpenAIRoutingRunner,
    "gemini": GeminiRoutingRunner,
}


def build_routing_runner(settings: RouterSettings, repo_root: Path | None = None) -> ChatModelRoutingRunner:
    """Construct the routing runner named by ``settings.runner_type``."""
    runner_cls = _RUNNERS.get(settings.runner_type)
    if runner_cls is None:
        raise ValueError(f"Unsupported runner type: {settings.runner_type!r}")
    logger.info("Using %s routing runner with model %s", settings.runner_type, settings.resolved_model)
    return runner_cls.from_settings(settings, repo_root=repo_root)
