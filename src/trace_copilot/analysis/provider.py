"""Completion provider contract and its LangChain-backed implementation."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator, Callable
from typing import Any, Protocol

from langchain_core.messages import HumanMessage

logger = logging.getLogger(__name__)


class CompletionProvider(Protocol):
    """Minimal model-call contract used by the pipeline."""

    async def complete(self, prompt: str, *, model: str) -> str:
        """Return one complete free-text answer."""

    def stream(self, prompt: str, *, model: str) -> AsyncIterator[str]:
        """Yield answer text as the provider produces it."""

    async def complete_structured(
        self,
        prompt: str,
        *,
        schema: dict[str, Any],
        model: str,
        temperature: float | None = None,
    ) -> dict[str, Any]:
        """Return the arguments of a forced function call matching `schema`."""


def supports_temperature(model: str) -> bool:
    """Reasoning-class models reject a temperature parameter."""
    name = model.lower().rsplit("/", 1)[-1]
    return not (name.startswith("o1") or name.startswith("o3") or name.startswith("o4"))


def _message_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            elif isinstance(item, str):
                parts.append(item)
        return "".join(parts)
    return str(content or "")


def _default_chat_model_factory(model: str, temperature: float | None) -> Any:
    from langchain_openai import ChatOpenAI

    kwargs: dict[str, Any] = {"model": model}
    if temperature is not None and supports_temperature(model):
        kwargs["temperature"] = temperature
    return ChatOpenAI(**kwargs)


class LangChainCompletionProvider:
    """Provider backed by LangChain chat models, one client per model name.

    Cancellation is cooperative: callers cancel the awaiting task, which
    closes the underlying HTTP request.
    """

    def __init__(
        self,
        chat_model_factory: Callable[[str, float | None], Any] | None = None,
    ) -> None:
        self._factory = chat_model_factory or _default_chat_model_factory
        self._models: dict[tuple[str, float | None], Any] = {}

    def _chat_model(self, model: str, temperature: float | None = None) -> Any:
        key = (model, temperature)
        if key not in self._models:
            self._models[key] = self._factory(model, temperature)
        return self._models[key]

    async def complete(self, prompt: str, *, model: str) -> str:
        message = await self._chat_model(model).ainvoke([HumanMessage(content=prompt)])
        return _message_text(message)

    async def stream(self, prompt: str, *, model: str) -> AsyncIterator[str]:
        async for chunk in self._chat_model(model).astream([HumanMessage(content=prompt)]):
            text = _message_text(chunk)
            if text:
                yield text

    async def complete_structured(
        self,
        prompt: str,
        *,
        schema: dict[str, Any],
        model: str,
        temperature: float | None = None,
    ) -> dict[str, Any]:
        runnable = self._chat_model(model, temperature).with_structured_output(
            schema, method="function_calling"
        )
        result = await runnable.ainvoke([HumanMessage(content=prompt)])
        if hasattr(result, "model_dump"):
            return result.model_dump()
        if not isinstance(result, dict):
            raise TypeError(f"structured call returned {type(result).__name__}")
        return result


def create_provider() -> tuple[Any, str]:
    """Pick the provider for this process.

    Returns the provider and a short mode label for health reporting.
    """
    if os.getenv("OPENAI_API_KEY"):
        return LangChainCompletionProvider(), "openai"

    from trace_copilot.analysis.fallback import DeterministicProvider

    logger.warning("OPENAI_API_KEY not set; using the deterministic offline provider")
    return DeterministicProvider(), "deterministic"
