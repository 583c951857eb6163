import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from trace_copilot.config import CopilotConfig, StreamingConfig


class FakeProvider:
    """Scripted completion provider recording every call."""

    def __init__(
        self,
        *,
        answer: str = "",
        structured: dict[str, Any] | Callable[[str, dict[str, Any]], dict[str, Any]] | None = None,
        answer_error: Exception | None = None,
        structured_error: Exception | None = None,
        answer_delay: float = 0.0,
        structured_delay: float = 0.0,
    ) -> None:
        self.answer = answer
        self.structured = structured if structured is not None else {}
        self.answer_error = answer_error
        self.structured_error = structured_error
        self.answer_delay = answer_delay
        self.structured_delay = structured_delay
        self.calls: list[dict[str, Any]] = []

    async def complete(self, prompt: str, *, model: str) -> str:
        self.calls.append({"kind": "complete", "prompt": prompt, "model": model})
        if self.answer_delay:
            await asyncio.sleep(self.answer_delay)
        if self.answer_error is not None:
            raise self.answer_error
        return self.answer

    async def stream(self, prompt: str, *, model: str):
        self.calls.append({"kind": "stream", "prompt": prompt, "model": model})
        if self.answer_error is not None:
            raise self.answer_error
        for index, word in enumerate(self.answer.split(" ")):
            yield word if index == 0 else " " + word

    async def complete_structured(
        self,
        prompt: str,
        *,
        schema: dict[str, Any],
        model: str,
        temperature: float | None = None,
    ) -> dict[str, Any]:
        self.calls.append(
            {
                "kind": "structured",
                "prompt": prompt,
                "schema": schema,
                "model": model,
                "temperature": temperature,
            }
        )
        if self.structured_delay:
            await asyncio.sleep(self.structured_delay)
        if self.structured_error is not None:
            raise self.structured_error
        if callable(self.structured):
            return self.structured(prompt, schema)
        return self.structured

    def kinds(self) -> list[str]:
        return [call["kind"] for call in self.calls]


@pytest.fixture
def fake_provider() -> type[FakeProvider]:
    return FakeProvider


@pytest.fixture
def fast_config() -> CopilotConfig:
    return CopilotConfig(streaming=StreamingConfig(fragment_delay_seconds=0))
