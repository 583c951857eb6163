import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from trace_copilot.analysis.fallback import DeterministicProvider
from trace_copilot.analysis.provider import (
    LangChainCompletionProvider,
    _default_chat_model_factory,
    create_provider,
    supports_temperature,
)
from trace_copilot.analysis.schemas import batch_schema, selection_schema


class _StructuredRunnable:
    def __init__(self, payload) -> None:
        self.payload = payload
        self.prompts: list = []

    async def ainvoke(self, messages):
        self.prompts.append(messages)
        return self.payload


class _StructuredChatModel:
    def __init__(self, payload) -> None:
        self.runnable = _StructuredRunnable(payload)
        self.requested: list = []

    def with_structured_output(self, schema, *, method):
        self.requested.append((schema["name"], method))
        return self.runnable


def test_reasoning_models_reject_temperature() -> None:
    assert supports_temperature("gpt-4o") is True
    assert supports_temperature("o4-mini") is False
    assert supports_temperature("openai/o3") is False


@pytest.mark.asyncio
async def test_complete_and_stream_use_chat_model() -> None:
    built: list[tuple[str, float | None]] = []

    def _factory(model: str, temperature: float | None):
        built.append((model, temperature))
        return FakeListChatModel(responses=["hello world"])

    provider = LangChainCompletionProvider(chat_model_factory=_factory)

    assert await provider.complete("prompt", model="gpt-4o") == "hello world"
    chunks = [chunk async for chunk in provider.stream("prompt", model="gpt-4o")]
    assert "".join(chunks) == "hello world"
    assert built == [("gpt-4o", None)]


@pytest.mark.asyncio
async def test_structured_call_forces_function_calling() -> None:
    chat_model = _StructuredChatModel({"selected_traces": []})
    provider = LangChainCompletionProvider(chat_model_factory=lambda model, temperature: chat_model)

    payload = await provider.complete_structured(
        "prompt", schema=selection_schema(3), model="o4-mini"
    )

    assert payload == {"selected_traces": []}
    assert chat_model.requested == [("select_and_tag_traces", "function_calling")]


@pytest.mark.asyncio
async def test_structured_call_rejects_non_mapping() -> None:
    chat_model = _StructuredChatModel("not a dict")
    provider = LangChainCompletionProvider(chat_model_factory=lambda model, temperature: chat_model)

    with pytest.raises(TypeError):
        await provider.complete_structured("prompt", schema=batch_schema(3), model="gpt-4o")


def test_default_chat_model_leaves_temperature_to_the_api(monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")

    reasoning = _default_chat_model_factory("o4-mini", 0.1)
    analysis = _default_chat_model_factory("gpt-4o", None)
    ranking = _default_chat_model_factory("gpt-4o", 0.1)

    assert reasoning.temperature is None
    assert analysis.temperature is None
    assert ranking.temperature == pytest.approx(0.1)


def test_create_provider_without_key_is_deterministic(monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    provider, mode = create_provider()

    assert isinstance(provider, DeterministicProvider)
    assert mode == "deterministic"


@pytest.mark.asyncio
async def test_deterministic_batch_ranks_by_query_overlap() -> None:
    provider = DeterministicProvider()
    prompt = "QUERY: refund loop\n\nTRACES TO ANALYZE:\n1: login ok\n2: refund loop again\n3: refund"

    payload = await provider.complete_structured(prompt, schema=batch_schema(5), model="m")

    assert [item["line_number"] for item in payload["matching_traces"]] == [2, 3]
