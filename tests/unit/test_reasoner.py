import asyncio

import pytest

from trace_copilot.analysis.cancellation import CancellationToken
from trace_copilot.analysis.reasoner import TraceReasoner, map_selection
from trace_copilot.analysis.sampler import sample_traces
from trace_copilot.analysis.schemas import SELECT_FUNCTION, SelectedTraceItem
from trace_copilot.config import ReasoningConfig, TimeoutConfig
from trace_copilot.types import ReasoningStatus

ANSWER = "### Category A\nsomething"


def _selection(*items: tuple[int, list[str]]) -> dict:
    return {
        "selected_traces": [
            {"line_number": line, "relevance_score": 0.5, "tags": tags} for line, tags in items
        ]
    }


async def _select(reasoner: TraceReasoner, sample, **kwargs):
    defaults = {
        "query": "what happened",
        "answer": ANSWER,
        "model": "o4-mini",
        "token": CancellationToken(),
    }
    defaults.update(kwargs)
    return await reasoner.select_and_tag(sample, **defaults)


@pytest.mark.asyncio
async def test_line_numbers_map_to_original_corpus_positions(fake_provider) -> None:
    provider = fake_provider(structured=_selection((2, ["Category A"]), (99, ["Category A"])))
    reasoner = TraceReasoner(provider)

    result = await _select(reasoner, sample_traces(["a", "b", "c"], 3))

    assert result.status is ReasoningStatus.OK
    assert [(item.trace, item.line_number, item.tags) for item in result.tagged_traces] == [
        ("b", 2, ["Category A"])
    ]
    assert result.dropped == 1
    assert result.fallback_sample is False


@pytest.mark.asyncio
async def test_request_uses_selection_schema_and_reasoning_model(fake_provider) -> None:
    provider = fake_provider(structured=_selection((1, ["Category A"])))
    reasoner = TraceReasoner(provider, config=ReasoningConfig(page_size=5))

    await _select(reasoner, sample_traces(["a"], 1))

    call = provider.calls[0]
    assert call["kind"] == "structured"
    assert call["model"] == "o4-mini"
    assert call["schema"]["name"] == SELECT_FUNCTION
    items = call["schema"]["parameters"]["properties"]["selected_traces"]
    assert items["minItems"] == items["maxItems"] == 5
    assert "AI: ### Category A" in call["prompt"]


@pytest.mark.asyncio
async def test_prompt_truncates_traces_and_conversation(fake_provider) -> None:
    provider = fake_provider(structured=_selection())
    reasoner = TraceReasoner(provider)

    await _select(
        reasoner,
        sample_traces(["x" * 300], 1),
        answer="A" * 3000 + "END",
    )

    prompt = provider.calls[0]["prompt"]
    assert "1: " + "x" * 200 + "..." in prompt
    assert "x" * 201 not in prompt
    assert "END" in prompt
    assert "User: what happened" not in prompt
    assert "A" * 2001 not in prompt


@pytest.mark.asyncio
async def test_fallback_sample_only_covers_leading_traces(fake_provider) -> None:
    provider = fake_provider(structured=_selection((300, ["Category A"]), (7, ["Category A"])))
    reasoner = TraceReasoner(provider)
    traces = [f"trace-{i}" for i in range(1, 501)]

    result = await _select(reasoner, None, traces=traces)

    prompt = provider.calls[0]["prompt"]
    assert "250: trace-250" in prompt
    assert "251: trace-251" not in prompt
    assert result.fallback_sample is True
    assert [item.line_number for item in result.tagged_traces] == [7]


@pytest.mark.asyncio
async def test_cancelled_token_skips_the_call(fake_provider) -> None:
    provider = fake_provider(structured=_selection((1, ["Category A"])))
    token = CancellationToken()
    token.cancel()

    result = await _select(TraceReasoner(provider), sample_traces(["a"], 1), token=token)

    assert result.status is ReasoningStatus.CANCELLED
    assert result.tagged_traces == []
    assert provider.calls == []


@pytest.mark.asyncio
async def test_empty_working_set_returns_empty(fake_provider) -> None:
    provider = fake_provider()

    result = await _select(TraceReasoner(provider), None, traces=[])

    assert result.status is ReasoningStatus.EMPTY
    assert provider.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("kwargs", "expected"),
    [
        ({"structured_error": RuntimeError("boom")}, ReasoningStatus.PROVIDER_ERROR),
        ({"structured": {"unexpected": []}}, ReasoningStatus.PARSE_ERROR),
        ({"structured": _selection()}, ReasoningStatus.EMPTY),
    ],
)
async def test_failures_degrade_to_empty_result(fake_provider, kwargs, expected) -> None:
    provider = fake_provider(**kwargs)

    result = await _select(TraceReasoner(provider), sample_traces(["a", "b"], 2))

    assert result.status is expected
    assert result.tagged_traces == []


@pytest.mark.asyncio
async def test_timeout_degrades_to_empty_result(fake_provider) -> None:
    provider = fake_provider(structured=_selection((1, ["x"])), structured_delay=1.0)
    reasoner = TraceReasoner(provider, timeouts=TimeoutConfig(reasoning_seconds=0.01))

    result = await _select(reasoner, sample_traces(["a"], 1))

    assert result.status is ReasoningStatus.TIMEOUT


@pytest.mark.asyncio
async def test_cancel_during_call_returns_cancelled(fake_provider) -> None:
    provider = fake_provider(structured=_selection((1, ["x"])), structured_delay=5.0)
    token = CancellationToken()

    async def _cancel_soon() -> None:
        await asyncio.sleep(0.01)
        token.cancel()

    canceller = asyncio.create_task(_cancel_soon())
    result = await _select(TraceReasoner(provider), sample_traces(["a"], 1), token=token)
    await canceller

    assert result.status is ReasoningStatus.CANCELLED


def test_map_selection_drops_repeated_lines() -> None:
    sample = sample_traces(["a", "b"], 2)
    items = [
        SelectedTraceItem(line_number=1, tags=["first"]),
        SelectedTraceItem(line_number=1, tags=["again"]),
        SelectedTraceItem(line_number=2.0, tags=["second"]),
    ]

    tagged, dropped = map_selection(sample, items)

    assert [(item.line_number, item.tags) for item in tagged] == [(1, ["first"]), (2, ["second"])]
    assert dropped == 1


@pytest.mark.asyncio
async def test_tag_enforcement_keeps_only_answer_categories(fake_provider) -> None:
    provider = fake_provider(
        structured=_selection((1, ["category a", "Invented"]), (2, ["Other"]))
    )
    reasoner = TraceReasoner(provider, config=ReasoningConfig(enforce_answer_categories=True))

    result = await _select(reasoner, sample_traces(["a", "b"], 2))

    assert [item.tags for item in result.tagged_traces] == [["Category A"], []]


@pytest.mark.asyncio
async def test_tags_are_advisory_by_default(fake_provider) -> None:
    provider = fake_provider(structured=_selection((1, ["Invented"])))

    result = await _select(TraceReasoner(provider), sample_traces(["a"], 1))

    assert result.tagged_traces[0].tags == ["Invented"]
