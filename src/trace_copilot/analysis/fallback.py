"""Deterministic offline provider used when no model API key is configured."""

from __future__ import annotations

import re
from collections.abc import AsyncIterator
from typing import Any

from trace_copilot.analysis.prompts import extract_categories
from trace_copilot.analysis.schemas import BATCH_FUNCTION, SELECT_FUNCTION

_NUMBERED_LINE = re.compile(r"^(?P<line>\d+): (?P<body>.*)$", flags=re.MULTILINE)
_USER_LINE = re.compile(r"^User: (?P<text>.+)$", flags=re.MULTILINE)
_QUERY_LINE = re.compile(r"^QUERY: (?P<text>.+)$", flags=re.MULTILINE)
_MAX_RESULTS = re.compile(r"up to (?P<count>\d+)")
_WORD = re.compile(r"\w+")

FALLBACK_CATEGORY = "Matching traces"


class DeterministicProvider:
    """Answers from the numbered traces in the prompt without any model call.

    It keeps the same contract as `LangChainCompletionProvider` and is meant
    for local runs and tests: answers are lexical summaries, selections are
    the best keyword matches.
    """

    async def complete(self, prompt: str, *, model: str) -> str:
        del model
        traces = _numbered_traces(prompt)
        questions = _USER_LINE.findall(prompt)
        question = questions[-1].strip() if questions else ""
        if not traces:
            return "No traces were available to analyze."

        ranked = _rank(traces, question)
        lines = [f"### {FALLBACK_CATEGORY}", ""]
        for line_number, body, _ in ranked[:3]:
            lines.append(f"- Line {line_number}: {body[:160]}")
        lines.append("")
        lines.append(f"Reviewed {len(traces)} traces for: {question or 'the corpus'}")
        return "\n".join(lines)

    async def stream(self, prompt: str, *, model: str) -> AsyncIterator[str]:
        answer = await self.complete(prompt, model=model)
        for word in answer.split(" "):
            yield word + " "

    async def complete_structured(
        self,
        prompt: str,
        *,
        schema: dict[str, Any],
        model: str,
        temperature: float | None = None,
    ) -> dict[str, Any]:
        del model, temperature
        traces = _numbered_traces(prompt)
        name = schema.get("name")

        if name == SELECT_FUNCTION:
            items_schema = schema["parameters"]["properties"]["selected_traces"]
            page_size = int(items_schema.get("maxItems", 20))
            answer = _last_answer(prompt)
            categories = extract_categories(answer) or [FALLBACK_CATEGORY]
            questions = _USER_LINE.findall(prompt)
            ranked = _rank(traces, questions[-1] if questions else "")
            return {
                "selected_traces": [
                    {
                        "line_number": line_number,
                        "relevance_score": score,
                        "tags": [categories[0]],
                    }
                    for line_number, _, score in ranked[:page_size]
                ]
            }

        if name == BATCH_FUNCTION:
            query_match = _QUERY_LINE.search(prompt)
            query = query_match.group("text") if query_match else ""
            max_match = _MAX_RESULTS.search(str(schema.get("description", "")))
            max_results = int(max_match.group("count")) if max_match else 30
            ranked = [item for item in _rank(traces, query) if item[2] > 0]
            return {
                "matching_traces": [
                    {
                        "line_number": line_number,
                        "relevance_score": score,
                        "reasoning": "Shares query terms with the trace text.",
                    }
                    for line_number, _, score in ranked[:max_results]
                ]
            }

        raise ValueError(f"Unsupported function schema: {name}")


def _last_answer(prompt: str) -> str:
    if "AI: " not in prompt:
        return ""
    return prompt.rsplit("AI: ", 1)[-1].split("AVAILABLE TRACES", 1)[0]


def _numbered_traces(prompt: str) -> list[tuple[int, str]]:
    return [
        (int(match.group("line")), match.group("body").strip())
        for match in _NUMBERED_LINE.finditer(prompt)
    ]


def _rank(traces: list[tuple[int, str]], query: str) -> list[tuple[int, str, float]]:
    query_tokens = {token.lower() for token in _WORD.findall(query)}
    denom = max(1, len(query_tokens))
    scored = []
    for line_number, body in traces:
        body_tokens = {token.lower() for token in _WORD.findall(body)}
        scored.append((line_number, body, len(query_tokens & body_tokens) / denom))
    return sorted(scored, key=lambda item: item[2], reverse=True)
