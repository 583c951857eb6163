"""Prompt templates and the helpers that render them."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from typing import Any

from trace_copilot.types import ConversationTurn, Dataset, SampledTrace

ANALYSIS_PROMPT = """
You are a copilot for analyzing production traces and identifying interesting patterns in user behavior.

PRIMARY DATA - PRODUCTION TRACES:
{traces}

SUPPLEMENTARY DATA - UPLOADED DATASETS:
{datasets}

CONVERSATION HISTORY:
{conversation}

Structure your response with clear section headers and bullet points.
You don't need to refer to specific traces in your response.
Keep the response to the point and, unless instructed otherwise, identify the three (or fewer) most relevant patterns or issues for the conversation at hand.
Do not add recommendations for improvement or conclusions.
""".strip()

REASONING_PROMPT = """
You select the most relevant traces for a conversation and tag them with the categories the chat model used.

CONVERSATION CONTEXT:
{conversation}

AVAILABLE TRACES (with line numbers):
{traces}

CATEGORY EXTRACTION:
1. Read the whole conversation context, including the user questions, and identify the categories that were mentioned.
2. Look for section headers (### headers) and bold categories (**bold text**).
3. Use ONLY those extracted categories as tags. Do not create new categories.

TAGGING RULES:
- Tags must come directly from categories established in the AI response.
- Keep reasoning short; pick traces that clearly demonstrate the categories discussed.

VARIABILITY:
- Prefer variety across patterns, behaviors and edge cases.
- Avoid near-duplicate traces.
""".strip()

DEFAULT_PROMPTS: dict[str, str] = {
    "analysis": ANALYSIS_PROMPT,
    "reasoning": REASONING_PROMPT,
}

BATCH_PROMPT = """
You are analyzing production traces to find examples that match a specific query.

QUERY: {query}

TRACES TO ANALYZE:
{traces}

INSTRUCTIONS:
1. Read through all traces and identify every one that matches the query criteria.
2. Score each matching trace from 0.0 to 1.0 by how well it matches the query.
3. Give a brief reasoning for why each trace matches.
4. Return up to {max_results} of the best matching traces, ordered by relevance score (highest first).
5. Only include traces that genuinely match the query criteria.
6. If no traces match, return an empty array.

Be thorough but selective.
""".strip()

NO_DATASETS = "No datasets uploaded."

_PLACEHOLDER = re.compile(r"\{(\w+)\}")
_HEADER = re.compile(r"^\s{0,3}#{1,6}\s+(.+?)\s*#*\s*$", flags=re.MULTILINE)
_BOLD = re.compile(r"\*\*(.+?)\*\*|__(.+?)__")

_DATASET_EXAMPLE_LIMIT = 5
_DATASET_PREVIEW_CHARS = 1000


def render(template: str, bindings: Mapping[str, str]) -> str:
    """Substitute `{name}` placeholders in a single pass.

    Unknown placeholders are left verbatim, and substituted values are never
    re-scanned, so trace text containing braces is inserted as-is.
    """

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in bindings:
            return bindings[name]
        return match.group(0)

    return _PLACEHOLDER.sub(_replace, template)


def format_conversation(
    history: Sequence[ConversationTurn],
    query: str,
    *,
    answer: str | None = None,
) -> str:
    lines = [
        f"{'User' if turn.role == 'user' else 'AI'}: {turn.text}" for turn in history
    ]
    lines.append(f"User: {query}")
    if answer is not None:
        lines.append(f"AI: {answer}")
    return "\n\n".join(lines)


def tail_truncate(text: str, limit: int) -> str:
    """Keep the last `limit` characters."""
    if len(text) <= limit:
        return text
    return text[-limit:]


def truncate_trace(trace: str, limit: int) -> str:
    if len(trace) <= limit:
        return trace
    return trace[:limit] + "..."


def format_numbered_traces(
    sample: Sequence[SampledTrace], *, max_chars: int | None = None
) -> str:
    lines = []
    for item in sample:
        text = item.trace if max_chars is None else truncate_trace(item.trace, max_chars)
        lines.append(f"{item.original_index}: {text}")
    return "\n".join(lines)


def format_analysis_traces(sample: Sequence[SampledTrace], total: int) -> str:
    return (
        f"{format_numbered_traces(sample)}\n\n"
        f"FOCUS: These traces are your PRIMARY data source "
        f"({len(sample)} traces selected from {total} total)."
    )


def dataset_preview(content: Any) -> str:
    """Human-readable preview of a dataset's JSON content."""
    if content is None:
        return ""
    examples = content.get("examples") if isinstance(content, dict) else None
    if isinstance(examples, list):
        shown = [
            f"Example {i}: {json.dumps(example, indent=2, ensure_ascii=False, default=str)}"
            for i, example in enumerate(examples[:_DATASET_EXAMPLE_LIMIT], start=1)
        ]
        preview = "Examples from this dataset:\n" + "\n\n".join(shown)
        remaining = len(examples) - _DATASET_EXAMPLE_LIMIT
        if remaining > 0:
            preview += f"\n... and {remaining} more examples"
        return preview

    rendered = json.dumps(content, indent=2, ensure_ascii=False, default=str)
    compact = json.dumps(content, ensure_ascii=False, default=str)
    suffix = "..." if len(compact) > _DATASET_PREVIEW_CHARS else ""
    return f"Content structure:\n{rendered[:_DATASET_PREVIEW_CHARS]}{suffix}"


def format_datasets(datasets: Sequence[Dataset]) -> str:
    if not datasets:
        return NO_DATASETS

    blocks: list[str] = []
    for position, dataset in enumerate(datasets, start=1):
        try:
            preview = dataset_preview(dataset.content)
        except (TypeError, ValueError):
            preview = "Unable to parse dataset content"
        examples = (
            dataset.content.get("examples") if isinstance(dataset.content, dict) else None
        )
        example_count = len(examples) if isinstance(examples, list) else "Unknown"
        blocks.append(
            "\n".join(
                [
                    f'Dataset {position}: "{dataset.name}"',
                    f"- Filename: {dataset.filename}",
                    f"- Description: {dataset.description or 'No description provided'}",
                    f"- Size: {dataset.size / 1024:.1f}KB",
                    f"- Total examples: {example_count}",
                    "",
                    preview,
                ]
            )
        )

    return (
        f"({len(datasets)} available):\n"
        + "\n\n".join(blocks)
        + "\n\nCONTEXT: These datasets contain structured examples that can give "
        "additional context. Reference them when relevant to the user's question and "
        "compare them with the production traces."
    )


def extract_categories(answer: str) -> list[str]:
    """Category labels stated in an answer: markdown headers and bold spans."""
    found: list[str] = []
    for match in _HEADER.finditer(answer):
        found.append(match.group(1).strip("*_ ").strip())
    for match in _BOLD.finditer(answer):
        found.append((match.group(1) or match.group(2)).strip().rstrip(":").strip())

    deduped: list[str] = []
    for category in found:
        if category and category not in deduped:
            deduped.append(category)
    return deduped
