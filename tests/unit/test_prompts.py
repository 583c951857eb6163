from datetime import datetime, timezone

from trace_copilot.analysis.prompts import (
    NO_DATASETS,
    dataset_preview,
    extract_categories,
    format_analysis_traces,
    format_conversation,
    format_datasets,
    format_numbered_traces,
    render,
    tail_truncate,
    truncate_trace,
)
from trace_copilot.types import ConversationTurn, Dataset, SampledTrace


def _dataset(content, name: str = "golden") -> Dataset:
    return Dataset(
        id=1,
        name=name,
        filename=f"{name}.json",
        content=content,
        size=2048,
        created_at=datetime.now(timezone.utc),
    )


def test_render_substitutes_every_occurrence_and_keeps_unknown() -> None:
    rendered = render("{a} and {a} then {missing}", {"a": "X"})

    assert rendered == "X and X then {missing}"


def test_render_does_not_rescan_inserted_values() -> None:
    rendered = render("{traces}\n{datasets}", {"traces": "1: {datasets}", "datasets": "D"})

    assert rendered == "1: {datasets}\nD"


def test_conversation_formatting() -> None:
    history = [
        ConversationTurn(role="user", text="what fails?"),
        ConversationTurn(role="assistant", text="### Timeouts"),
    ]

    assert format_conversation(history, "show more") == (
        "User: what fails?\n\nAI: ### Timeouts\n\nUser: show more"
    )
    assert format_conversation([], "q", answer="a") == "User: q\n\nAI: a"


def test_tail_truncate_keeps_end() -> None:
    assert tail_truncate("abcdef", 3) == "def"
    assert tail_truncate("abc", 3) == "abc"


def test_trace_truncation_adds_ellipsis() -> None:
    assert truncate_trace("x" * 250, 200) == "x" * 200 + "..."
    assert truncate_trace("short", 200) == "short"


def test_numbered_traces_use_original_index() -> None:
    sample = [SampledTrace("beta", 7), SampledTrace("alpha", 2)]

    assert format_numbered_traces(sample) == "7: beta\n2: alpha"
    assert "(2 traces selected from 10 total)" in format_analysis_traces(sample, 10)


def test_dataset_preview_shows_first_five_examples() -> None:
    content = {"examples": [{"input": f"q{i}"} for i in range(8)]}

    preview = dataset_preview(content)

    assert "Example 5:" in preview
    assert "Example 6:" not in preview
    assert "... and 3 more examples" in preview


def test_dataset_preview_caps_other_json() -> None:
    preview = dataset_preview({"rows": ["y" * 50 for _ in range(100)]})

    assert preview.startswith("Content structure:\n")
    assert preview.endswith("...")
    assert len(preview) <= len("Content structure:\n") + 1000 + 3


def test_format_datasets() -> None:
    assert format_datasets([]) == NO_DATASETS

    section = format_datasets([_dataset({"examples": [1, 2]})])

    assert section.startswith("(1 available):")
    assert 'Dataset 1: "golden"' in section
    assert "- Size: 2.0KB" in section
    assert "- Total examples: 2" in section


def test_extract_categories_from_headers_and_bold() -> None:
    answer = "### Category A\n- item\n\n**Refund loops**: details\n## Category A\n__Slow tools__"

    assert extract_categories(answer) == ["Category A", "Refund loops", "Slow tools"]
