import pytest

from trace_copilot.analysis.schemas import (
    BatchMatchItem,
    PayloadShapeError,
    SelectedTraceItem,
    parse_items,
)


def test_invalid_items_are_counted_not_fatal() -> None:
    payload = {
        "selected_traces": [
            {"line_number": 4.0, "relevance_score": 0.7, "tags": [" Slow tools ", ""]},
            {"line_number": "four", "tags": []},
            {"line_number": 2.5, "tags": []},
            {"relevance_score": 1.0},
        ]
    }

    items, invalid = parse_items(payload, "selected_traces", SelectedTraceItem)

    assert [(item.line_number, item.tags) for item in items] == [(4, ["Slow tools"])]
    assert invalid == 3


@pytest.mark.parametrize("payload", [None, [], {"selected_traces": "nope"}, {}])
def test_missing_array_is_a_shape_error(payload) -> None:
    with pytest.raises(PayloadShapeError):
        parse_items(payload, "selected_traces", SelectedTraceItem)


def test_batch_item_defaults() -> None:
    item = BatchMatchItem.model_validate({"line_number": 1, "relevance_score": -3, "reasoning": ""})

    assert item.relevance_score == 0.0
    assert item.reasoning == "No reasoning provided"
