"""Function schemas for structured model calls and lenient payload parsing."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

SELECT_FUNCTION = "select_and_tag_traces"
BATCH_FUNCTION = "analyze_traces_for_batch_job"


def selection_schema(page_size: int) -> dict[str, Any]:
    """Function schema asking for exactly `page_size` tagged line references."""
    return {
        "name": SELECT_FUNCTION,
        "description": f"Select EXACTLY {page_size} most relevant traces and tag them",
        "parameters": {
            "type": "object",
            "properties": {
                "selected_traces": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "line_number": {"type": "number"},
                            "relevance_score": {"type": "number"},
                            "tags": {
                                "type": "array",
                                "items": {"type": "string"},
                                "description": "1-3 specific tags",
                            },
                        },
                        "required": ["line_number", "relevance_score", "tags"],
                    },
                    "minItems": page_size,
                    "maxItems": page_size,
                }
            },
            "required": ["selected_traces"],
        },
    }


def batch_schema(max_results: int) -> dict[str, Any]:
    return {
        "name": BATCH_FUNCTION,
        "description": (
            f"Analyze traces and find up to {max_results} examples that match the query criteria"
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "matching_traces": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "line_number": {
                                "type": "number",
                                "description": "The line number of the trace (1-based)",
                            },
                            "relevance_score": {
                                "type": "number",
                                "minimum": 0,
                                "maximum": 1,
                                "description": "How well this trace matches the query (0-1)",
                            },
                            "reasoning": {
                                "type": "string",
                                "description": "Brief explanation of why this trace matches the query",
                            },
                        },
                        "required": ["line_number", "relevance_score", "reasoning"],
                    },
                    "maxItems": max_results,
                }
            },
            "required": ["matching_traces"],
        },
    }


class SelectedTraceItem(BaseModel):
    line_number: int
    relevance_score: float = 0.0
    tags: list[str] = Field(default_factory=list)

    @field_validator("line_number", mode="before")
    @classmethod
    def _whole_number(cls, value: Any) -> Any:
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _clean_tags(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if isinstance(value, list):
            return [str(tag).strip() for tag in value if str(tag).strip()]
        return value


class BatchMatchItem(BaseModel):
    line_number: int
    relevance_score: float = 0.0
    reasoning: str = "No reasoning provided"

    @field_validator("line_number", mode="before")
    @classmethod
    def _whole_number(cls, value: Any) -> Any:
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return value

    @field_validator("relevance_score", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> Any:
        if value is None:
            return 0.0
        try:
            return min(1.0, max(0.0, float(value)))
        except (TypeError, ValueError):
            return 0.0

    @field_validator("reasoning", mode="before")
    @classmethod
    def _default_reasoning(cls, value: Any) -> Any:
        return value or "No reasoning provided"


class PayloadShapeError(ValueError):
    """The structured payload is missing its top-level array."""


def parse_items(
    payload: Any, key: str, model: type[BaseModel]
) -> tuple[list[Any], int]:
    """Validate each array element independently.

    Returns the valid items and the number of elements that failed validation.
    Raises `PayloadShapeError` when `payload[key]` is not a list.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get(key), list):
        raise PayloadShapeError(f"structured payload has no '{key}' array")

    items: list[Any] = []
    invalid = 0
    for raw in payload[key]:
        try:
            items.append(model.model_validate(raw))
        except ValidationError:
            invalid += 1
    return items, invalid
