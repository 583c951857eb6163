"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal


@dataclass(frozen=True, slots=True)
class SampledTrace:
    """One trace line together with its 1-based position in the corpus."""

    trace: str
    original_index: int


@dataclass(slots=True)
class ConversationTurn:
    """A prior message in the chat, supplied by the client on every request."""

    role: Literal["user", "assistant"]
    text: str
    timestamp: float | None = None
    tagged_traces: list["TaggedTrace"] = field(default_factory=list)


@dataclass(slots=True)
class TaggedTrace:
    """A trace picked by the reasoning stage, labelled with answer categories."""

    trace: str
    tags: list[str]
    line_number: int = 0
    relevance_score: float = 0.0


@dataclass(slots=True)
class BatchResult:
    """A batch ranking hit; `original_index` is zero-based."""

    trace: str
    original_index: int
    relevance_score: float
    reasoning: str


class ReasoningStatus(str, Enum):
    """Outcome of the reasoning stage; anything but OK is a degraded result."""

    OK = "ok"
    EMPTY = "empty"
    PARSE_ERROR = "parse_error"
    PROVIDER_ERROR = "provider_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class TokenUsage:
    """Estimated tokens sent to and received from the provider."""

    input_tokens: int = 0
    output_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            self.input_tokens + other.input_tokens,
            self.output_tokens + other.output_tokens,
        )


@dataclass(slots=True)
class AnalysisResult:
    """Full analysis answer plus the exact sample the model saw."""

    answer: str
    sample: list[SampledTrace]
    model: str
    no_data: bool = False
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass(slots=True)
class ReasoningResult:
    """Tagged traces with the status explaining how they were obtained."""

    tagged_traces: list[TaggedTrace]
    status: ReasoningStatus
    dropped: int = 0
    fallback_sample: bool = False
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass(slots=True)
class TraceCorpus:
    """An uploaded trace file."""

    id: int
    content: str
    trace_count: int
    created_at: datetime
    source: str | None = None


@dataclass(slots=True)
class Dataset:
    """A supplementary JSON dataset offered to the analysis stage as context."""

    id: int
    name: str
    filename: str
    content: Any
    size: int
    created_at: datetime
    description: str | None = None


class BatchJobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(slots=True)
class BatchJob:
    """A saved batch ranking query attached to a trace corpus."""

    id: int
    analysis_id: int
    job_id: str
    name: str
    query: str
    model: str
    max_results: int
    status: BatchJobStatus
    created_at: datetime
    results: list[BatchResult] | None = None
    error: str | None = None
    last_run_at: datetime | None = None


@dataclass(slots=True)
class BatchRanking:
    """Ranked batch hits and the token usage of the call that produced them."""

    results: list[BatchResult]
    usage: TokenUsage = field(default_factory=TokenUsage)
