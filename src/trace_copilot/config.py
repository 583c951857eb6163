"""Configuration models for the trace copilot service."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field


class SamplingConfig(BaseModel):
    """Bounds the working set shown to both model stages of a turn."""

    max_traces: int = Field(default=250, ge=0)


class ReasoningConfig(BaseModel):
    """Configures the schema-constrained trace selection stage."""

    page_size: int = Field(default=20, ge=1)
    max_conversation_chars: int = Field(default=2000, ge=1)
    max_trace_chars: int = Field(default=200, ge=1)
    fallback_trace_limit: int = Field(default=250, ge=1)
    enforce_answer_categories: bool = False


class StreamingConfig(BaseModel):
    """Controls how the analysis answer is delivered to the client."""

    mode: Literal["simulated", "native"] = "simulated"
    words_per_fragment: int = Field(default=1, ge=1)
    fragment_delay_seconds: float = Field(default=0.02, ge=0.0)


class ModelConfig(BaseModel):
    """Default model names per call site."""

    analysis_model: str = "gpt-4o"
    reasoning_model: str = "o4-mini"
    batch_model: str = "gpt-4o"


class TimeoutConfig(BaseModel):
    """Upper bounds on each outbound model call."""

    analysis_seconds: float = Field(default=180.0, gt=0.0)
    reasoning_seconds: float = Field(default=120.0, gt=0.0)
    batch_seconds: float = Field(default=300.0, gt=0.0)


class BatchConfig(BaseModel):
    """Configures batch ranking jobs."""

    default_max_results: int = Field(default=30, ge=1, le=200)
    max_concurrent_jobs: int = Field(default=4, ge=1)


class IngestConfig(BaseModel):
    """Server-side trace file uploads; disabled unless `upload_root` is set."""

    upload_root: Path | None = None


class CopilotConfig(BaseModel):
    """Aggregate configuration handed to the pipeline and API."""

    sampling: SamplingConfig = Field(default_factory=SamplingConfig)
    reasoning: ReasoningConfig = Field(default_factory=ReasoningConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    models: ModelConfig = Field(default_factory=ModelConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    ingest: IngestConfig = Field(default_factory=IngestConfig)
