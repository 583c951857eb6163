"""Run records, cost accounting, and logging setup."""

from __future__ import annotations

import json
import logging
import os
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)

STATUS_OK = "ok"
STATUS_CANCELLED = "cancelled"
STATUS_ERROR = "error"


def degraded(reason: str) -> str:
    return f"degraded:{reason}"


@dataclass(slots=True)
class RunRecord:
    """One analysis turn or batch ranking run.

    `status` is `ok`, `cancelled`, `error`, or `degraded:<reason>` when the
    user still got an answer but some stage fell back.
    """

    run_id: str
    timestamp_utc: str
    kind: str
    query: str
    models: dict[str, str]
    status: str
    sample_size: int
    total_traces: int
    answer_chars: int
    result_count: int
    input_tokens: int
    output_tokens: int
    estimated_cost_usd: float
    latency_ms: float
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CostModel:
    """Simple token pricing model (USD per 1K tokens)."""

    input_per_1k: float = 0.005
    output_per_1k: float = 0.015

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        return (input_tokens / 1000.0) * self.input_per_1k + (
            output_tokens / 1000.0
        ) * self.output_per_1k


class RunLog:
    """In-memory run storage for API-level observability."""

    def __init__(self, *, cost_model: CostModel | None = None, max_records: int = 1000) -> None:
        self._records: dict[str, RunRecord] = {}
        self._cost_model = cost_model or CostModel()
        self._max_records = max_records

    def record(
        self,
        *,
        kind: str,
        query: str,
        models: dict[str, str],
        status: str,
        sample_size: int = 0,
        total_traces: int = 0,
        answer_chars: int = 0,
        result_count: int = 0,
        input_tokens: int = 0,
        output_tokens: int = 0,
        latency_ms: float = 0.0,
        details: dict[str, Any] | None = None,
    ) -> RunRecord:
        run = RunRecord(
            run_id=str(uuid.uuid4()),
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            kind=kind,
            query=query,
            models=dict(models),
            status=status,
            sample_size=sample_size,
            total_traces=total_traces,
            answer_chars=answer_chars,
            result_count=result_count,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            estimated_cost_usd=self._cost_model.estimate_cost(input_tokens, output_tokens),
            latency_ms=latency_ms,
            details=dict(details or {}),
        )
        self._records[run.run_id] = run
        while len(self._records) > self._max_records:
            self._records.pop(next(iter(self._records)))
        return run

    def get(self, run_id: str) -> RunRecord:
        run = self._records.get(run_id)
        if run is None:
            raise KeyError(f"Run not found: {run_id}")
        return run

    def list_recent(self, limit: int = 20) -> list[RunRecord]:
        if limit <= 0:
            return []
        return list(self._records.values())[-limit:]

    def summary(self) -> dict[str, Any]:
        """Aggregate observability metrics for dashboard display."""
        records = list(self._records.values())
        total = len(records)
        statuses: dict[str, int] = {}
        for run in records:
            statuses[run.status] = statuses.get(run.status, 0) + 1
        if total == 0:
            return {
                "total_runs": 0,
                "by_status": statuses,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "total_input_tokens": 0,
                "total_output_tokens": 0,
                "total_estimated_cost_usd": 0.0,
            }

        latencies = sorted(run.latency_ms for run in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        return {
            "total_runs": total,
            "by_status": statuses,
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "total_input_tokens": sum(run.input_tokens for run in records),
            "total_output_tokens": sum(run.output_tokens for run in records),
            "total_estimated_cost_usd": sum(run.estimated_cost_usd for run in records),
        }


class Timer:
    """Simple context timer used around model calls."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0


def estimate_token_count(text: str) -> int:
    return len(_TOKEN_PATTERN.findall(text))


def estimate_payload_tokens(payload: Any) -> int:
    """Token estimate for a structured reply, counted on its JSON rendering."""
    if isinstance(payload, str):
        return estimate_token_count(payload)
    return estimate_token_count(json.dumps(payload, ensure_ascii=False, default=str))


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger once from `LOG_LEVEL`."""
    resolved = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, resolved, logging.INFO),
        format="{levelname} {asctime} {name} {message}",
        style="{",
    )
