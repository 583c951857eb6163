"""Two-stage turn orchestration: stream the analysis, then tag supporting traces."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from trace_copilot.analysis.analyzer import TraceAnalyzer
from trace_copilot.analysis.cancellation import CancellationToken
from trace_copilot.analysis.provider import CompletionProvider
from trace_copilot.analysis.reasoner import TraceReasoner
from trace_copilot.analysis.sampler import derive_seed, sample_traces
from trace_copilot.config import CopilotConfig
from trace_copilot.errors import ErrorCode, TraceCopilotError, TurnCancelled
from trace_copilot.obs.telemetry import (
    STATUS_CANCELLED,
    STATUS_ERROR,
    STATUS_OK,
    RunLog,
    degraded,
)
from trace_copilot.types import (
    AnalysisResult,
    ConversationTurn,
    Dataset,
    ReasoningResult,
    ReasoningStatus,
    TokenUsage,
)

logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    ESTABLISHED = "established"
    STREAMING_ANSWER = "streaming_answer"
    REASONING = "reasoning"
    COMPLETE = "complete"
    ABORTED = "aborted"
    FAILED = "failed"


_TRANSITIONS: dict[TurnState, set[TurnState]] = {
    TurnState.ESTABLISHED: {TurnState.STREAMING_ANSWER, TurnState.ABORTED, TurnState.FAILED},
    TurnState.STREAMING_ANSWER: {TurnState.REASONING, TurnState.ABORTED, TurnState.FAILED},
    TurnState.REASONING: {TurnState.COMPLETE, TurnState.ABORTED, TurnState.FAILED},
    TurnState.COMPLETE: set(),
    TurnState.ABORTED: set(),
    TurnState.FAILED: set(),
}


class TurnStateMachine:
    """Tracks one turn; terminal states absorb late aborts silently."""

    def __init__(self) -> None:
        self.state = TurnState.ESTABLISHED
        self.history: list[TurnState] = [self.state]

    @property
    def terminal(self) -> bool:
        return not _TRANSITIONS[self.state]

    def advance(self, target: TurnState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal turn transition {self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)

    def abort(self) -> bool:
        if self.terminal:
            return False
        self.advance(TurnState.ABORTED)
        return True


@dataclass(slots=True)
class StreamEvent:
    """One server-sent event of an analysis turn."""

    type: str
    data: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {"type": self.type, **self.data}

    def to_sse(self) -> str:
        return f"data: {json.dumps(self.as_dict(), ensure_ascii=False)}\n\n"


@dataclass(slots=True)
class TurnRequest:
    """Everything one analysis turn needs; the pipeline keeps no state between turns."""

    traces: list[str]
    query: str
    model: str
    reasoning_model: str
    max_traces: int
    history: list[ConversationTurn] = field(default_factory=list)
    datasets: list[Dataset] = field(default_factory=list)
    analysis_prompt: str | None = None
    reasoning_prompt: str | None = None


class AnalysisPipeline:
    """Sequences the analysis and reasoning stages for one request.

    Event order is `heartbeat`, `content`*, `streaming_complete`,
    `reasoning_start`, `complete`, or an early `error`. Once the token is
    cancelled no further event is produced.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        *,
        config: CopilotConfig | None = None,
        run_log: RunLog | None = None,
    ) -> None:
        self.config = config or CopilotConfig()
        self.run_log = run_log or RunLog()
        self.analyzer = TraceAnalyzer(
            provider, streaming=self.config.streaming, timeouts=self.config.timeouts
        )
        self.reasoner = TraceReasoner(
            provider, config=self.config.reasoning, timeouts=self.config.timeouts
        )

    async def run_turn(
        self,
        request: TurnRequest,
        token: CancellationToken,
        *,
        turn: TurnStateMachine | None = None,
    ) -> AsyncIterator[StreamEvent]:
        turn = turn or TurnStateMachine()
        started = time.perf_counter()
        analysis: AnalysisResult | None = None
        reasoning: ReasoningResult | None = None
        error: TraceCopilotError | None = None

        try:
            yield StreamEvent("heartbeat", {"message": "Connection established"})

            sample = sample_traces(request.traces, request.max_traces)
            logger.info(
                "Turn sample: %d of %d traces (seed %d)",
                len(sample),
                len(request.traces),
                derive_seed(request.traces),
            )
            turn.advance(TurnState.STREAMING_ANSWER)

            fragments: asyncio.Queue[str | None] = asyncio.Queue()
            task = asyncio.create_task(
                self.analyzer.analyze(
                    sample,
                    total_traces=len(request.traces),
                    query=request.query,
                    model=request.model,
                    sink=fragments.put_nowait,
                    token=token,
                    history=request.history,
                    datasets=request.datasets,
                    template=request.analysis_prompt,
                )
            )
            task.add_done_callback(lambda _: fragments.put_nowait(None))
            try:
                while (fragment := await fragments.get()) is not None:
                    if not token.cancelled:
                        yield StreamEvent("content", {"content": fragment})
                analysis = await task
            finally:
                if not task.done():
                    task.cancel()

            if analysis.no_data:
                raise TraceCopilotError(analysis.answer, code=ErrorCode.NO_TRACES)

            token.raise_if_cancelled()
            yield StreamEvent("streaming_complete")
            turn.advance(TurnState.REASONING)
            token.raise_if_cancelled()
            yield StreamEvent("reasoning_start")

            reasoning = await self.reasoner.select_and_tag(
                analysis.sample,
                query=request.query,
                answer=analysis.answer,
                model=request.reasoning_model,
                token=token,
                history=request.history,
                traces=request.traces,
                template=request.reasoning_prompt,
            )
            token.raise_if_cancelled()
            turn.advance(TurnState.COMPLETE)
            yield StreamEvent(
                "complete",
                {
                    "tagged_traces": [asdict(item) for item in reasoning.tagged_traces],
                    "reasoning_status": reasoning.status.value,
                    "sample_size": len(analysis.sample),
                },
            )
        except TurnCancelled:
            logger.info("Turn aborted in state %s", turn.state.value)
            turn.abort()
        except TraceCopilotError as exc:
            error = exc
            logger.warning("Turn failed (%s): %s", exc.code.value, exc)
            turn.advance(TurnState.FAILED)
            if not token.cancelled:
                yield StreamEvent("error", {"message": str(exc), "code": exc.code.value})
        except Exception as exc:
            error = TraceCopilotError(str(exc) or type(exc).__name__)
            logger.exception("Turn failed unexpectedly")
            turn.advance(TurnState.FAILED)
            if not token.cancelled:
                yield StreamEvent("error", {"message": str(error), "code": error.code.value})
        finally:
            if turn.abort():
                token.cancel("stream closed")
                logger.info("Turn stream closed before completion")
            self._record(request, turn, analysis, reasoning, error, started)

    def _record(
        self,
        request: TurnRequest,
        turn: TurnStateMachine,
        analysis: AnalysisResult | None,
        reasoning: ReasoningResult | None,
        error: TraceCopilotError | None,
        started: float,
    ) -> None:
        if turn.state is TurnState.COMPLETE and reasoning is not None:
            status = (
                STATUS_OK
                if reasoning.status is ReasoningStatus.OK and not reasoning.fallback_sample
                else degraded(reasoning.status.value)
            )
        elif turn.state is TurnState.ABORTED:
            status = STATUS_CANCELLED
        else:
            status = STATUS_ERROR

        answer = analysis.answer if analysis is not None else ""
        usage = TokenUsage()
        details: dict[str, Any] = {"states": [state.value for state in turn.history]}
        if analysis is not None:
            usage = usage + analysis.usage
            details["analysis_usage"] = asdict(analysis.usage)
        if reasoning is not None:
            details.update(
                reasoning_status=reasoning.status.value,
                dropped=reasoning.dropped,
                fallback_sample=reasoning.fallback_sample,
            )
            usage = usage + reasoning.usage
            details["reasoning_usage"] = asdict(reasoning.usage)
        if error is not None:
            details.update(error=str(error), error_code=error.code.value)

        self.run_log.record(
            kind="analysis",
            query=request.query,
            models={"analysis": request.model, "reasoning": request.reasoning_model},
            status=status,
            sample_size=len(analysis.sample) if analysis is not None else 0,
            total_traces=len(request.traces),
            answer_chars=len(answer),
            result_count=len(reasoning.tagged_traces) if reasoning is not None else 0,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            latency_ms=(time.perf_counter() - started) * 1000.0,
            details=details,
        )
