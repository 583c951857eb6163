"""Free-text analysis stage over the sampled working set."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from trace_copilot.analysis.cancellation import CancellationToken
from trace_copilot.analysis.prompts import (
    ANALYSIS_PROMPT,
    format_analysis_traces,
    format_conversation,
    format_datasets,
    render,
)
from trace_copilot.analysis.provider import CompletionProvider
from trace_copilot.analysis.streaming import FragmentEmitter, FragmentSink
from trace_copilot.config import StreamingConfig, TimeoutConfig
from trace_copilot.errors import AnalysisError, ErrorCode, TurnCancelled
from trace_copilot.obs.telemetry import Timer, estimate_token_count
from trace_copilot.types import (
    AnalysisResult,
    ConversationTurn,
    Dataset,
    SampledTrace,
    TokenUsage,
)

logger = logging.getLogger(__name__)

NO_TRACES_ANSWER = "ERROR: No traces found in the uploaded data."


class TraceAnalyzer:
    """Runs the analysis prompt and delivers the answer to a fragment sink.

    The provider is asked for one complete answer which is then fragmented by
    `FragmentEmitter`. With `StreamingConfig.mode == "native"` the provider's
    own token stream is forwarded instead and no artificial delay is added.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        *,
        streaming: StreamingConfig | None = None,
        timeouts: TimeoutConfig | None = None,
    ) -> None:
        self.provider = provider
        self.streaming = streaming or StreamingConfig()
        self.timeouts = timeouts or TimeoutConfig()
        self.emitter = FragmentEmitter(self.streaming)

    def build_prompt(
        self,
        sample: Sequence[SampledTrace],
        *,
        total_traces: int,
        query: str,
        history: Sequence[ConversationTurn] = (),
        datasets: Sequence[Dataset] = (),
        template: str | None = None,
    ) -> str:
        return render(
            template or ANALYSIS_PROMPT,
            {
                "conversation": format_conversation(history, query),
                "traces": format_analysis_traces(sample, total_traces),
                "datasets": format_datasets(datasets),
            },
        )

    async def analyze(
        self,
        sample: Sequence[SampledTrace],
        *,
        total_traces: int,
        query: str,
        model: str,
        sink: FragmentSink,
        token: CancellationToken,
        history: Sequence[ConversationTurn] = (),
        datasets: Sequence[Dataset] = (),
        template: str | None = None,
    ) -> AnalysisResult:
        """Produce the full answer for one turn.

        Raises:
            TurnCancelled: the token fired before or during the stage.
            AnalysisError: the provider call failed or timed out.
        """
        if not sample:
            return AnalysisResult(answer=NO_TRACES_ANSWER, sample=[], model=model, no_data=True)

        prompt = self.build_prompt(
            sample,
            total_traces=total_traces,
            query=query,
            history=history,
            datasets=datasets,
            template=template,
        )
        logger.info(
            "Analysis request: %d of %d traces, model=%s, prompt=%d chars",
            len(sample),
            total_traces,
            model,
            len(prompt),
        )

        token.raise_if_cancelled()
        with Timer() as timer:
            try:
                if self.streaming.mode == "native":
                    answer = await token.run(
                        self._forward_stream(prompt, model, sink, token),
                        timeout=self.timeouts.analysis_seconds,
                    )
                else:
                    answer = await token.run(
                        self.provider.complete(prompt, model=model),
                        timeout=self.timeouts.analysis_seconds,
                    )
            except TurnCancelled:
                raise
            except asyncio.TimeoutError as exc:
                raise AnalysisError(
                    f"Analysis timed out after {self.timeouts.analysis_seconds:.0f}s",
                    code=ErrorCode.ANALYSIS_TIMEOUT,
                ) from exc
            except Exception as exc:
                logger.exception("Analysis call failed")
                raise AnalysisError(f"Analysis failed: {exc}") from exc
        logger.info("Analysis answer: %d chars in %.0fms", len(answer), timer.elapsed_ms)

        if self.streaming.mode != "native":
            await self.emitter.emit(answer, sink, token)
        token.raise_if_cancelled()

        return AnalysisResult(
            answer=answer,
            sample=list(sample),
            model=model,
            usage=TokenUsage(estimate_token_count(prompt), estimate_token_count(answer)),
        )

    async def _forward_stream(
        self, prompt: str, model: str, sink: FragmentSink, token: CancellationToken
    ) -> str:
        parts: list[str] = []
        async for chunk in self.provider.stream(prompt, model=model):
            if token.cancelled:
                break
            parts.append(chunk)
            sink(chunk)
        return "".join(parts)
