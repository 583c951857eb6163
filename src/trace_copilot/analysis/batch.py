"""One-shot relevance ranking over a whole trace corpus."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from trace_copilot.analysis.cancellation import CancellationToken
from trace_copilot.analysis.prompts import BATCH_PROMPT, format_numbered_traces, render
from trace_copilot.analysis.provider import CompletionProvider
from trace_copilot.analysis.sampler import index_traces
from trace_copilot.analysis.schemas import (
    BatchMatchItem,
    PayloadShapeError,
    batch_schema,
    parse_items,
)
from trace_copilot.config import TimeoutConfig
from trace_copilot.errors import BatchRankingError, TurnCancelled
from trace_copilot.obs.telemetry import Timer, estimate_payload_tokens, estimate_token_count
from trace_copilot.types import BatchRanking, BatchResult, TokenUsage

logger = logging.getLogger(__name__)

BATCH_TEMPERATURE = 0.1


class BatchRanker:
    """Ranks every trace against a query with a single structured call.

    No sampling or truncation is applied. Provider failures raise
    `BatchRankingError`; an unparseable payload yields no results. The
    returned `BatchRanking` carries the estimated token usage of the call.
    """

    def __init__(
        self, provider: CompletionProvider, *, timeouts: TimeoutConfig | None = None
    ) -> None:
        self.provider = provider
        self.timeouts = timeouts or TimeoutConfig()

    def build_prompt(self, traces: Sequence[str], *, query: str, max_results: int) -> str:
        return render(
            BATCH_PROMPT,
            {
                "query": query,
                "traces": format_numbered_traces(index_traces(traces)),
                "max_results": str(max_results),
            },
        )

    async def rank(
        self,
        traces: Sequence[str],
        *,
        query: str,
        max_results: int,
        model: str,
        token: CancellationToken | None = None,
    ) -> BatchRanking:
        if not traces:
            return BatchRanking([])
        token = token or CancellationToken()
        prompt = self.build_prompt(traces, query=query, max_results=max_results)
        logger.info(
            "Batch ranking: query=%r model=%s max_results=%d traces=%d",
            query,
            model,
            max_results,
            len(traces),
        )

        with Timer() as timer:
            try:
                payload = await token.run(
                    self.provider.complete_structured(
                        prompt,
                        schema=batch_schema(max_results),
                        model=model,
                        temperature=BATCH_TEMPERATURE,
                    ),
                    timeout=self.timeouts.batch_seconds,
                )
            except asyncio.TimeoutError as exc:
                raise BatchRankingError(
                    f"Batch ranking timed out after {self.timeouts.batch_seconds:.0f}s"
                ) from exc
            except TurnCancelled:
                raise
            except Exception as exc:
                logger.exception("Batch ranking call failed")
                raise BatchRankingError(f"Batch ranking failed: {exc}") from exc

        usage = TokenUsage(estimate_token_count(prompt), estimate_payload_tokens(payload))
        try:
            items, invalid = parse_items(payload, "matching_traces", BatchMatchItem)
        except PayloadShapeError:
            logger.exception("Batch ranking payload could not be parsed")
            return BatchRanking([], usage)

        results = [
            BatchResult(
                trace=traces[item.line_number - 1],
                original_index=item.line_number - 1,
                relevance_score=item.relevance_score,
                reasoning=item.reasoning,
            )
            for item in items
            if 1 <= item.line_number <= len(traces)
        ]
        results.sort(key=lambda result: result.relevance_score, reverse=True)
        results = results[:max_results]
        logger.info(
            "Batch ranking complete in %.0fms: %d results (%d invalid items)",
            timer.elapsed_ms,
            len(results),
            invalid,
        )
        return BatchRanking(results, usage)
