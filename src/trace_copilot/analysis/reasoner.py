"""Schema-constrained selection and tagging of traces from the turn's sample."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from trace_copilot.analysis.cancellation import CancellationToken
from trace_copilot.analysis.prompts import (
    REASONING_PROMPT,
    extract_categories,
    format_conversation,
    format_numbered_traces,
    render,
    tail_truncate,
)
from trace_copilot.analysis.provider import CompletionProvider
from trace_copilot.analysis.sampler import sample_traces
from trace_copilot.analysis.schemas import (
    PayloadShapeError,
    SelectedTraceItem,
    parse_items,
    selection_schema,
)
from trace_copilot.config import ReasoningConfig, TimeoutConfig
from trace_copilot.errors import TurnCancelled
from trace_copilot.obs.telemetry import Timer, estimate_payload_tokens, estimate_token_count
from trace_copilot.types import (
    ConversationTurn,
    ReasoningResult,
    ReasoningStatus,
    SampledTrace,
    TaggedTrace,
    TokenUsage,
)

logger = logging.getLogger(__name__)


class TraceReasoner:
    """Picks a page of traces that illustrate the analysis answer and tags them.

    The primary path reuses the sample the analysis stage showed the model, so
    every returned line number refers to a trace the answer was written from.
    Failures never propagate: they degrade to an empty result whose `status`
    says why.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        *,
        config: ReasoningConfig | None = None,
        timeouts: TimeoutConfig | None = None,
    ) -> None:
        self.provider = provider
        self.config = config or ReasoningConfig()
        self.timeouts = timeouts or TimeoutConfig()

    def fallback_sample(self, traces: Sequence[str]) -> list[SampledTrace]:
        """Re-derive a sample when the caller has none.

        Only the first `fallback_trace_limit` corpus lines are considered, then
        shuffled with the same sampler. This can differ from what the analysis
        stage saw and exists for callers without a shared sample.
        """
        limited = list(traces[: self.config.fallback_trace_limit])
        return sample_traces(limited, len(limited))

    def build_prompt(
        self,
        sample: Sequence[SampledTrace],
        *,
        query: str,
        answer: str,
        history: Sequence[ConversationTurn] = (),
        template: str | None = None,
    ) -> str:
        conversation = tail_truncate(
            format_conversation(history, query, answer=answer),
            self.config.max_conversation_chars,
        )
        return render(
            template or REASONING_PROMPT,
            {
                "conversation": conversation,
                "traces": format_numbered_traces(
                    sample, max_chars=self.config.max_trace_chars
                ),
            },
        )

    async def select_and_tag(
        self,
        sample: Sequence[SampledTrace] | None,
        *,
        query: str,
        answer: str,
        model: str,
        token: CancellationToken,
        history: Sequence[ConversationTurn] = (),
        traces: Sequence[str] = (),
        template: str | None = None,
    ) -> ReasoningResult:
        used_fallback = not sample
        working: list[SampledTrace] = (
            list(sample) if sample else self.fallback_sample(traces)
        )
        if used_fallback:
            logger.info("Reasoning without a shared sample: %d fallback traces", len(working))

        if token.cancelled:
            logger.info("Reasoning skipped: turn already cancelled")
            return ReasoningResult([], ReasoningStatus.CANCELLED, fallback_sample=used_fallback)
        if not working:
            return ReasoningResult([], ReasoningStatus.EMPTY, fallback_sample=used_fallback)

        prompt = self.build_prompt(
            working, query=query, answer=answer, history=history, template=template
        )
        logger.info(
            "Reasoning request: %d traces, model=%s, prompt=%d chars",
            len(working),
            model,
            len(prompt),
        )

        sent = TokenUsage(input_tokens=estimate_token_count(prompt))
        with Timer() as timer:
            try:
                payload = await token.run(
                    self.provider.complete_structured(
                        prompt,
                        schema=selection_schema(self.config.page_size),
                        model=model,
                    ),
                    timeout=self.timeouts.reasoning_seconds,
                )
            except TurnCancelled:
                logger.info("Reasoning cancelled mid-request")
                return ReasoningResult(
                    [], ReasoningStatus.CANCELLED, fallback_sample=used_fallback, usage=sent
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Reasoning timed out after %.0fs", self.timeouts.reasoning_seconds
                )
                return ReasoningResult(
                    [], ReasoningStatus.TIMEOUT, fallback_sample=used_fallback, usage=sent
                )
            except Exception:
                logger.exception("Reasoning call failed")
                return ReasoningResult(
                    [], ReasoningStatus.PROVIDER_ERROR, fallback_sample=used_fallback, usage=sent
                )

        usage = TokenUsage(sent.input_tokens, estimate_payload_tokens(payload))
        try:
            items, invalid = parse_items(payload, "selected_traces", SelectedTraceItem)
        except PayloadShapeError:
            logger.exception("Reasoning payload could not be parsed")
            return ReasoningResult(
                [], ReasoningStatus.PARSE_ERROR, fallback_sample=used_fallback, usage=usage
            )

        tagged, unmatched = map_selection(working, items)
        if self.config.enforce_answer_categories:
            tagged = restrict_tags(tagged, extract_categories(answer))

        dropped = invalid + unmatched
        logger.info(
            "Reasoning complete in %.0fms: %d tagged, %d dropped",
            timer.elapsed_ms,
            len(tagged),
            dropped,
        )
        status = ReasoningStatus.OK if tagged else ReasoningStatus.EMPTY
        return ReasoningResult(
            tagged, status, dropped=dropped, fallback_sample=used_fallback, usage=usage
        )


def map_selection(
    sample: Sequence[SampledTrace], items: Sequence[SelectedTraceItem]
) -> tuple[list[TaggedTrace], int]:
    """Resolve line numbers against the sample's original indexes.

    References outside the sample and repeats of an already selected line are
    dropped. Returns the tagged traces in model order and the drop count.
    """
    by_line = {item.original_index: item.trace for item in sample}
    seen: set[int] = set()
    tagged: list[TaggedTrace] = []
    dropped = 0
    for item in items:
        text = by_line.get(item.line_number, "")
        if not text or item.line_number in seen:
            dropped += 1
            continue
        seen.add(item.line_number)
        tagged.append(
            TaggedTrace(
                trace=text,
                tags=list(item.tags),
                line_number=item.line_number,
                relevance_score=item.relevance_score,
            )
        )
    return tagged, dropped


def restrict_tags(tagged: Sequence[TaggedTrace], categories: Sequence[str]) -> list[TaggedTrace]:
    """Keep only tags naming a category stated in the answer (case-insensitive)."""
    allowed = {category.casefold(): category for category in categories}
    restricted: list[TaggedTrace] = []
    for item in tagged:
        tags = [allowed[tag.casefold()] for tag in item.tags if tag.casefold() in allowed]
        restricted.append(
            TaggedTrace(
                trace=item.trace,
                tags=tags,
                line_number=item.line_number,
                relevance_score=item.relevance_score,
            )
        )
    return restricted
