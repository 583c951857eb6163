"""Deterministic trace sampling.

The working set for a turn is a seeded Fisher-Yates shuffle of the corpus,
truncated to a bound. The seed is a cheap function of the corpus (total
character length modulo `SEED_MODULUS`), so two corpora with the same
aggregate length shuffle identically. It is a reproducibility device only and
must never be treated as a content fingerprint.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence

from trace_copilot.types import SampledTrace

SEED_MODULUS = 100_000

_LCG_MULTIPLIER = 9301
_LCG_INCREMENT = 49297
_LCG_MODULUS = 233280


def split_traces(content: str) -> list[str]:
    """Split raw uploaded text into trace lines, dropping blank lines."""
    return [line for line in content.split("\n") if line.strip()]


def derive_seed(traces: Sequence[str]) -> int:
    return sum(len(trace) for trace in traces) % SEED_MODULUS


def lcg_draws(seed: int) -> Iterator[float]:
    """Yield uniform draws in [0, 1) from the linear-congruential generator."""
    state = seed
    while True:
        state = (state * _LCG_MULTIPLIER + _LCG_INCREMENT) % _LCG_MODULUS
        yield state / _LCG_MODULUS


def seeded_shuffle(items: Sequence[SampledTrace], seed: int) -> list[SampledTrace]:
    shuffled = list(items)
    draws = lcg_draws(seed)
    for i in range(len(shuffled) - 1, 0, -1):
        j = int(next(draws) * (i + 1))
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def index_traces(traces: Sequence[str]) -> list[SampledTrace]:
    return [
        SampledTrace(trace=trace, original_index=position)
        for position, trace in enumerate(traces, start=1)
    ]


def sample_traces(traces: Sequence[str], max_count: int) -> list[SampledTrace]:
    """Return a reproducible, bounded permutation of `traces`.

    `original_index` is the 1-based position in `traces` and survives the
    shuffle. The output length is `min(max_count, len(traces))`; an empty
    corpus yields an empty sample, which callers treat as "no data".
    """
    if not traces or max_count <= 0:
        return []
    shuffled = seeded_shuffle(index_traces(traces), derive_seed(traces))
    return shuffled[: min(max_count, len(traces))]
