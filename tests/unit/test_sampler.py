from trace_copilot.analysis.sampler import (
    derive_seed,
    lcg_draws,
    sample_traces,
    split_traces,
)
from trace_copilot.types import SampledTrace


def _corpus(count: int) -> list[str]:
    return [f"trace {i}: user asked about order #{i * 7}" for i in range(count)]


def test_sample_is_reproducible() -> None:
    corpus = _corpus(300)

    first = sample_traces(corpus, 50)
    second = sample_traces(list(corpus), 50)

    assert first == second


def test_sample_size_is_bounded_by_corpus() -> None:
    corpus = _corpus(12)

    assert len(sample_traces(corpus, 5)) == 5
    assert len(sample_traces(corpus, 12)) == 12
    assert len(sample_traces(corpus, 40)) == 12
    assert sample_traces(corpus, 0) == []
    assert sample_traces([], 10) == []


def test_original_index_points_at_source_line() -> None:
    corpus = _corpus(40)

    sample = sample_traces(corpus, 40)

    assert sorted(item.original_index for item in sample) == list(range(1, 41))
    for item in sample:
        assert corpus[item.original_index - 1] == item.trace


def test_two_line_corpus_permutation() -> None:
    # seed = 2, first draw = 67899 / 233280 -> j = 0, so the pair swaps.
    assert sample_traces(["a", "b"], 2) == [
        SampledTrace(trace="b", original_index=2),
        SampledTrace(trace="a", original_index=1),
    ]


def test_three_line_corpus_permutation() -> None:
    assert [item.original_index for item in sample_traces(["x", "y", "z"], 3)] == [2, 3, 1]


def test_truncation_keeps_shuffled_prefix() -> None:
    corpus = _corpus(100)

    full = sample_traces(corpus, 100)

    assert sample_traces(corpus, 10) == full[:10]


def test_seed_depends_only_on_total_length() -> None:
    assert derive_seed(["ab", "c"]) == derive_seed(["a", "bc"]) == 3
    assert derive_seed(["x" * 100_001]) == 1


def test_lcg_draws_are_unit_interval() -> None:
    draws = lcg_draws(12345)
    values = [next(draws) for _ in range(500)]

    assert all(0.0 <= value < 1.0 for value in values)


def test_split_traces_drops_blank_lines() -> None:
    assert split_traces("one\n\n  \ntwo\nthree\n") == ["one", "two", "three"]
