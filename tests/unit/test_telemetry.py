import json

import pytest

from trace_copilot.obs.telemetry import (
    STATUS_CANCELLED,
    STATUS_OK,
    RunLog,
    degraded,
    estimate_payload_tokens,
    estimate_token_count,
)


def test_run_log_summary_groups_statuses() -> None:
    log = RunLog()
    log.record(kind="analysis", query="q", models={}, status=STATUS_OK, latency_ms=10.0)
    log.record(kind="analysis", query="q", models={}, status=STATUS_OK, latency_ms=30.0)
    log.record(kind="analysis", query="q", models={}, status=degraded("timeout"), latency_ms=20.0)
    log.record(kind="batch", query="q", models={}, status=STATUS_CANCELLED, latency_ms=40.0)

    summary = log.summary()

    assert summary["total_runs"] == 4
    assert summary["by_status"] == {"ok": 2, "degraded:timeout": 1, "cancelled": 1}
    assert summary["avg_latency_ms"] == pytest.approx(25.0)


def test_run_log_is_bounded_and_ordered() -> None:
    log = RunLog(max_records=2)
    for query in ("one", "two", "three"):
        log.record(kind="analysis", query=query, models={}, status=STATUS_OK)

    assert [run.query for run in log.list_recent(10)] == ["two", "three"]
    assert [run.query for run in log.list_recent(1)] == ["three"]
    assert log.list_recent(0) == []


def test_run_lookup() -> None:
    log = RunLog()
    run = log.record(
        kind="analysis",
        query="q",
        models={"analysis": "gpt-4o"},
        status=STATUS_OK,
        input_tokens=1000,
        output_tokens=1000,
    )

    assert log.get(run.run_id).estimated_cost_usd == pytest.approx(0.02)
    with pytest.raises(KeyError):
        log.get("missing")


def test_empty_summary() -> None:
    assert RunLog().summary()["total_runs"] == 0


def test_estimate_token_count() -> None:
    assert estimate_token_count("") == 0
    assert estimate_token_count("refund loop, again!") == 5


def test_estimate_payload_tokens_counts_the_json_rendering() -> None:
    payload = {"selected_traces": [{"line_number": 2, "tags": ["Refund loops"]}]}

    assert estimate_payload_tokens("refund loop, again!") == 5
    assert estimate_payload_tokens(payload) == estimate_token_count(json.dumps(payload))
    assert estimate_payload_tokens({}) == 2
