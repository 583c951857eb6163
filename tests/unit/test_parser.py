import pytest

from trace_copilot.errors import InputError
from trace_copilot.ingest.parser import ParserRegistry, parse_dataset_content, resolve_upload_path


def test_plain_text_lines_become_traces(tmp_path) -> None:
    path = tmp_path / "traces.txt"
    path.write_text("first trace\n\n  \nsecond trace\n", encoding="utf-8")

    parsed = ParserRegistry().parse_path(path)

    assert parsed.trace_count == 2
    assert parsed.source == str(path)


def test_json_lines_are_validated(tmp_path) -> None:
    good = tmp_path / "traces.jsonl"
    good.write_text('{"id": 1}\n{"id": 2}\n', encoding="utf-8")
    bad = tmp_path / "broken.jsonl"
    bad.write_text('{"id": 1}\nnot json\n', encoding="utf-8")

    registry = ParserRegistry()

    assert registry.parse_path(good).content == '{"id": 1}\n{"id": 2}'
    with pytest.raises(InputError, match="line 2"):
        registry.parse_path(bad)


def test_unknown_extension_and_missing_file(tmp_path) -> None:
    registry = ParserRegistry()

    with pytest.raises(InputError, match="No parser"):
        registry.parse_path(tmp_path / "traces.csv")
    with pytest.raises(InputError, match="not found"):
        registry.parse_path(tmp_path / "missing.txt")


def test_dataset_content_must_be_json() -> None:
    assert parse_dataset_content(b'{"examples": []}') == {"examples": []}
    with pytest.raises(InputError, match="Invalid JSON format"):
        parse_dataset_content("{oops")


def test_upload_path_disabled_without_root(tmp_path) -> None:
    with pytest.raises(InputError, match="disabled"):
        resolve_upload_path(tmp_path / "traces.txt", None)


def test_upload_path_resolves_inside_root(tmp_path) -> None:
    (tmp_path / "runs").mkdir()

    assert resolve_upload_path("runs/a.txt", tmp_path) == (tmp_path / "runs" / "a.txt").resolve()
    assert resolve_upload_path(tmp_path / "b.txt", tmp_path) == (tmp_path / "b.txt").resolve()


@pytest.mark.parametrize("path", ["../outside.txt", "runs/../../outside.txt", "/etc/passwd"])
def test_upload_path_cannot_escape_root(tmp_path, path) -> None:
    root = tmp_path / "uploads"
    root.mkdir()

    with pytest.raises(InputError, match="outside the upload root"):
        resolve_upload_path(path, root)
