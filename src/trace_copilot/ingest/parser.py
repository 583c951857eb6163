"""Parsing of uploaded trace files and supplementary datasets."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from trace_copilot.analysis.sampler import split_traces
from trace_copilot.errors import InputError


@dataclass(slots=True)
class ParsedTraceFile:
    """Raw trace corpus text with its origin."""

    content: str
    source: str
    trace_count: int


class TraceFileParser(ABC):
    """Base parser for trace corpus files."""

    extensions: tuple[str, ...] = ()

    @abstractmethod
    def parse(self, path: Path) -> ParsedTraceFile:
        """Read a file into newline-delimited trace text."""


class LineParser(TraceFileParser):
    """Plain text and log files: every non-blank line is one trace."""

    extensions = (".txt", ".log")

    def parse(self, path: Path) -> ParsedTraceFile:
        content = path.read_text(encoding="utf-8")
        return ParsedTraceFile(
            content=content,
            source=str(path),
            trace_count=len(split_traces(content)),
        )


class JsonLinesParser(TraceFileParser):
    """JSON Lines exports; each line is kept verbatim after a validity check."""

    extensions = (".jsonl", ".ndjson")

    def parse(self, path: Path) -> ParsedTraceFile:
        lines = split_traces(path.read_text(encoding="utf-8"))
        for position, line in enumerate(lines, start=1):
            try:
                json.loads(line)
            except json.JSONDecodeError as exc:
                raise InputError(f"Invalid JSON on line {position} of {path.name}: {exc}") from exc
        return ParsedTraceFile(
            content="\n".join(lines),
            source=str(path),
            trace_count=len(lines),
        )


class ParserRegistry:
    """Maps file extension to parser implementation."""

    def __init__(self, parsers: list[TraceFileParser] | None = None) -> None:
        self._parsers: dict[str, TraceFileParser] = {}
        for parser in parsers or [LineParser(), JsonLinesParser()]:
            self.register(parser)

    def register(self, parser: TraceFileParser) -> None:
        for extension in parser.extensions:
            self._parsers[extension.lower()] = parser

    def parse_path(self, path: str | Path) -> ParsedTraceFile:
        file_path = Path(path)
        parser = self._parsers.get(file_path.suffix.lower())
        if parser is None:
            raise InputError(f"No parser registered for extension: {file_path.suffix}")
        if not file_path.is_file():
            raise InputError(f"Trace file not found: {file_path}")
        return parser.parse(file_path)


def parse_dataset_content(raw: str | bytes) -> Any:
    """Decode an uploaded dataset document; datasets must be JSON."""
    text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise InputError(f"Invalid JSON format: {exc}") from exc


def resolve_upload_path(path: str | Path, root: Path | None) -> Path:
    """Resolve a server-side upload path, confined to `root`.

    Relative paths are taken from `root`. Raises `InputError` when uploads are
    disabled (`root` is None) or the path escapes the root.
    """
    if root is None:
        raise InputError("Server-side file uploads are disabled")
    base = root.resolve()
    candidate = Path(path)
    resolved = (candidate if candidate.is_absolute() else base / candidate).resolve()
    if not resolved.is_relative_to(base):
        raise InputError(f"Upload path is outside the upload root: {path}")
    return resolved
