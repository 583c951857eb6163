"""Repository interfaces and concrete adapters for corpora, datasets, and jobs."""

from __future__ import annotations

import itertools
import json
import sqlite3
from dataclasses import asdict, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from trace_copilot.analysis.sampler import split_traces
from trace_copilot.types import BatchJob, BatchJobStatus, BatchResult, Dataset, TraceCorpus

BATCH_JOB_FIELDS = frozenset(
    {"name", "query", "model", "max_results", "status", "results", "error", "last_run_at"}
)
BATCH_JOB_NULLABLE = frozenset({"results", "error", "last_run_at"})


class CorpusReader(Protocol):
    """Read-only view the analysis endpoints depend on."""

    def get_analysis(self, analysis_id: int) -> TraceCorpus | None:
        """Fetch an uploaded trace corpus."""

    def list_datasets(self) -> list[Dataset]:
        """Fetch every supplementary dataset."""


class Repository(CorpusReader, Protocol):
    """Full store contract. Identifiers are assigned by the store."""

    def create_analysis(self, content: str, *, source: str | None = None) -> TraceCorpus:
        """Persist a trace corpus."""

    def create_dataset(
        self,
        *,
        name: str,
        filename: str,
        content: Any,
        size: int,
        description: str | None = None,
    ) -> Dataset:
        """Persist a supplementary dataset."""

    def get_dataset(self, dataset_id: int) -> Dataset | None:
        """Fetch one dataset."""

    def delete_dataset(self, dataset_id: int) -> bool:
        """Delete one dataset; False when absent."""

    def create_batch_job(self, analysis_id: int, spec: dict[str, Any]) -> BatchJob:
        """Persist a batch job definition."""

    def get_batch_job(self, job_id: int) -> BatchJob | None:
        """Fetch one batch job."""

    def list_batch_jobs(self, analysis_id: int) -> list[BatchJob]:
        """Batch jobs attached to a corpus, oldest first."""

    def update_batch_job(self, job_id: int, changes: dict[str, Any]) -> BatchJob | None:
        """Apply field changes; None when absent."""

    def delete_batch_job(self, job_id: int) -> bool:
        """Delete one batch job; False when absent."""

    def replace_batch_jobs(self, analysis_id: int, specs: list[dict[str, Any]]) -> list[BatchJob]:
        """Replace every job of a corpus with `specs`; nothing changes if any spec fails."""

    def get_prompt(self, kind: str) -> str | None:
        """Stored prompt override, if any."""

    def set_prompt(self, kind: str, text: str) -> None:
        """Store a prompt override."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_batch_job(job_id: int, analysis_id: int, spec: dict[str, Any]) -> BatchJob:
    return BatchJob(
        id=job_id,
        analysis_id=analysis_id,
        job_id=str(spec.get("job_id") or f"job-{job_id}"),
        name=str(spec["name"]),
        query=str(spec["query"]),
        model=str(spec["model"]),
        max_results=int(spec.get("max_results", 30)),
        status=BatchJobStatus(spec.get("status", BatchJobStatus.PENDING)),
        created_at=_now(),
        results=spec.get("results"),
        error=spec.get("error"),
        last_run_at=spec.get("last_run_at"),
    )


def _clean_changes(changes: dict[str, Any]) -> dict[str, Any]:
    unknown = set(changes) - BATCH_JOB_FIELDS
    if unknown:
        raise ValueError(f"Unknown batch job fields: {sorted(unknown)}")
    nulls = {name for name, value in changes.items() if value is None} - BATCH_JOB_NULLABLE
    if nulls:
        raise ValueError(f"Batch job fields cannot be null: {sorted(nulls)}")
    cleaned = dict(changes)
    if "status" in cleaned:
        cleaned["status"] = BatchJobStatus(cleaned["status"])
    return cleaned


class InMemoryRepository:
    """Process-lifetime store with sequence identifiers."""

    def __init__(self) -> None:
        self._analyses: dict[int, TraceCorpus] = {}
        self._datasets: dict[int, Dataset] = {}
        self._batch_jobs: dict[int, BatchJob] = {}
        self._prompts: dict[str, str] = {}
        self._analysis_ids = itertools.count(1)
        self._dataset_ids = itertools.count(1)
        self._batch_job_ids = itertools.count(1)

    def create_analysis(self, content: str, *, source: str | None = None) -> TraceCorpus:
        corpus = TraceCorpus(
            id=next(self._analysis_ids),
            content=content,
            trace_count=len(split_traces(content)),
            created_at=_now(),
            source=source,
        )
        self._analyses[corpus.id] = corpus
        return corpus

    def get_analysis(self, analysis_id: int) -> TraceCorpus | None:
        return self._analyses.get(analysis_id)

    def create_dataset(
        self,
        *,
        name: str,
        filename: str,
        content: Any,
        size: int,
        description: str | None = None,
    ) -> Dataset:
        dataset = Dataset(
            id=next(self._dataset_ids),
            name=name,
            filename=filename,
            content=content,
            size=size,
            created_at=_now(),
            description=description,
        )
        self._datasets[dataset.id] = dataset
        return dataset

    def get_dataset(self, dataset_id: int) -> Dataset | None:
        return self._datasets.get(dataset_id)

    def list_datasets(self) -> list[Dataset]:
        return list(self._datasets.values())

    def delete_dataset(self, dataset_id: int) -> bool:
        return self._datasets.pop(dataset_id, None) is not None

    def create_batch_job(self, analysis_id: int, spec: dict[str, Any]) -> BatchJob:
        job = _new_batch_job(next(self._batch_job_ids), analysis_id, spec)
        self._batch_jobs[job.id] = job
        return job

    def get_batch_job(self, job_id: int) -> BatchJob | None:
        return self._batch_jobs.get(job_id)

    def list_batch_jobs(self, analysis_id: int) -> list[BatchJob]:
        return [job for job in self._batch_jobs.values() if job.analysis_id == analysis_id]

    def update_batch_job(self, job_id: int, changes: dict[str, Any]) -> BatchJob | None:
        job = self._batch_jobs.get(job_id)
        if job is None:
            return None
        updated = replace(job, **_clean_changes(changes))
        self._batch_jobs[job_id] = updated
        return updated

    def delete_batch_job(self, job_id: int) -> bool:
        return self._batch_jobs.pop(job_id, None) is not None

    def replace_batch_jobs(self, analysis_id: int, specs: list[dict[str, Any]]) -> list[BatchJob]:
        # validate all specs before dropping existing jobs
        for spec in specs:
            _new_batch_job(0, analysis_id, spec)
        for job in self.list_batch_jobs(analysis_id):
            del self._batch_jobs[job.id]
        return [self.create_batch_job(analysis_id, spec) for spec in specs]

    def get_prompt(self, kind: str) -> str | None:
        return self._prompts.get(kind)

    def set_prompt(self, kind: str, text: str) -> None:
        self._prompts[kind] = text


_SCHEMA = """
CREATE TABLE IF NOT EXISTS analyses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    content TEXT NOT NULL,
    trace_count INTEGER NOT NULL,
    source TEXT,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS datasets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    filename TEXT NOT NULL,
    content TEXT NOT NULL,
    description TEXT,
    size INTEGER NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS batch_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    analysis_id INTEGER NOT NULL REFERENCES analyses(id) ON DELETE CASCADE,
    job_id TEXT NOT NULL,
    name TEXT NOT NULL,
    query TEXT NOT NULL,
    model TEXT NOT NULL,
    max_results INTEGER NOT NULL DEFAULT 30,
    status TEXT NOT NULL DEFAULT 'pending',
    results TEXT,
    error TEXT,
    created_at TEXT NOT NULL,
    last_run_at TEXT
);
CREATE TABLE IF NOT EXISTS prompts (kind TEXT PRIMARY KEY, text TEXT NOT NULL);
"""


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SqliteRepository:
    """Durable store on a local SQLite file; ids come from AUTOINCREMENT."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        with sqlite3.connect(self.path) as conn:
            conn.executescript(_SCHEMA)
            conn.commit()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        return conn

    def create_analysis(self, content: str, *, source: str | None = None) -> TraceCorpus:
        created = _now()
        count = len(split_traces(content))
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT INTO analyses(content, trace_count, source, created_at) VALUES(?, ?, ?, ?)",
                (content, count, source, created.isoformat()),
            )
            conn.commit()
        return TraceCorpus(
            id=int(cur.lastrowid),
            content=content,
            trace_count=count,
            created_at=created,
            source=source,
        )

    def get_analysis(self, analysis_id: int) -> TraceCorpus | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM analyses WHERE id = ?", (analysis_id,)).fetchone()
        if row is None:
            return None
        return TraceCorpus(
            id=row["id"],
            content=row["content"],
            trace_count=row["trace_count"],
            created_at=datetime.fromisoformat(row["created_at"]),
            source=row["source"],
        )

    def create_dataset(
        self,
        *,
        name: str,
        filename: str,
        content: Any,
        size: int,
        description: str | None = None,
    ) -> Dataset:
        created = _now()
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT INTO datasets(name, filename, content, description, size, created_at)"
                " VALUES(?, ?, ?, ?, ?, ?)",
                (name, filename, json.dumps(content), description, size, created.isoformat()),
            )
            conn.commit()
        return Dataset(
            id=int(cur.lastrowid),
            name=name,
            filename=filename,
            content=content,
            size=size,
            created_at=created,
            description=description,
        )

    @staticmethod
    def _dataset(row: sqlite3.Row) -> Dataset:
        return Dataset(
            id=row["id"],
            name=row["name"],
            filename=row["filename"],
            content=json.loads(row["content"]),
            size=row["size"],
            created_at=datetime.fromisoformat(row["created_at"]),
            description=row["description"],
        )

    def get_dataset(self, dataset_id: int) -> Dataset | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM datasets WHERE id = ?", (dataset_id,)).fetchone()
        return self._dataset(row) if row is not None else None

    def list_datasets(self) -> list[Dataset]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM datasets ORDER BY id").fetchall()
        return [self._dataset(row) for row in rows]

    def delete_dataset(self, dataset_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM datasets WHERE id = ?", (dataset_id,))
            conn.commit()
        return cur.rowcount > 0

    @staticmethod
    def _batch_job(row: sqlite3.Row) -> BatchJob:
        results = row["results"]
        return BatchJob(
            id=row["id"],
            analysis_id=row["analysis_id"],
            job_id=row["job_id"],
            name=row["name"],
            query=row["query"],
            model=row["model"],
            max_results=row["max_results"],
            status=BatchJobStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            results=(
                [BatchResult(**item) for item in json.loads(results)]
                if results is not None
                else None
            ),
            error=row["error"],
            last_run_at=_parse_time(row["last_run_at"]),
        )

    @staticmethod
    def _row_values(job: BatchJob) -> tuple[Any, ...]:
        results = (
            json.dumps([asdict(item) for item in job.results])
            if job.results is not None
            else None
        )
        return (
            job.analysis_id,
            job.job_id,
            job.name,
            job.query,
            job.model,
            job.max_results,
            job.status.value,
            results,
            job.error,
            job.created_at.isoformat(),
            _iso(job.last_run_at),
        )

    def _insert_batch_job(
        self, conn: sqlite3.Connection, analysis_id: int, spec: dict[str, Any]
    ) -> BatchJob:
        draft = _new_batch_job(0, analysis_id, spec)
        cur = conn.execute(
            "INSERT INTO batch_jobs(analysis_id, job_id, name, query, model, max_results,"
            " status, results, error, created_at, last_run_at)"
            " VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            self._row_values(draft),
        )
        job_id = int(cur.lastrowid)
        if not spec.get("job_id"):
            draft = replace(draft, job_id=f"job-{job_id}")
            conn.execute("UPDATE batch_jobs SET job_id = ? WHERE id = ?", (draft.job_id, job_id))
        return replace(draft, id=job_id)

    def create_batch_job(self, analysis_id: int, spec: dict[str, Any]) -> BatchJob:
        with self._connect() as conn:
            job = self._insert_batch_job(conn, analysis_id, spec)
            conn.commit()
        return job

    def get_batch_job(self, job_id: int) -> BatchJob | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM batch_jobs WHERE id = ?", (job_id,)).fetchone()
        return self._batch_job(row) if row is not None else None

    def list_batch_jobs(self, analysis_id: int) -> list[BatchJob]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM batch_jobs WHERE analysis_id = ? ORDER BY id", (analysis_id,)
            ).fetchall()
        return [self._batch_job(row) for row in rows]

    def update_batch_job(self, job_id: int, changes: dict[str, Any]) -> BatchJob | None:
        job = self.get_batch_job(job_id)
        if job is None:
            return None
        updated = replace(job, **_clean_changes(changes))
        values = self._row_values(updated)
        with self._connect() as conn:
            conn.execute(
                "UPDATE batch_jobs SET analysis_id = ?, job_id = ?, name = ?, query = ?,"
                " model = ?, max_results = ?, status = ?, results = ?, error = ?,"
                " created_at = ?, last_run_at = ? WHERE id = ?",
                (*values, job_id),
            )
            conn.commit()
        return updated

    def delete_batch_job(self, job_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM batch_jobs WHERE id = ?", (job_id,))
            conn.commit()
        return cur.rowcount > 0

    def replace_batch_jobs(self, analysis_id: int, specs: list[dict[str, Any]]) -> list[BatchJob]:
        with self._connect() as conn:
            conn.execute("DELETE FROM batch_jobs WHERE analysis_id = ?", (analysis_id,))
            jobs = [self._insert_batch_job(conn, analysis_id, spec) for spec in specs]
            conn.commit()
        return jobs

    def get_prompt(self, kind: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute("SELECT text FROM prompts WHERE kind = ?", (kind,)).fetchone()
        return row["text"] if row else None

    def set_prompt(self, kind: str, text: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO prompts(kind, text) VALUES(?, ?)"
                " ON CONFLICT(kind) DO UPDATE SET text=excluded.text",
                (kind, text),
            )
            conn.commit()
