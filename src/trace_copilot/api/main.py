"""FastAPI entrypoint for upload, streaming analysis, batch jobs, and runs."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import AliasChoices, BaseModel, Field

from trace_copilot.analysis.batch import BatchRanker
from trace_copilot.analysis.cancellation import CancellationToken
from trace_copilot.analysis.pipeline import AnalysisPipeline, TurnRequest
from trace_copilot.analysis.prompts import DEFAULT_PROMPTS
from trace_copilot.analysis.provider import CompletionProvider, create_provider
from trace_copilot.analysis.sampler import split_traces
from trace_copilot.config import CopilotConfig, IngestConfig
from trace_copilot.errors import BatchRankingError, TraceCopilotError, get_status_code
from trace_copilot.ingest.parser import (
    ParserRegistry,
    parse_dataset_content,
    resolve_upload_path,
)
from trace_copilot.obs.telemetry import (
    STATUS_ERROR,
    STATUS_OK,
    RunLog,
    Timer,
    configure_logging,
)
from trace_copilot.storage.repository import (
    CorpusReader,
    InMemoryRepository,
    Repository,
    SqliteRepository,
)
from trace_copilot.types import BatchJob, BatchJobStatus, ConversationTurn

logger = logging.getLogger(__name__)

DISCONNECT_POLL_SECONDS = 0.5


class ChatTurnModel(BaseModel):
    role: Literal["user", "assistant"] = Field(validation_alias=AliasChoices("role", "type"))
    text: str = Field(validation_alias=AliasChoices("text", "content"))
    timestamp: float | None = None

    def to_turn(self) -> ConversationTurn:
        return ConversationTurn(role=self.role, text=self.text, timestamp=self.timestamp)


class UploadRequest(BaseModel):
    content: str | None = None
    traces: list[str] | None = None
    path: str | None = None


class DatasetRequest(BaseModel):
    name: str = Field(min_length=1)
    filename: str = "dataset.json"
    content: Any = None
    raw: str | None = None
    description: str | None = None


class AnalyzeRequest(BaseModel):
    query: str = Field(min_length=1)
    analysis_id: int | None = None
    traces: list[str] | None = None
    fallback_traces: list[str] | None = None
    model: str | None = None
    reasoning_model: str | None = None
    custom_prompt: str | None = None
    custom_reasoning_prompt: str | None = None
    max_traces: int | None = Field(default=None, ge=0, le=5000)
    chat_history: list[ChatTurnModel] = Field(default_factory=list)


class BatchRequest(BaseModel):
    query: str = Field(min_length=1)
    analysis_id: int | None = None
    traces: list[str] | None = None
    fallback_traces: list[str] | None = None
    model: str | None = None
    max_results: int | None = Field(default=None, ge=1, le=200)


class BatchJobSpec(BaseModel):
    job_id: str | None = None
    name: str = Field(min_length=1)
    query: str = Field(min_length=1)
    model: str | None = None
    max_results: int = Field(default=30, ge=1, le=200)


class SaveBatchJobsRequest(BaseModel):
    analysis_id: int
    jobs: list[BatchJobSpec]


class BatchJobUpdate(BaseModel):
    name: str | None = None
    query: str | None = None
    model: str | None = None
    max_results: int | None = Field(default=None, ge=1, le=200)
    status: BatchJobStatus | None = None
    error: str | None = None


class RunBatchJobsRequest(BaseModel):
    job_ids: list[int] = Field(min_length=1)


class PromptUpdate(BaseModel):
    prompt: str = Field(min_length=1)


@dataclass(slots=True)
class Services:
    config: CopilotConfig
    repository: Repository
    provider: CompletionProvider
    provider_mode: str
    run_log: RunLog
    pipeline: AnalysisPipeline
    ranker: BatchRanker
    parsers: ParserRegistry


def _create_repository() -> Repository:
    db_path = os.getenv("TRACE_COPILOT_DB")
    if db_path:
        return SqliteRepository(db_path)
    return InMemoryRepository()


def create_app(
    *,
    provider: CompletionProvider | None = None,
    repository: Repository | None = None,
    config: CopilotConfig | None = None,
) -> FastAPI:
    configure_logging()
    if config is None:
        upload_root = os.getenv("TRACE_COPILOT_UPLOAD_ROOT")
        config = CopilotConfig(ingest=IngestConfig(upload_root=upload_root or None))
    if provider is None:
        provider, provider_mode = create_provider()
    else:
        provider_mode = type(provider).__name__
    run_log = RunLog()

    application = FastAPI(title="Trace Copilot", version="0.1.0")
    application.state.services = Services(
        config=config,
        repository=repository or _create_repository(),
        provider=provider,
        provider_mode=provider_mode,
        run_log=run_log,
        pipeline=AnalysisPipeline(provider, config=config, run_log=run_log),
        ranker=BatchRanker(provider, timeouts=config.timeouts),
        parsers=ParserRegistry(),
    )
    _register_routes(application)
    return application


def _services(request: Request) -> Services:
    return request.app.state.services


def _http_error(exc: TraceCopilotError) -> HTTPException:
    return HTTPException(status_code=get_status_code(exc.code), detail=str(exc))


def _clean(traces: list[str] | None) -> list[str]:
    return [trace for trace in traces or [] if trace.strip()]


def resolve_traces(
    store: CorpusReader,
    *,
    analysis_id: int | None,
    traces: list[str] | None,
    fallback_traces: list[str] | None,
) -> list[str]:
    """Pick the corpus for a request: fallback override, inline list, then stored corpus."""
    if _clean(fallback_traces):
        logger.info("Using %d fallback traces", len(_clean(fallback_traces)))
        return _clean(fallback_traces)
    if traces is not None:
        return _clean(traces)
    if analysis_id is None:
        raise HTTPException(status_code=400, detail="Analysis ID or traces are required")
    corpus = store.get_analysis(analysis_id)
    if corpus is None:
        raise HTTPException(status_code=404, detail="Analysis not found")
    return split_traces(corpus.content)


async def watch_disconnect(request: Request, token: CancellationToken) -> None:
    while not token.cancelled:
        if await request.is_disconnected():
            token.cancel("client disconnected")
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


def _job_payload(job: BatchJob) -> dict[str, Any]:
    return asdict(job)


async def _run_batch_job(services: Services, job: BatchJob) -> BatchJob:
    repository = services.repository
    corpus = repository.get_analysis(job.analysis_id)
    if corpus is None:
        updated = repository.update_batch_job(
            job.id, {"status": BatchJobStatus.ERROR, "error": "Analysis not found"}
        )
        return updated or job

    repository.update_batch_job(
        job.id,
        {"status": BatchJobStatus.RUNNING, "error": None, "last_run_at": datetime.now(timezone.utc)},
    )
    traces = split_traces(corpus.content)
    with Timer() as timer:
        try:
            ranking = await services.ranker.rank(
                traces, query=job.query, max_results=job.max_results, model=job.model
            )
        except BatchRankingError as exc:
            services.run_log.record(
                kind="batch",
                query=job.query,
                models={"batch": job.model},
                status=STATUS_ERROR,
                total_traces=len(traces),
                details={"job_id": job.id, "error": str(exc)},
            )
            updated = repository.update_batch_job(
                job.id, {"status": BatchJobStatus.ERROR, "error": str(exc)}
            )
            return updated or job

    services.run_log.record(
        kind="batch",
        query=job.query,
        models={"batch": job.model},
        status=STATUS_OK,
        total_traces=len(traces),
        result_count=len(ranking.results),
        input_tokens=ranking.usage.input_tokens,
        output_tokens=ranking.usage.output_tokens,
        latency_ms=timer.elapsed_ms,
        details={"job_id": job.id},
    )
    updated = repository.update_batch_job(
        job.id, {"status": BatchJobStatus.COMPLETED, "results": ranking.results, "error": None}
    )
    return updated or job


def _register_routes(application: FastAPI) -> None:
    @application.get("/health")
    def health(request: Request) -> dict[str, Any]:
        services = _services(request)
        return {
            "status": "ok",
            "provider_mode": services.provider_mode,
            "store": type(services.repository).__name__,
            "run_count": len(services.run_log.list_recent(limit=1000)),
        }

    @application.post("/analyses")
    def upload(payload: UploadRequest, request: Request) -> dict[str, Any]:
        services = _services(request)
        source: str | None = None
        if payload.path:
            try:
                parsed = services.parsers.parse_path(
                    resolve_upload_path(payload.path, services.config.ingest.upload_root)
                )
            except TraceCopilotError as exc:
                raise _http_error(exc) from exc
            content, source = parsed.content, parsed.source
        elif payload.traces is not None:
            content = "\n".join(_clean(payload.traces))
        else:
            content = payload.content or ""

        if not split_traces(content):
            raise HTTPException(
                status_code=400, detail="No traces uploaded. Please upload your trace file."
            )
        corpus = services.repository.create_analysis(content, source=source)
        logger.info("Stored corpus %d with %d traces", corpus.id, corpus.trace_count)
        return {"id": corpus.id, "trace_count": corpus.trace_count}

    @application.get("/analyses/{analysis_id}")
    def get_analysis(analysis_id: int, request: Request) -> dict[str, Any]:
        corpus = _services(request).repository.get_analysis(analysis_id)
        if corpus is None:
            raise HTTPException(status_code=404, detail="Analysis not found")
        return asdict(corpus)

    @application.post("/datasets")
    def create_dataset(payload: DatasetRequest, request: Request) -> dict[str, Any]:
        if payload.raw is not None:
            try:
                content = parse_dataset_content(payload.raw)
            except TraceCopilotError as exc:
                raise _http_error(exc) from exc
            size = len(payload.raw.encode("utf-8"))
        elif payload.content is not None:
            content = payload.content
            size = len(str(content).encode("utf-8"))
        else:
            raise HTTPException(status_code=400, detail="No dataset content uploaded")

        dataset = _services(request).repository.create_dataset(
            name=payload.name,
            filename=payload.filename,
            content=content,
            size=size,
            description=payload.description,
        )
        return asdict(dataset)

    @application.get("/datasets")
    def list_datasets(request: Request) -> list[dict[str, Any]]:
        return [asdict(dataset) for dataset in _services(request).repository.list_datasets()]

    @application.get("/datasets/{dataset_id}")
    def get_dataset(dataset_id: int, request: Request) -> dict[str, Any]:
        dataset = _services(request).repository.get_dataset(dataset_id)
        if dataset is None:
            raise HTTPException(status_code=404, detail="Dataset not found")
        return asdict(dataset)

    @application.delete("/datasets/{dataset_id}")
    def delete_dataset(dataset_id: int, request: Request) -> dict[str, Any]:
        if not _services(request).repository.delete_dataset(dataset_id):
            raise HTTPException(status_code=404, detail="Dataset not found")
        return {"success": True}

    @application.post("/analyze")
    async def analyze(payload: AnalyzeRequest, request: Request) -> StreamingResponse:
        services = _services(request)
        config = services.config
        repository = services.repository
        traces = resolve_traces(
            repository,
            analysis_id=payload.analysis_id,
            traces=payload.traces,
            fallback_traces=payload.fallback_traces,
        )
        turn_request = TurnRequest(
            traces=traces,
            query=payload.query,
            model=payload.model or config.models.analysis_model,
            reasoning_model=payload.reasoning_model or config.models.reasoning_model,
            max_traces=(
                payload.max_traces
                if payload.max_traces is not None
                else config.sampling.max_traces
            ),
            history=[turn.to_turn() for turn in payload.chat_history],
            datasets=repository.list_datasets(),
            analysis_prompt=payload.custom_prompt or repository.get_prompt("analysis"),
            reasoning_prompt=(
                payload.custom_reasoning_prompt or repository.get_prompt("reasoning")
            ),
        )
        logger.info(
            "Analyze: %d traces, models=%s/%s",
            len(traces),
            turn_request.model,
            turn_request.reasoning_model,
        )
        token = CancellationToken()

        async def event_stream():
            watcher = asyncio.create_task(watch_disconnect(request, token))
            events = services.pipeline.run_turn(turn_request, token)
            try:
                async for event in events:
                    if token.cancelled:
                        break
                    yield event.to_sse()
            finally:
                watcher.cancel()
                await events.aclose()

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @application.post("/batch-job")
    async def batch_job(payload: BatchRequest, request: Request) -> dict[str, Any]:
        services = _services(request)
        traces = resolve_traces(
            services.repository,
            analysis_id=payload.analysis_id,
            traces=payload.traces,
            fallback_traces=payload.fallback_traces,
        )
        if not traces:
            return {"results": []}

        model = payload.model or services.config.models.batch_model
        max_results = payload.max_results or services.config.batch.default_max_results
        with Timer() as timer:
            try:
                ranking = await services.ranker.rank(
                    traces, query=payload.query, max_results=max_results, model=model
                )
            except BatchRankingError as exc:
                services.run_log.record(
                    kind="batch",
                    query=payload.query,
                    models={"batch": model},
                    status=STATUS_ERROR,
                    total_traces=len(traces),
                    details={"error": str(exc)},
                )
                raise _http_error(exc) from exc
        services.run_log.record(
            kind="batch",
            query=payload.query,
            models={"batch": model},
            status=STATUS_OK,
            total_traces=len(traces),
            result_count=len(ranking.results),
            input_tokens=ranking.usage.input_tokens,
            output_tokens=ranking.usage.output_tokens,
            latency_ms=timer.elapsed_ms,
        )
        return {"results": [asdict(result) for result in ranking.results]}

    @application.get("/batch-jobs/{analysis_id}")
    def list_batch_jobs(analysis_id: int, request: Request) -> list[dict[str, Any]]:
        jobs = _services(request).repository.list_batch_jobs(analysis_id)
        return [_job_payload(job) for job in jobs]

    @application.post("/batch-jobs")
    def save_batch_jobs(payload: SaveBatchJobsRequest, request: Request) -> list[dict[str, Any]]:
        services = _services(request)
        specs = []
        for spec in payload.jobs:
            data = spec.model_dump()
            data["model"] = spec.model or services.config.models.batch_model
            specs.append(data)
        jobs = services.repository.replace_batch_jobs(payload.analysis_id, specs)
        return [_job_payload(job) for job in jobs]

    @application.put("/batch-jobs/{job_id}")
    def update_batch_job(
        job_id: int, payload: BatchJobUpdate, request: Request
    ) -> dict[str, Any]:
        changes = payload.model_dump(exclude_unset=True)
        try:
            job = _services(request).repository.update_batch_job(job_id, changes)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if job is None:
            raise HTTPException(status_code=404, detail="Batch job not found")
        return _job_payload(job)

    @application.delete("/batch-jobs/{job_id}")
    def delete_batch_job(job_id: int, request: Request) -> dict[str, Any]:
        if not _services(request).repository.delete_batch_job(job_id):
            raise HTTPException(status_code=404, detail="Batch job not found")
        return {"success": True}

    @application.post("/batch-jobs/{job_id}/run")
    async def run_batch_job(job_id: int, request: Request) -> dict[str, Any]:
        services = _services(request)
        job = services.repository.get_batch_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Batch job not found")
        return _job_payload(await _run_batch_job(services, job))

    @application.post("/batch-jobs/run")
    async def run_batch_jobs(payload: RunBatchJobsRequest, request: Request) -> dict[str, Any]:
        services = _services(request)
        jobs = []
        for job_id in payload.job_ids:
            job = services.repository.get_batch_job(job_id)
            if job is None:
                raise HTTPException(status_code=404, detail=f"Batch job not found: {job_id}")
            jobs.append(job)

        limit = asyncio.Semaphore(services.config.batch.max_concurrent_jobs)

        async def _bounded(job: BatchJob) -> BatchJob:
            async with limit:
                return await _run_batch_job(services, job)

        finished = await asyncio.gather(*(_bounded(job) for job in jobs))
        return {"jobs": [_job_payload(job) for job in finished]}

    @application.get("/prompts")
    def prompts(request: Request) -> dict[str, Any]:
        repository = _services(request).repository
        return {
            kind: {"default": default, "active": repository.get_prompt(kind) or default}
            for kind, default in DEFAULT_PROMPTS.items()
        }

    @application.put("/prompts/{kind}")
    def update_prompt(kind: str, payload: PromptUpdate, request: Request) -> dict[str, Any]:
        if kind not in DEFAULT_PROMPTS:
            raise HTTPException(status_code=404, detail=f"Unknown prompt type: {kind}")
        _services(request).repository.set_prompt(kind, payload.prompt)
        return {"success": True}

    @application.get("/runs")
    def runs(request: Request, limit: int = 20) -> dict[str, Any]:
        records = _services(request).run_log.list_recent(limit=limit)
        return {"items": [asdict(record) for record in records]}

    @application.get("/runs/{run_id}")
    def run_detail(run_id: str, request: Request) -> dict[str, Any]:
        try:
            record = _services(request).run_log.get(run_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return asdict(record)

    @application.get("/metrics")
    def metrics(request: Request) -> dict[str, Any]:
        return _services(request).run_log.summary()


app = create_app()
