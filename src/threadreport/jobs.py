"""Report jobs: background generation, status polling, caching and listing."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import uuid
from typing import Literal

from pydantic import BaseModel, Field

from threadreport import config
from threadreport.models import (
    DateRange,
    JobStatus,
    ReportJob,
    ReportJobProgress,
    ReportRequestParams,
)
from threadreport.pipeline import ReportPipeline
from threadreport.store import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


class ReportJobQuery(BaseModel):
    status: JobStatus | None = None
    tags: list[str] | None = None
    start_date: dt.datetime | None = None
    end_date: dt.datetime | None = None
    search: str | None = None
    sort_by: Literal["created_at", "updated_at", "title"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE


class ReportSummary(BaseModel):
    total_messages: int
    topic_count: int
    date_range: DateRange


class ReportJobSummary(BaseModel):
    job_id: str
    status: JobStatus
    progress: ReportJobProgress | None = None
    created_at: dt.datetime
    updated_at: dt.datetime
    cached_at: dt.datetime | None = None
    error: str | None = None
    title: str | None = None
    description: str | None = None
    tags: list[str] | None = None
    report_summary: ReportSummary | None = None


class JobPage(BaseModel):
    items: list[ReportJobSummary] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE
    has_more: bool = False


def cache_key(params: ReportRequestParams) -> str:
    """Stable key for a request; list order does not matter."""

    def joined(values: list[str] | None) -> str:
        return ",".join(sorted(values)) if values else "all"

    def stamp(value: dt.datetime | None) -> str:
        return value.isoformat() if value else "0"

    return ":".join(
        [
            joined(params.thread_ids),
            joined(params.agent_urls),
            joined(params.agent_names),
            stamp(params.start_date),
            stamp(params.end_date),
            str(params.max_messages or config.DEFAULT_MAX_MESSAGES),
            params.language or "auto",
            params.timezone or "UTC",
        ]
    )


def _now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class ReportService:
    """Owns report jobs for one pipeline and one key-value store."""

    def __init__(self, pipeline: ReportPipeline, store: KeyValueStore) -> None:
        self._pipeline = pipeline
        self._store = store
        self._jobs: dict[str, ReportJob] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    # ── public ──────────────────────────────────────────────────────────

    async def create_job(self, params: ReportRequestParams) -> ReportJob:
        """Return a live cached job for *params*, or start a new one."""
        cached = await self._store.get(f"{config.CACHE_PREFIX}{cache_key(params)}")
        if cached:
            job = ReportJob.model_validate_json(cached)
            logger.info("Cache hit for job %s", job.id)
            return job

        now = _now()
        job = ReportJob(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            params=params,
            title=params.title,
            description=params.description,
            tags=params.tags,
        )
        self._jobs[job.id] = job
        await self._persist(job.id)

        self._spawn(self._process(job.id))
        return job

    async def get_job(self, job_id: str) -> ReportJob | None:
        job = self._jobs.get(job_id)
        if job is not None:
            return job

        data = await self._store.get(f"{config.JOB_PREFIX}{job_id}")
        if data is None:
            return None
        job = ReportJob.model_validate_json(data)
        self._jobs[job_id] = job
        return job

    async def query_jobs(self, query: ReportJobQuery | None = None) -> JobPage:
        """Filter, sort and paginate stored jobs."""
        query = query or ReportJobQuery()
        page = max(1, query.page)
        limit = min(MAX_PAGE_SIZE, max(1, query.limit))

        keys = await self._store.keys(f"{config.JOB_PREFIX}*")
        jobs = [ReportJob.model_validate_json(v) for v in await self._store.mget(keys) if v]

        if query.status:
            jobs = [j for j in jobs if j.status == query.status]
        if query.tags:
            wanted = set(query.tags)
            jobs = [j for j in jobs if wanted.intersection(j.tags or [])]
        if query.start_date:
            jobs = [j for j in jobs if j.created_at >= query.start_date]
        if query.end_date:
            jobs = [j for j in jobs if j.created_at <= query.end_date]
        if query.search:
            needle = query.search.lower()
            jobs = [
                j for j in jobs
                if needle in (j.title or "").lower() or needle in (j.description or "").lower()
            ]

        if query.sort_by == "title":
            jobs.sort(key=lambda j: j.title or "", reverse=query.sort_order == "desc")
        else:
            jobs.sort(key=lambda j: getattr(j, query.sort_by), reverse=query.sort_order == "desc")

        start = (page - 1) * limit
        return JobPage(
            items=[_summarize(j) for j in jobs[start : start + limit]],
            total=len(jobs),
            page=page,
            limit=limit,
            has_more=start + limit < len(jobs),
        )

    async def update_job(
        self,
        job_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        tags: list[str] | None = None,
    ) -> ReportJob | None:
        """Change job metadata; ``None`` leaves a field untouched."""
        job = await self.get_job(job_id)
        if job is None:
            return None

        if title is not None:
            job.title = title
        if description is not None:
            job.description = description
        if tags is not None:
            job.tags = tags
        job.updated_at = _now()

        await self._persist(job_id)
        logger.info("Job %s metadata updated", job_id)
        return job

    async def delete_job(self, job_id: str) -> bool:
        job = await self.get_job(job_id)
        if job is None:
            return False

        await self._store.delete(
            f"{config.JOB_PREFIX}{job_id}",
            f"{config.CACHE_PREFIX}{cache_key(job.params)}",
        )
        self._jobs.pop(job_id, None)
        logger.info("Job %s deleted", job_id)
        return True

    async def invalidate_cache(self, params: ReportRequestParams | None = None) -> int:
        """Drop the cache entry for *params*, or every cached report."""
        if params is not None:
            return await self._store.delete(f"{config.CACHE_PREFIX}{cache_key(params)}")
        keys = await self._store.keys(f"{config.CACHE_PREFIX}*")
        return await self._store.delete(*keys) if keys else 0

    async def join(self) -> None:
        """Wait for every background job and pending write to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    # ── private ─────────────────────────────────────────────────────────

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _persist(self, job_id: str) -> None:
        # Always write the latest in-memory state so out-of-order writes converge
        job = self._jobs.get(job_id)
        if job is not None:
            await self._store.set(f"{config.JOB_PREFIX}{job_id}", job.model_dump_json())

    async def _process(self, job_id: str) -> None:
        job = self._jobs[job_id]
        job.status = "processing"
        job.updated_at = _now()
        await self._persist(job_id)

        def on_progress(progress: ReportJobProgress) -> None:
            job.progress = progress
            job.updated_at = _now()
            self._spawn(self._persist(job_id))

        try:
            report = await self._pipeline.generate_report(job.params, on_progress)
        except Exception as exc:
            logger.exception("Job %s failed", job_id)
            job.status = "failed"
            job.error = str(exc) or type(exc).__name__
            job.updated_at = _now()
            await self._persist(job_id)
            return

        now = _now()
        job.status = "completed"
        job.report = report
        job.updated_at = now
        job.cached_at = now
        await self._persist(job_id)
        await self._store.set(
            f"{config.CACHE_PREFIX}{cache_key(job.params)}",
            job.model_dump_json(),
            ttl=config.REPORT_CACHE_TTL_SECONDS,
        )
        logger.info("Job %s completed", job_id)


def _summarize(job: ReportJob) -> ReportJobSummary:
    report_summary = None
    if job.report is not None:
        report_summary = ReportSummary(
            total_messages=job.report.statistics.total_messages,
            topic_count=len(job.report.clusters),
            date_range=job.report.statistics.date_range,
        )
    return ReportJobSummary(
        job_id=job.id,
        status=job.status,
        progress=job.progress,
        created_at=job.created_at,
        updated_at=job.updated_at,
        cached_at=job.cached_at,
        error=job.error,
        title=job.title,
        description=job.description,
        tags=job.tags,
        report_summary=report_summary,
    )
