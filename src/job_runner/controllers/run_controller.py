from fastapi import APIRouter, BackgroundTasks, Depends, status
from typing import Callable, Generator
from uuid import uuid4
import asyncio
import logging

from job_runner.config.base_config import settings
from job_runner.database import SessionLocal, get_db
from job_runner.exceptions.exceptions import ResourceNotFoundError
from job_runner.schema import (
    ApiResponse,
    JobRunLaunchedResponse,
    JobRunRequest,
    JobRunSchema,
    StreamProgressSchema,
    TimingSchema,
)
from job_runner.services.job_definition_service import load_job_definitions
from job_runner.services.run_service import job_run_service
from job_runner.services.staging_service import StagingService
from job_runner.services.timing_service import AttributeStore, load_time_entries
from job_runner.services.transcoding_service import TranscodingOrchestrator
from common.redis_client import RedisClient


logger = logging.getLogger(__name__)

router = APIRouter()


class RunLauncher:
    """Runs a job run in the background and stores its report in its own session."""

    def __init__(
        self,
        orchestrator_factory: Callable[[], TranscodingOrchestrator] = TranscodingOrchestrator,
        session_factory=SessionLocal,
    ):
        self.orchestrator_factory = orchestrator_factory
        self.session_factory = session_factory

    async def __call__(self, run_id: str, definitions_uri: str):
        orchestrator = self.orchestrator_factory()
        db = self.session_factory()
        try:
            try:
                report = await orchestrator.run_from_source(definitions_uri, run_id=run_id)
            except Exception as e:
                logger.error(f"Job run {run_id} aborted: {e}", exc_info=True)
                job_run_service.record_failure(db, run_id, e)
                return
            job_run_service.record_report(db, report)
        finally:
            db.close()


def get_run_launcher() -> RunLauncher:
    return RunLauncher()


def get_staging() -> StagingService:
    return StagingService()


def get_attribute_store() -> Generator[AttributeStore, None, None]:
    store = RedisClient(host=settings.REDIS_HOST, port=settings.REDIS_PORT, db=settings.REDIS_DB)
    try:
        yield store
    finally:
        store.close()


@router.post("/job-runs", response_model=ApiResponse[JobRunLaunchedResponse], status_code=status.HTTP_202_ACCEPTED)
async def launch_job_run(
    payload: JobRunRequest,
    background_tasks: BackgroundTasks,
    db=Depends(get_db),
    launcher: RunLauncher = Depends(get_run_launcher),
    staging: StagingService = Depends(get_staging),
):
    # Rejected up front: an unreadable or invalid definitions document never becomes a run.
    definitions = await asyncio.to_thread(load_job_definitions, payload.definitions_uri, staging)
    run_id = str(uuid4())
    job_run_service.start(db, run_id, payload.definitions_uri)
    background_tasks.add_task(launcher, run_id, payload.definitions_uri)
    return ApiResponse(
        success=True,
        message="Job run started successfully",
        data=JobRunLaunchedResponse(run_id=run_id, job_count=len(definitions))
    )


@router.get("/job-runs", response_model=ApiResponse[list[JobRunSchema]])
async def list_job_runs(db=Depends(get_db)):
    runs = job_run_service.list_runs(db)
    return ApiResponse(
        success=True,
        message="Job runs retrieved successfully",
        data=[JobRunSchema.model_validate(run) for run in runs]
    )


@router.get("/job-runs/{run_id}", response_model=ApiResponse[JobRunSchema])
async def get_job_run(run_id: str, db=Depends(get_db)):
    run = job_run_service.get(db, run_id)
    if not run:
        raise ResourceNotFoundError(f"Job run with ID {run_id} not found")
    return ApiResponse(
        success=True,
        message="Job run retrieved successfully",
        data=JobRunSchema.model_validate(run)
    )


@router.get("/job-runs/{run_id}/timings", response_model=ApiResponse[list[TimingSchema]])
async def get_job_run_timings(run_id: str, store: AttributeStore = Depends(get_attribute_store)):
    entries = load_time_entries(store, run_id)
    if not entries:
        raise ResourceNotFoundError(f"No timings recorded for job run {run_id}")
    return ApiResponse(
        success=True,
        message="Timings retrieved successfully",
        data=[
            TimingSchema(
                job_counter=entry.job_counter,
                start_date=entry.start_date,
                durations={event.value: seconds for event, seconds in entry.timings.items()},
                file_size=entry.file_size,
                chunk_size=entry.chunk_size,
                chunk_count=entry.chunk_count,
                partition_count=entry.partition_count,
                stream_progress={
                    stream_id: StreamProgressSchema(
                        completed=progress.completed, total=progress.total, fraction=progress.fraction
                    )
                    for stream_id, progress in entry.stream_progress.items()
                },
            )
            for entry in entries
        ]
    )
