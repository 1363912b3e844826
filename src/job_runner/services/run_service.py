from datetime import datetime, timezone
from typing import Optional
import logging

from sqlalchemy.orm import Session

from job_runner.models import JobResult, JobRun
from job_runner.schema import (
    JobResultCreateSchema,
    JobResultUpdateSchema,
    JobRunCreateSchema,
    JobRunUpdateSchema,
    JobStatus,
    RunReport,
)
from job_runner.services.base_service import BaseService


logger = logging.getLogger(__name__)


class JobResultService(BaseService[JobResult, JobResultCreateSchema, JobResultUpdateSchema]):
    def __init__(self):
        super().__init__(JobResult)


class JobRunService(BaseService[JobRun, JobRunCreateSchema, JobRunUpdateSchema]):
    def __init__(self):
        super().__init__(JobRun)
        self.results = JobResultService()

    def list_runs(self, db: Session):
        return self.get_all(db, JobRun.created_at.desc())

    def start(self, db: Session, run_id: str, definitions_uri: str) -> JobRun:
        return self.create(
            db,
            obj_in=JobRunCreateSchema(id=run_id, definitions_uri=definitions_uri, status=JobStatus.RUNNING),
        )

    def record_report(self, db: Session, report: RunReport) -> Optional[JobRun]:
        """Store the per-job results of a finished run and close it."""
        run = self.get(db, report.run_id)
        if run is None:
            logger.warning(f"No job run {report.run_id} to record the report on")
            return None

        for result in report.results:
            self.results.create(
                db,
                obj_in=JobResultCreateSchema(
                    run_id=report.run_id,
                    job_counter=result.job_counter,
                    job_name=result.job_name,
                    status=result.status,
                    stage=result.stage,
                    error_message=result.error,
                ),
                commit=False,
            )
        status = JobStatus.FAILED if report.results and report.failed == len(report.results) else JobStatus.SUCCEEDED
        return self.update(
            db,
            db_obj=run,
            obj_in=JobRunUpdateSchema(status=status, finished_at=datetime.now(timezone.utc)),
        )

    def record_failure(self, db: Session, run_id: str, error: Exception) -> Optional[JobRun]:
        run = self.get(db, run_id)
        if run is None:
            return None
        return self.update(
            db,
            db_obj=run,
            obj_in=JobRunUpdateSchema(
                status=JobStatus.FAILED,
                finished_at=datetime.now(timezone.utc),
                error_message=str(error),
            ),
        )


job_run_service = JobRunService()
