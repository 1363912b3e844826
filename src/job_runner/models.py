from .database import Base
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Enum, func, Text
from sqlalchemy.orm import relationship

from job_runner.schema import JobStatus


class JobRun(Base):
    __tablename__ = "job_runs"

    id = Column(String(36), primary_key=True, index=True)
    definitions_uri = Column(Text, nullable=False)
    status = Column(Enum(JobStatus), nullable=False, default=JobStatus.PENDING)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    results = relationship(
        "JobResult",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="JobResult.job_counter",
    )


class JobResult(Base):
    __tablename__ = "job_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(36), ForeignKey("job_runs.id"), nullable=False, index=True)
    job_counter = Column(Integer, nullable=False)
    job_name = Column(String, nullable=False)
    status = Column(Enum(JobStatus), nullable=False)
    stage = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)

    run = relationship("JobRun", back_populates="results")
