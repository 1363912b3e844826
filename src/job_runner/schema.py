import enum
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, List, Optional, Generic, TypeVar

from job_runner.config.base_config import settings


class InputType(str, enum.Enum):
    RAW_REMOTE = "raw_remote"    # demux straight from object storage
    RAW_COPY = "raw_copy"        # copy to local staging, then demux
    DEMUXED = "demuxed"          # existing chunk storage


class OutputType(str, enum.Enum):
    SINGLE_FILE = "single_file"
    SEGMENTS = "segments"


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


############################################################

class TranscodeParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    video_res_scale: float = 1.0
    video_crf: float = 23.0
    video_bitrate: int = 0
    audio_bitrate: int = 128
    video_threads: int = 0


class JobDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_name: str
    input_uri: str
    input_type: InputType
    output_uri: str
    output_type: OutputType = OutputType.SINGLE_FILE
    video_res_scale: float = Field(1.0, gt=0)
    video_crf: float = Field(23.0, ge=0)
    video_bitrate: int = Field(0, ge=0)
    audio_bitrate: int = Field(128, ge=0)
    video_threads: int = Field(0, ge=0)
    demux_chunk_size: int = Field(default_factory=lambda: settings.DEFAULT_CHUNK_SIZE, gt=0)
    overwrite: bool = False

    @property
    def transcode_params(self) -> TranscodeParams:
        return TranscodeParams(
            video_res_scale=self.video_res_scale,
            video_crf=self.video_crf,
            video_bitrate=self.video_bitrate,
            audio_bitrate=self.audio_bitrate,
            video_threads=self.video_threads,
        )

    def __str__(self) -> str:
        return (
            f"{self.job_name}: {self.input_uri} ({self.input_type.value}) -> "
            f"{self.output_uri} ({self.output_type.value}), scale={self.video_res_scale}, "
            f"crf={self.video_crf}, vb={self.video_bitrate}k, ab={self.audio_bitrate}k, "
            f"threads={self.video_threads}, chunk={self.demux_chunk_size}, overwrite={self.overwrite}"
        )


class JobDefinitionList(BaseModel):
    jobs: List[JobDefinition]


############################################################

class ChunkRecord(BaseModel):
    sequence_number: int
    leading_stream_id: int
    stream_ids: List[int]
    size_bytes: int
    start_timestamp: int
    end_timestamp: int
    object_name: str

    @classmethod
    def from_chunk(cls, chunk, object_name: str) -> "ChunkRecord":
        return cls(
            sequence_number=chunk.sequence_number,
            leading_stream_id=chunk.leading_stream_id,
            stream_ids=sorted(chunk.stream_ids),
            size_bytes=chunk.size_bytes,
            start_timestamp=chunk.start_timestamp,
            end_timestamp=chunk.end_timestamp,
            object_name=object_name,
        )


class ChunkManifest(BaseModel):
    source: str
    stream_ids: List[int]
    chunk_size: int
    chunks: List[ChunkRecord]


############################################################

class JobResult(BaseModel):
    job_counter: int
    job_name: str
    status: JobStatus
    stage: Optional[str] = None
    error: Optional[str] = None


class RunReport(BaseModel):
    run_id: str
    results: List[JobResult] = []

    def count(self, status: JobStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def succeeded(self) -> int:
        return self.count(JobStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return self.count(JobStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self.count(JobStatus.SKIPPED)

    @property
    def partial_failure(self) -> bool:
        return self.failed > 0 or self.skipped > 0


############################################################

class JobRunCreateSchema(BaseModel):
    id: str
    definitions_uri: str
    status: JobStatus = JobStatus.PENDING


class JobRunUpdateSchema(BaseModel):
    status: Optional[JobStatus] = None
    finished_at: Optional[datetime] = None
    error_message: Optional[str] = None


class JobResultCreateSchema(BaseModel):
    run_id: str
    job_counter: int
    job_name: str
    status: JobStatus
    stage: Optional[str] = None
    error_message: Optional[str] = None


class JobResultUpdateSchema(BaseModel):
    status: Optional[JobStatus] = None
    error_message: Optional[str] = None


############################################################


T = TypeVar('T')


class ApiResponse(BaseModel, Generic[T]):
    """Standard API response wrapper"""
    success: bool
    message: str
    data: Optional[T] = None
    error: Optional[str] = None


class JobRunRequest(BaseModel):
    definitions_uri: str


class JobRunLaunchedResponse(BaseModel):
    run_id: str
    job_count: int


class JobResultSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_counter: int
    job_name: str
    status: JobStatus
    stage: Optional[str] = None
    error_message: Optional[str] = None


class JobRunSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    definitions_uri: str
    status: JobStatus
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_message: Optional[str] = None
    results: List[JobResultSchema] = []


class StreamProgressSchema(BaseModel):
    completed: int
    total: int
    fraction: float


class TimingSchema(BaseModel):
    job_counter: int
    start_date: Optional[datetime] = None
    durations: Dict[str, float]
    file_size: Optional[int] = None
    chunk_size: Optional[int] = None
    chunk_count: Optional[int] = None
    partition_count: Optional[int] = None
    stream_progress: Dict[int, StreamProgressSchema] = {}
