from pydantic_settings import BaseSettings
from pydantic import Field


MEBIBYTE = 1024 * 1024
GIBIBYTE = 1024 * MEBIBYTE


class BaseConfig(BaseSettings):

    # Credentials are read from the environment (or a mounted secret file), never defaulted.
    MINIO_ENDPOINT: str = Field("http://minio:9000")
    MINIO_ACCESS_KEY: str = Field("")
    MINIO_SECRET_KEY: str = Field("")
    MINIO_BUCKET: str = Field("videos")
    # Staged chunks and partition outputs; workers must be able to reach it.
    WORK_URI: str = Field("s3://videos")

    KAFKA_BROKER: str = Field("kafka:9093")
    KAFKA_TOPIC: str = Field("video-chunks")
    KAFKA_GROUP_ID: str = Field("transcoding-workers")

    REDIS_HOST: str = Field("redis_video")
    REDIS_PORT: int = Field(6379)
    REDIS_DB: int = Field(0)

    DATABASE_URL: str = Field("sqlite:///./job_runner.db")

    STAGING_DIR: str = Field("/tmp/job_runner")
    DEFAULT_CHUNK_SIZE: int = Field(16 * MEBIBYTE)
    LARGE_FILE_THRESHOLD: int = Field(2 * GIBIBYTE)
    EXECUTION_POLL_INTERVAL: float = Field(2.0)
    EXECUTION_TIMEOUT: float = Field(6 * 60 * 60)
    # Used by jobs that leave video_threads at 0.
    DEFAULT_VIDEO_THREADS: int = Field(0)
    OUTPUT_PERMISSIONS: int = Field(0o644)

    LOG_LEVEL: str = Field("INFO")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = BaseConfig()
