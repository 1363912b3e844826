import asyncio
import logging
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional

from common.redis_client import RedisClient
from common.message_types import ChunkTranscodingMessage
from worker.consumer import ChunkTranscodingConsumer
from job_runner.config.base_config import settings
from job_runner.exceptions.exceptions import StagingError, TranscodingError
from job_runner.services.staging_service import StagingService, join_uri
from job_runner.storage.path_generator import segment_file_name


logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def build_transcode_command(
    input_path: Path,
    output_path: Path,
    message: ChunkTranscodingMessage,
    ffmpeg: str = "ffmpeg",
) -> List[str]:
    """FFmpeg arguments to transcode one chunk into an MPEG-TS segment."""
    cmd = [
        ffmpeg,
        "-y",  # Overwrite output
        "-i", str(input_path),
        "-map", "0:v?",
        "-map", "0:a?",
    ]
    if message.video_res_scale != 1.0:
        # Keep dimensions even for the encoder.
        scale = message.video_res_scale
        cmd += ["-vf", f"scale=trunc(iw*{scale}/2)*2:trunc(ih*{scale}/2)*2"]
    cmd += [
        "-c:v", "libx264",
        "-preset", "fast",  # fast for worker speed
        "-crf", f"{message.video_crf:g}",
    ]
    if message.video_bitrate > 0:
        cmd += ["-b:v", f"{message.video_bitrate}k"]
    cmd += [
        "-c:a", "aac",
        "-b:a", f"{message.audio_bitrate}k",
    ]
    if message.video_threads > 0:
        cmd += ["-threads", str(message.video_threads)]
    cmd += ["-f", "mpegts", str(output_path)]
    return cmd


class TranscodingWorker:
    """Transcodes single chunks: download, ffmpeg, upload, count."""

    def __init__(
        self,
        redis_client: RedisClient,
        staging: Optional[StagingService] = None,
        work_dir: Optional[Path] = None,
        ffmpeg: str = "ffmpeg",
    ):
        self.redis = redis_client
        self.staging = staging or StagingService()
        self.work_dir = Path(work_dir or Path(settings.STAGING_DIR) / "worker")
        self.work_dir.mkdir(parents=True, exist_ok=True)
        self.ffmpeg = ffmpeg

    def get_job_work_dir(self, job_id: str) -> Path:
        """Get working directory for a specific job."""
        job_dir = self.work_dir / job_id
        job_dir.mkdir(parents=True, exist_ok=True)
        return job_dir

    def transcode(self, input_path: Path, output_path: Path, message: ChunkTranscodingMessage):
        cmd = build_transcode_command(input_path, output_path, message, self.ffmpeg)
        logger.info(f"Transcoding {input_path} (scale={message.video_res_scale}, crf={message.video_crf:g})")
        try:
            subprocess.run(cmd, check=True, capture_output=True, text=True)
        except subprocess.CalledProcessError as e:
            logger.error(f"FFmpeg error: {e.stderr}")
            raise TranscodingError(f"ffmpeg exited with code {e.returncode} on {input_path}") from e
        except OSError as e:
            raise TranscodingError(f"Could not run {self.ffmpeg}: {e}") from e
        logger.info(f"Successfully transcoded: {output_path}")

    async def process_chunk(self, message: ChunkTranscodingMessage) -> bool:
        """Process a single chunk. Returns False when the chunk was counted as failed."""
        job_dir = self.get_job_work_dir(message.job_id)
        chunk_path = job_dir / Path(message.chunk_uri).name
        output_path = job_dir / segment_file_name(message.chunk_index)
        logger.info(f"Processing chunk {message.chunk_index} for job {message.job_id} (partition {message.partition})")

        try:
            # Step 1: Download chunk
            await asyncio.to_thread(self.staging.copy, message.chunk_uri, str(chunk_path), True)
            # Step 2: Transcode chunk
            await asyncio.to_thread(self.transcode, chunk_path, output_path, message)
            # Step 3: Upload transcoded segment
            await asyncio.to_thread(
                self.staging.upload_file, str(output_path), join_uri(message.output_uri, output_path.name)
            )
        except (StagingError, TranscodingError) as e:
            logger.error(f"Chunk {message.chunk_index} of job {message.job_id} failed: {e}", exc_info=True)
            return await self._count_failure(message)
        except Exception as e:
            # Anything else still has to reach the counters or the job waits for its timeout.
            logger.error(f"Unexpected error on chunk {message.chunk_index} of job {message.job_id}: {e}", exc_info=True)
            return await self._count_failure(message)
        finally:
            chunk_path.unlink(missing_ok=True)
            output_path.unlink(missing_ok=True)

        # Step 4: Update Redis - increment completed chunks
        completed = await self.redis.increment_completed_chunks(message.job_id, message.stream_id)
        logger.info(f"Job {message.job_id}: {completed} chunks completed")
        return True

    async def _count_failure(self, message: ChunkTranscodingMessage) -> bool:
        failed = await self.redis.increment_failed_chunks(message.job_id)
        logger.info(f"Job {message.job_id}: {failed} chunks failed")
        return False

    def cleanup_local_files(self):
        """Clean up local temporary files."""
        if self.work_dir.exists():
            shutil.rmtree(self.work_dir, ignore_errors=True)
            logger.info(f"Cleaned up working directory: {self.work_dir}")


class ChunkTranscodingWorker:
    """Main worker orchestrator for chunk transcoding."""

    def __init__(self, config=settings):
        self.redis = RedisClient(host=config.REDIS_HOST, port=config.REDIS_PORT, db=config.REDIS_DB)
        self.transcoder = TranscodingWorker(self.redis)
        self.consumer = ChunkTranscodingConsumer(
            bootstrap_servers=config.KAFKA_BROKER,
            topic=config.KAFKA_TOPIC,
            group_id=config.KAFKA_GROUP_ID,
        )

    async def start(self):
        """Start the worker consumer."""
        logger.info("Starting chunk transcoding worker...")
        await self.consumer.start()
        try:
            await self.consumer.consume(self.transcoder.process_chunk)
        finally:
            await self.consumer.stop()
            self.transcoder.cleanup_local_files()
            self.redis.close()
            logger.info("Worker stopped")


async def main():
    """Main entry point for the worker."""
    worker = ChunkTranscodingWorker()
    await worker.start()


def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
