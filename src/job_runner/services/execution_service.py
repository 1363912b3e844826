from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol
import asyncio
import logging

from common.message_types import ChunkTranscodingMessage
from common.redis_client import RedisClient
from job_runner.config.base_config import settings
from job_runner.events.producer import KafkaProducerWrapper
from job_runner.schema import ChunkManifest, ChunkRecord, TranscodeParams
from job_runner.services.routing_service import StreamRouter
from job_runner.services.staging_service import join_uri
from job_runner.services.timing_service import PARTITION_COUNT, stream_progress_key


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionRequest:
    job_key: str
    chunk_location: str
    output_location: str
    params: TranscodeParams
    manifest: ChunkManifest
    # Receives execution statistics (partition count, per-stream progress) as they become known.
    on_details: Optional[Callable[[Dict[str, object]], None]] = None

    def report(self, details: Dict[str, object]) -> None:
        if self.on_details is not None:
            self.on_details(details)


class ExecutionSubstrate(Protocol):
    async def submit(self, request: ExecutionRequest) -> bool: ...


class KafkaExecutionSubstrate:
    """
    Runs the per-chunk transcode on the worker fleet: one message per chunk
    on the partition picked by the stream router, then waits on the Redis
    progress counters until every chunk is accounted for.
    """

    def __init__(
        self,
        redis_client: RedisClient,
        producer_factory: Optional[Callable[[], KafkaProducerWrapper]] = None,
        config=settings,
    ):
        self.redis = redis_client
        self.config = config
        self.producer_factory = producer_factory or self._default_producer

    def _default_producer(self) -> KafkaProducerWrapper:
        return KafkaProducerWrapper(
            bootstrap_servers=self.config.KAFKA_BROKER,
            topic=self.config.KAFKA_TOPIC,
        )

    async def submit(self, request: ExecutionRequest) -> bool:
        total = len(request.manifest.chunks)
        if total == 0:
            logger.warning(f"Job {request.job_key} has no chunks, nothing to execute")
            return True

        async with self.producer_factory() as producer:
            partition_count = await producer.get_partition_count()
            router = StreamRouter(partition_count, request.manifest.stream_ids, total)
            request.report({PARTITION_COUNT: partition_count})
            await self.redis.set_total_chunks(request.job_key, total)
            messages = [
                self._message(request, record, router.partition_for(record.leading_stream_id, record.sequence_number))
                for record in request.manifest.chunks
            ]
            await producer.notify_workers(messages)

        logger.info(f"Job {request.job_key}: {total} chunks submitted over {partition_count} partitions")
        succeeded = await self._await_completion(request.job_key, total)
        progress = await self.redis.get_stream_progress(request.job_key)
        request.report({stream_progress_key(stream_id): count for stream_id, count in progress.items()})
        return succeeded

    def _message(self, request: ExecutionRequest, record: ChunkRecord, partition: int):
        params = request.params
        return ChunkTranscodingMessage(
            job_id=request.job_key,
            chunk_index=record.sequence_number,
            partition=partition,
            chunk_uri=join_uri(request.chunk_location, record.object_name),
            output_uri=request.output_location,
            video_res_scale=params.video_res_scale,
            video_crf=params.video_crf,
            video_bitrate=params.video_bitrate,
            audio_bitrate=params.audio_bitrate,
            video_threads=params.video_threads,
            stream_id=record.leading_stream_id,
        )

    async def _await_completion(self, job_key: str, total: int) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.EXECUTION_TIMEOUT
        while True:
            progress = await self.redis.get_progress(job_key)
            completed = progress.get("completed_chunks", 0)
            failed = progress.get("failed_chunks", 0)
            if completed + failed >= total:
                break
            if loop.time() >= deadline:
                logger.error(f"Job {job_key} timed out with {completed}/{total} chunks completed")
                await self.redis.mark_job_complete(job_key, status="timed_out")
                return False
            await asyncio.sleep(self.config.EXECUTION_POLL_INTERVAL)

        if failed:
            logger.error(f"Job {job_key}: {failed}/{total} chunks failed")
            await self.redis.mark_job_complete(job_key, status="failed")
            return False

        await self.redis.mark_job_complete(job_key)
        logger.info(f"Job {job_key}: all {total} chunks transcoded")
        return True
