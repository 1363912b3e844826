from collections import Counter
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional
from uuid import uuid4
import asyncio
import logging

from common.redis_client import RedisClient
from job_runner.config.base_config import settings
from job_runner.exceptions.exceptions import ChunkingError, OutputExistsError, StagingError, TranscodingError
from job_runner.schema import (
    ChunkManifest,
    InputType,
    JobDefinition,
    JobResult,
    JobStatus,
    OutputType,
    RunReport,
    TranscodeParams,
)
from job_runner.services.chunking_service import ChunkingService
from job_runner.services.execution_service import ExecutionRequest, ExecutionSubstrate, KafkaExecutionSubstrate
from job_runner.services.job_definition_service import load_job_definitions
from job_runner.services.merge_service import RemuxMerger
from job_runner.services.staging_service import StagingService, join_uri
from job_runner.services.timing_service import (
    CHUNK_COUNT,
    CHUNK_SIZE,
    FILE_SIZE,
    AttributeStore,
    TimedEvent,
    TimingRecorder,
    stream_count_key,
)
from job_runner.storage.path_generator import SEGMENT_EXTENSION, generate_chunk_prefix, generate_transcoded_prefix, job_key


logger = logging.getLogger(__name__)


class TranscodingOrchestrator:
    """
    Runs an ordered list of job definitions, one at a time.

    A failing job is recorded in the run report and the run moves on to the
    next definition. Anything that goes wrong outside a job (loading the
    definitions, the telemetry store) ends the run: it is logged, the
    timings collected so far are flushed and the error is re-raised.

    Without an injected substrate the run's attribute store must be a
    ``RedisClient``, which then also carries the chunk progress counters.
    """

    def __init__(
        self,
        staging: Optional[StagingService] = None,
        chunking: Optional[ChunkingService] = None,
        substrate: Optional[ExecutionSubstrate] = None,
        merger: Optional[RemuxMerger] = None,
        store_factory: Optional[Callable[[], AttributeStore]] = None,
        video_threads: Optional[int] = None,
        config=settings,
    ):
        self.config = config
        self.video_threads = config.DEFAULT_VIDEO_THREADS if video_threads is None else video_threads
        self.staging = staging or StagingService(config=config)
        self.chunking = chunking or ChunkingService(self.staging, work_dir=config.STAGING_DIR)
        self.merger = merger or RemuxMerger(self.staging, work_dir=config.STAGING_DIR)
        self.substrate = substrate
        self.store_factory = store_factory or self._redis_store

    def _redis_store(self) -> RedisClient:
        return RedisClient(host=self.config.REDIS_HOST, port=self.config.REDIS_PORT, db=self.config.REDIS_DB)

    async def run(self, definitions: Iterable[JobDefinition], run_id: Optional[str] = None) -> RunReport:
        definitions = list(definitions)
        return await self._execute(run_id, lambda: definitions)

    async def run_from_source(self, definitions_uri: str, run_id: Optional[str] = None) -> RunReport:
        return await self._execute(run_id, lambda: load_job_definitions(definitions_uri, self.staging))

    async def _execute(self, run_id: Optional[str], load_definitions: Callable[[], List[JobDefinition]]) -> RunReport:
        run_id = run_id or str(uuid4())
        store = self.store_factory()
        recorder = TimingRecorder(store, run_id)
        report = RunReport(run_id=run_id)

        logger.info(f"Starting job run {run_id}")
        recorder.mark_start(TimedEvent.JOB_RUN)
        try:
            substrate = self.substrate or KafkaExecutionSubstrate(store, config=self.config)
            definitions = await asyncio.to_thread(load_definitions)
            for counter, definition in enumerate(definitions, start=1):
                report.results.append(await self._run_job(recorder, substrate, run_id, counter, definition))
        except Exception as e:
            logger.error(f"Fatal error, ending job run {run_id}: {e}", exc_info=True)
            raise
        finally:
            recorder.mark_end(TimedEvent.JOB_RUN)
            recorder.flush()
            store.close()

        logger.info(
            f"Job run {run_id} complete: {report.succeeded} succeeded, "
            f"{report.failed} failed, {report.skipped} skipped"
        )
        return report

    async def _run_job(
        self,
        recorder: TimingRecorder,
        substrate: ExecutionSubstrate,
        run_id: str,
        counter: int,
        definition: JobDefinition,
    ) -> JobResult:
        key = job_key(run_id, counter)
        stage = "output_check"
        staged_chunks = None
        intermediate_output = None
        partial_segments = None

        recorder.start_job(counter)
        recorder.mark_start(TimedEvent.JOB)
        recorder.log_cluster_details(self._cluster_details(definition))
        logger.info(f"Starting job {counter}. {definition}")
        try:
            await self._check_output(definition)

            stage = "input"
            if definition.input_type is InputType.DEMUXED:
                chunk_location = definition.input_uri
                manifest = await asyncio.to_thread(self.chunking.load_manifest, chunk_location)
                input_size = sum(record.size_bytes for record in manifest.chunks)
            else:
                input_size = await asyncio.to_thread(self.staging.size, definition.input_uri)
                chunk_location = staged_chunks = join_uri(self.config.WORK_URI, generate_chunk_prefix(key))
                manifest = await self._demux(recorder, definition, chunk_location, input_size)
            recorder.log_cluster_details(input_statistics(manifest, input_size))
            if not manifest.chunks:
                raise ChunkingError(f"{definition.input_uri} has no chunks to transcode")

            stage = "execution"
            if definition.output_type is OutputType.SEGMENTS:
                # The output check left nothing at output_uri, so whatever lands there is this job's.
                output_location = partial_segments = definition.output_uri
            else:
                output_location = intermediate_output = join_uri(self.config.WORK_URI, generate_transcoded_prefix(key))
            request = ExecutionRequest(
                job_key=key,
                chunk_location=chunk_location,
                output_location=output_location,
                params=self._transcode_params(definition),
                manifest=manifest,
                on_details=recorder.log_cluster_details,
            )
            try:
                with recorder.timed(TimedEvent.DISTRIBUTED_EXECUTION):
                    success = await substrate.submit(request)
            finally:
                if staged_chunks is not None:
                    await self._discard(staged_chunks)
                    staged_chunks = None
            if not success:
                raise TranscodingError(f"Distributed execution of job {key} did not complete successfully")

            stage = "output"
            if definition.output_type is OutputType.SINGLE_FILE:
                await self._assemble_single_file(recorder, definition, output_location, len(manifest.chunks))
                intermediate_output = None
            else:
                await asyncio.to_thread(self.merger.finalize_segments, output_location, len(manifest.chunks))
                partial_segments = None

            stage = "finalize"
            await asyncio.to_thread(self.staging.set_permissions, definition.output_uri, self.config.OUTPUT_PERMISSIONS)
            logger.info(f"Job {counter} ({definition.job_name}) succeeded")
            return JobResult(job_counter=counter, job_name=definition.job_name, status=JobStatus.SUCCEEDED)
        except OutputExistsError as e:
            logger.warning(f"Skipping job {counter} ({definition.job_name}): {e}")
            return JobResult(
                job_counter=counter, job_name=definition.job_name,
                status=JobStatus.SKIPPED, stage=stage, error=str(e),
            )
        except Exception as e:
            logger.error(f"Job {counter} ({definition.job_name}) failed during {stage}: {e}", exc_info=True)
            return JobResult(
                job_counter=counter, job_name=definition.job_name,
                status=JobStatus.FAILED, stage=stage, error=str(e),
            )
        finally:
            if staged_chunks is not None:
                await self._discard(staged_chunks)
            if intermediate_output is not None:
                await self._discard(intermediate_output)
            if partial_segments is not None:
                logger.info(f"Removing partial segments of job {counter} from {partial_segments}")
                await self._discard(partial_segments)
            recorder.mark_end(TimedEvent.JOB)

    def _transcode_params(self, definition: JobDefinition) -> TranscodeParams:
        params = definition.transcode_params
        if params.video_threads == 0 and self.video_threads > 0:
            params = params.model_copy(update={"video_threads": self.video_threads})
        return params

    async def _check_output(self, definition: JobDefinition):
        if not await asyncio.to_thread(self.staging.exists, definition.output_uri):
            return
        if not definition.overwrite:
            raise OutputExistsError(f"{definition.output_uri} already exists and overwrite is disabled")
        logger.info(f"Deleting existing output {definition.output_uri}")
        await asyncio.to_thread(self.staging.delete, definition.output_uri, True)

    async def _demux(
        self, recorder: TimingRecorder, definition: JobDefinition, chunk_location: str, input_size: int
    ) -> ChunkManifest:
        chunk_size = definition.demux_chunk_size

        if definition.input_type is InputType.RAW_REMOTE:
            if input_size > self.config.LARGE_FILE_THRESHOLD:
                logger.warning(
                    f"{definition.input_uri} is {input_size} bytes and will take a long time to demux remotely. "
                    f"Consider staging it pre-chunked or using a local copy."
                )
            source = await asyncio.to_thread(self.staging.demux_source, definition.input_uri)
            with recorder.timed(TimedEvent.DEMUX):
                return await asyncio.to_thread(self.chunking.stage_chunks, source, chunk_location, chunk_size)

        local_copy = await asyncio.to_thread(self.staging.make_temp_file, Path(definition.input_uri).suffix)
        try:
            with recorder.timed(TimedEvent.RAW_COPY_IN):
                await asyncio.to_thread(self.staging.copy, definition.input_uri, local_copy, True)
            with recorder.timed(TimedEvent.DEMUX):
                return await asyncio.to_thread(self.chunking.stage_chunks, local_copy, chunk_location, chunk_size)
        finally:
            await self._discard(local_copy)

    async def _assemble_single_file(
        self, recorder: TimingRecorder, definition: JobDefinition, output_location: str, expected_count: int
    ):
        suffix = Path(definition.output_uri).suffix or f".{SEGMENT_EXTENSION}"
        merged = await asyncio.to_thread(self.staging.make_temp_file, suffix)
        try:
            with recorder.timed(TimedEvent.MERGE):
                await asyncio.to_thread(self.merger.merge, output_location, merged, expected_count)
            with recorder.timed(TimedEvent.RAW_COPY_OUT):
                await asyncio.to_thread(self.staging.copy, merged, definition.output_uri, definition.overwrite)
        finally:
            await self._discard(merged)

    async def _discard(self, location: str):
        """Best-effort removal of intermediate data."""
        try:
            await asyncio.to_thread(self.staging.delete, location, True)
        except StagingError as e:
            logger.warning(f"Could not clean up {location}: {e}")

    def _cluster_details(self, definition: JobDefinition) -> dict:
        return {
            "job_name": definition.job_name,
            "definition": str(definition),
            "kafka_broker": self.config.KAFKA_BROKER,
            "kafka_topic": self.config.KAFKA_TOPIC,
            "work_uri": self.config.WORK_URI,
        }


def input_statistics(manifest: ChunkManifest, input_size: int) -> Dict[str, object]:
    """Job statistics known once the input is chunked: sizes, chunk count and chunks per routing stream."""
    per_stream = Counter(record.leading_stream_id for record in manifest.chunks)
    stats: Dict[str, object] = {
        FILE_SIZE: input_size,
        CHUNK_SIZE: manifest.chunk_size,
        CHUNK_COUNT: len(manifest.chunks),
    }
    stats.update({stream_count_key(stream_id): per_stream.get(stream_id, 0) for stream_id in manifest.stream_ids})
    return stats
