from common.message_types import ChunkTranscodingMessage
from job_runner.config.base_config import BaseConfig
from job_runner.schema import TranscodeParams
from job_runner.services.execution_service import ExecutionRequest, KafkaExecutionSubstrate
from job_runner.services.routing_service import StreamRouter

from conftest import build_manifest


class FakeProducer:
    def __init__(self, partitions: int):
        self.partitions = partitions
        self.sent = []
        self.started = False

    async def __aenter__(self):
        self.started = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.started = False

    async def get_partition_count(self) -> int:
        return self.partitions

    async def notify_workers(self, messages) -> int:
        self.sent.extend(messages)
        return len(self.sent)


class FakeProgressRedis:
    def __init__(self, completed=0, failed=0, per_stream=None):
        self.completed = completed
        self.failed = failed
        self.per_stream = per_stream or {}
        self.totals = {}
        self.statuses = {}

    async def set_total_chunks(self, job_id, total_chunks):
        self.totals[job_id] = total_chunks

    async def get_progress(self, job_id):
        return {
            "total_chunks": self.totals[job_id],
            "completed_chunks": self.completed,
            "failed_chunks": self.failed,
        }

    async def get_stream_progress(self, job_id):
        return dict(self.per_stream)

    async def mark_job_complete(self, job_id, status="completed"):
        self.statuses[job_id] = status


def _request(chunks=4, stream_ids=(0, 1), on_details=None):
    return ExecutionRequest(
        job_key="run-1",
        chunk_location="s3://work/chunks/run-1",
        output_location="s3://work/transcoded/run-1",
        params=TranscodeParams(video_res_scale=0.5, video_crf=20, video_bitrate=0, audio_bitrate=96, video_threads=2),
        manifest=build_manifest("movie.mkv", chunks, stream_ids),
        on_details=on_details,
    )


def _config():
    return BaseConfig(EXECUTION_POLL_INTERVAL=0, EXECUTION_TIMEOUT=0)


async def test_one_message_per_chunk_on_its_routed_partition():
    producer = FakeProducer(partitions=4)
    redis = FakeProgressRedis(completed=4)
    substrate = KafkaExecutionSubstrate(redis, producer_factory=lambda: producer, config=_config())

    assert await substrate.submit(_request()) is True

    router = StreamRouter(4, [0, 1], total_chunks=4)
    assert [m.chunk_index for m in producer.sent] == [0, 1, 2, 3]
    assert [m.partition for m in producer.sent] == [router.partition_for(0, n) for n in range(4)]
    assert producer.sent[2].chunk_uri == "s3://work/chunks/run-1/chunk_00002.mkv"
    assert producer.sent[2].output_uri == "s3://work/transcoded/run-1"
    assert producer.sent[2].video_res_scale == 0.5
    assert producer.sent[2].video_threads == 2
    assert redis.totals == {"run-1": 4}
    assert redis.statuses == {"run-1": "completed"}


async def test_any_failed_chunk_fails_the_execution():
    redis = FakeProgressRedis(completed=3, failed=1)
    substrate = KafkaExecutionSubstrate(redis, producer_factory=lambda: FakeProducer(2), config=_config())

    assert await substrate.submit(_request()) is False
    assert redis.statuses == {"run-1": "failed"}


async def test_unfinished_execution_times_out_as_failure():
    redis = FakeProgressRedis(completed=1)
    substrate = KafkaExecutionSubstrate(redis, producer_factory=lambda: FakeProducer(2), config=_config())

    assert await substrate.submit(_request()) is False
    assert redis.statuses == {"run-1": "timed_out"}


async def test_nothing_to_submit_for_an_empty_manifest():
    producer = FakeProducer(2)
    substrate = KafkaExecutionSubstrate(FakeProgressRedis(), producer_factory=lambda: producer, config=_config())

    assert await substrate.submit(_request(chunks=0)) is True
    assert producer.sent == []


def test_chunk_message_wire_format():
    message = ChunkTranscodingMessage(
        job_id="run-1", chunk_index=3, partition=1, chunk_uri="s3://w/c", output_uri="s3://w/o",
        video_res_scale=1.0, video_crf=23.0, video_bitrate=0, audio_bitrate=128, video_threads=0,
    )
    assert ChunkTranscodingMessage.from_json(message.to_json()) == message


async def test_partition_count_and_stream_progress_are_reported():
    details = {}
    redis = FakeProgressRedis(completed=4, per_stream={0: 4})
    substrate = KafkaExecutionSubstrate(redis, producer_factory=lambda: FakeProducer(3), config=_config())

    await substrate.submit(_request(on_details=details.update))

    assert details == {"partition_count": 3, "stream_progress:0": 4}


async def test_messages_carry_their_routing_stream():
    producer = FakeProducer(partitions=2)
    substrate = KafkaExecutionSubstrate(
        FakeProgressRedis(completed=2), producer_factory=lambda: producer, config=_config()
    )

    await substrate.submit(_request(chunks=2, stream_ids=(1, 0)))

    assert [m.stream_id for m in producer.sent] == [1, 1]
