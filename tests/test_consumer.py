from collections import deque
from types import SimpleNamespace

from aiokafka.structs import TopicPartition

from common.message_types import ChunkTranscodingMessage
from worker.consumer import ChunkTranscodingConsumer


TOPIC = "video-chunks"


def _record(offset, value):
    return SimpleNamespace(topic=TOPIC, partition=0, offset=offset, value=value)


def _chunk_record(offset, chunk_index):
    message = ChunkTranscodingMessage(
        job_id="run-1",
        chunk_index=chunk_index,
        partition=0,
        chunk_uri=f"s3://work/chunks/run-1/chunk_{chunk_index:05d}.mkv",
        output_uri="s3://work/transcoded/run-1",
        video_res_scale=1.0,
        video_crf=23.0,
        video_bitrate=0,
        audio_bitrate=128,
        video_threads=0,
    )
    return _record(offset, message.to_json())


class FakeKafkaConsumer:
    """Hands out records in order; a seek puts the record at that offset back in front."""

    def __init__(self, records):
        self.log = {r.offset: r for r in records}
        self.pending = deque(records)
        self.commits = []
        self.seeks = []
        self.position = None

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.pending:
            raise StopAsyncIteration
        record = self.pending.popleft()
        self.position = record.offset + 1
        return record

    async def commit(self):
        self.commits.append(self.position)

    def seek(self, partition, offset):
        self.seeks.append((partition, offset))
        self.pending.appendleft(self.log[offset])


def _consumer(records):
    consumer = ChunkTranscodingConsumer("localhost:9092", TOPIC, "workers")
    consumer.consumer = FakeKafkaConsumer(records)
    consumer.running = True
    return consumer


async def test_processed_messages_are_committed_in_order():
    consumer = _consumer([_chunk_record(0, 0), _chunk_record(1, 1)])
    seen = []

    async def process(message):
        seen.append(message.chunk_index)

    await consumer.consume(process)

    assert seen == [0, 1]
    assert consumer.consumer.commits == [1, 2]


async def test_undecodable_message_is_committed_and_dropped():
    consumer = _consumer([_record(0, b"not json"), _chunk_record(1, 4)])
    seen = []

    async def process(message):
        seen.append(message.chunk_index)

    await consumer.consume(process)

    assert seen == [4]
    assert consumer.consumer.commits == [1, 2]


async def test_failed_callback_seeks_back_so_the_message_is_handed_out_again():
    consumer = _consumer([_chunk_record(0, 0), _chunk_record(1, 1), _chunk_record(2, 2)])
    seen = []
    failures = {1: 1}

    async def process(message):
        seen.append(message.chunk_index)
        if failures.get(message.chunk_index):
            failures[message.chunk_index] -= 1
            raise ConnectionError("redis went away")

    await consumer.consume(process)

    assert seen == [0, 1, 1, 2]
    assert consumer.consumer.seeks == [(TopicPartition(TOPIC, 0), 1)]
    # No commit ever moves past offset 1 before chunk 1 has been processed.
    assert consumer.consumer.commits == [1, 2, 3]


async def test_stopped_consumer_leaves_after_the_current_message():
    consumer = _consumer([_chunk_record(0, 0), _chunk_record(1, 1)])
    seen = []

    async def process(message):
        seen.append(message.chunk_index)
        consumer.running = False

    await consumer.consume(process)

    assert seen == [0]
    assert consumer.consumer.commits == [1]
