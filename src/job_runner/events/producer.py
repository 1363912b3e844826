from aiokafka import AIOKafkaProducer
from typing import Any, Iterable, Optional
import logging

from common.message_types import ChunkTranscodingMessage


logger = logging.getLogger(__name__)


class KafkaProducerWrapper:
    def __init__(
        self,
        bootstrap_servers: str = "kafka:9093",
        topic: str = None,
        key_serializer = None,
        value_serializer = None,
        **producer_kwargs,
    ):

        self.bootstrap_servers = bootstrap_servers
        self.topic = topic
        self.producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            key_serializer=key_serializer,
            value_serializer=value_serializer,
            **producer_kwargs
        )
        self._started = False

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def start(self):
        if not self._started:
            await self.producer.start()
            self._started = True

    async def stop(self):
        if self._started:
            await self.producer.stop()
            self._started = False

    async def send(
        self,
        value: Any = None,
        key: Any = None,
        partition: Optional[int] = None,
        **send_kwargs
    ):
        if not self._started:
            raise RuntimeError("Producer not started. Call .start() before send().")

        return await self.producer.send_and_wait(
            self.topic,
            value=value,
            key=key,
            partition=partition,
            **send_kwargs
        )

    async def get_partition_count(self) -> int:
        if not self._started:
            raise RuntimeError("Producer not started.")
        partitions = await self.producer.partitions_for(self.topic)
        return len(partitions)

    async def notify_workers(self, messages: Iterable[ChunkTranscodingMessage]) -> int:
        """Publish chunk messages, each on the partition it was routed to."""
        if not self._started:
            await self.start()

        sent = 0
        for message in messages:
            await self.send(
                value=message.to_json(),
                key=message.job_id.encode(),
                partition=message.partition,  # Explicit partition assignment
            )
            sent += 1
        logger.info(f"Published {sent} chunk messages to {self.topic}")
        return sent
