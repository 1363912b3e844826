import aiokafka
import logging

from aiokafka.structs import TopicPartition

from common.message_types import ChunkTranscodingMessage

logger = logging.getLogger(__name__)


class ChunkTranscodingConsumer():
    """Consumer for chunk transcoding messages from the chunk topic."""

    def __init__(self, bootstrap_servers: str, topic: str, group_id: str):
        self.bootstrap_servers = bootstrap_servers
        self.topic = topic
        self.group_id = group_id
        self.consumer = None
        self.running = False

    async def start(self):
        """Start the consumer."""
        # Create the consumer within async context
        self.consumer = aiokafka.AIOKafkaConsumer(
            self.topic,
            bootstrap_servers=self.bootstrap_servers,
            group_id=self.group_id,
            auto_offset_reset="earliest",
            enable_auto_commit=False,
            max_poll_interval_ms=600000,      # 10 minutes - allow long transcoding
            session_timeout_ms=120000,         # 2 minutes
            heartbeat_interval_ms=30000,       # 30 seconds
            max_poll_records=1,                # Process one message at a time
            connections_max_idle_ms=540000,    # 9 minutes
        )
        self.running = True
        await self.consumer.start()
        logger.info(f"ChunkTranscodingConsumer started for topic: {self.topic}")

    async def consume(self, process_callback):
        """
        Hand every decoded message to ``process_callback`` and commit its offset
        once the callback returns. Messages that cannot be decoded are committed
        and dropped. When the callback raises, the consumer seeks back to the
        message so the next poll hands it out again.
        """
        async for msg in self.consumer:
            logger.info(f"Received message on partition {msg.partition}, offset {msg.offset}")
            try:
                message = ChunkTranscodingMessage.from_json(msg.value)
            except (ValueError, TypeError) as e:
                logger.error(f"Dropping undecodable message at offset {msg.offset}: {e}")
                await self.consumer.commit()
                continue

            try:
                await process_callback(message)
            except Exception as e:
                logger.error(f"Error processing chunk {message.chunk_index} of {message.job_id}: {e}", exc_info=True)
                self.consumer.seek(TopicPartition(msg.topic, msg.partition), msg.offset)
                continue
            await self.consumer.commit()
            if not self.running:
                break

    async def stop(self):
        """Stop the consumer."""
        if self.consumer:
            self.running = False
            await self.consumer.stop()
            logger.info("ChunkTranscodingConsumer stopped")
