from typing import Dict, List, Optional

import redis


JOB_TTL_SECONDS = 86400
TIMING_TTL_SECONDS = 30 * 86400


class RedisClient:
    """
    Chunk progress counters for submitted jobs, and the attribute store
    that run timings are flushed to. Created per run or per worker and
    closed by its owner.
    """

    def __init__(self, host='redis_video', port=6379, db=0):
        self.client = redis.Redis(host=host, port=port, db=db)

    # --- chunk progress ---

    async def set_total_chunks(self, job_id: str, total_chunks: int):
        self.client.hset(f"job:{job_id}", mapping={
            "total_chunks": total_chunks,
            "completed_chunks": 0,
            "failed_chunks": 0,
            "status": "running",
        })
        self.client.expire(f"job:{job_id}", JOB_TTL_SECONDS)

    async def increment_completed_chunks(self, job_id: str, stream_id: Optional[int] = None) -> int:
        if stream_id is not None:
            self.client.hincrby(f"job:{job_id}", f"stream_progress:{stream_id}", 1)
        return self.client.hincrby(f"job:{job_id}", "completed_chunks", 1)

    async def increment_failed_chunks(self, job_id: str) -> int:
        return self.client.hincrby(f"job:{job_id}", "failed_chunks", 1)

    async def get_progress(self, job_id: str) -> Dict[str, int]:
        job_data = self.client.hgetall(f"job:{job_id}")
        if not job_data:
            return {}
        return {
            "total_chunks": int(job_data.get(b'total_chunks', 0)),
            "completed_chunks": int(job_data.get(b'completed_chunks', 0)),
            "failed_chunks": int(job_data.get(b'failed_chunks', 0)),
        }

    async def get_stream_progress(self, job_id: str) -> Dict[int, int]:
        """Completed chunks per routing stream."""
        job_data = self.client.hgetall(f"job:{job_id}")
        return {
            int(key.decode().split(":", 1)[1]): int(value)
            for key, value in job_data.items()
            if key.startswith(b"stream_progress:")
        }

    async def mark_job_complete(self, job_id: str, status: str = "completed"):
        """Mark a job as finished in Redis."""
        self.client.hset(f"job:{job_id}", "status", status)
        self.client.expire(f"job:{job_id}", JOB_TTL_SECONDS)

    # --- timing attributes ---

    def put_attributes(self, item_name: str, attributes: Dict[str, str]) -> None:
        if not attributes:
            return
        self.client.hset(f"timing:{item_name}", mapping=attributes)
        self.client.expire(f"timing:{item_name}", TIMING_TTL_SECONDS)

    def get_attributes(self, item_name: str) -> Dict[str, str]:
        raw = self.client.hgetall(f"timing:{item_name}")
        return {k.decode(): v.decode() for k, v in raw.items()}

    def item_names(self, prefix: str) -> List[str]:
        return sorted(
            key.decode()[len("timing:"):]
            for key in self.client.scan_iter(match=f"timing:{prefix}*")
        )

    def close(self):
        self.client.close()
