import json
from dataclasses import dataclass, asdict


@dataclass
class ChunkTranscodingMessage:
    job_id: str
    chunk_index: int
    partition: int
    chunk_uri: str
    output_uri: str
    video_res_scale: float
    video_crf: float
    video_bitrate: int
    audio_bitrate: int
    video_threads: int
    stream_id: int = 0

    def to_json(self) -> bytes:
        return json.dumps(asdict(self)).encode()

    @classmethod
    def from_json(cls, value: bytes) -> "ChunkTranscodingMessage":
        return cls(**json.loads(value.decode('utf-8')))
