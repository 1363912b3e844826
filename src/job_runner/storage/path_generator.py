import re
from enum import Enum


MANIFEST_NAME = "manifest.json"
SEGMENT_EXTENSION = "ts"

_SEQUENCE_PATTERN = re.compile(r"^chunk_(\d+)\.\w+$")


class StoragePaths(str, Enum):
    CHUNKS = "chunks"
    TRANSCODED = "transcoded"


def job_key(run_id: str, job_counter: int) -> str:
    return f"{run_id}-{job_counter}"


def chunk_file_name(sequence_number: int, extension: str) -> str:
    return f"chunk_{sequence_number:05d}.{extension}"


def segment_file_name(sequence_number: int) -> str:
    return chunk_file_name(sequence_number, SEGMENT_EXTENSION)


def parse_sequence_number(name: str) -> int:
    """Sequence number encoded in a chunk or segment file name, e.g. chunk_00007.ts -> 7."""
    match = _SEQUENCE_PATTERN.match(name.rsplit("/", 1)[-1])
    if not match:
        raise ValueError(f"Not a chunk file name: {name}")
    return int(match.group(1))


def generate_chunk_prefix(key: str) -> str:
    return f"{StoragePaths.CHUNKS.value}/{key}"


def generate_transcoded_prefix(key: str) -> str:
    return f"{StoragePaths.TRANSCODED.value}/{key}"
