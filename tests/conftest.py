"""
Shared fakes for the job runner tests.

Nothing here talks to MinIO, Kafka, Redis or FFmpeg: storage is a dict,
the execution substrate writes its segment outputs straight into that
dict, and the merger only records what it was asked to do.
"""

from fractions import Fraction
from typing import Dict, List, Optional

import pytest

from job_runner.config.base_config import BaseConfig
from job_runner.demux.packet import DemuxPacket
from job_runner.exceptions.exceptions import ChunkingError, MergeError, StagingError
from job_runner.schema import ChunkManifest, ChunkRecord, JobDefinition
from job_runner.services.staging_service import join_uri
from job_runner.services.transcoding_service import TranscodingOrchestrator
from job_runner.storage.path_generator import chunk_file_name, segment_file_name


def make_packet(stream_id: int, timestamp: int, size: int = 10, split_point: bool = True, duration: int = 1000):
    return DemuxPacket(
        stream_id=stream_id,
        split_point=split_point,
        timestamp=timestamp,
        duration=duration,
        payload=bytes([stream_id % 256]) * size,
    )


def interleaved_packets(count: int, keyframe_interval: int = 5, size: int = 10) -> List[DemuxPacket]:
    """Video on stream 0 (keyframe every ``keyframe_interval``) interleaved with audio on stream 1."""
    packets = []
    for i in range(count):
        packets.append(make_packet(0, i * 1000, size, split_point=i % keyframe_interval == 0))
        packets.append(make_packet(1, i * 1000, size, split_point=True))
    return packets


class InMemoryAttributeStore:
    def __init__(self):
        self.items: Dict[str, Dict[str, str]] = {}
        self.closed = False
        self.fail_puts = False

    def put_attributes(self, item_name: str, attributes: Dict[str, str]) -> None:
        if self.fail_puts:
            raise ConnectionError("attribute store unavailable")
        self.items.setdefault(item_name, {}).update(attributes)

    def get_attributes(self, item_name: str) -> Dict[str, str]:
        return dict(self.items.get(item_name, {}))

    def item_names(self, prefix: str) -> List[str]:
        return sorted(name for name in self.items if name.startswith(prefix))

    def close(self) -> None:
        self.closed = True


class FakeStaging:
    def __init__(self):
        self.files: Dict[str, bytes] = {}
        self.permissions: Dict[str, int] = {}
        self.deleted: List[str] = []
        self._temp = 0

    def exists(self, uri: str) -> bool:
        return uri in self.files or any(name.startswith(uri.rstrip("/") + "/") for name in self.files)

    def size(self, uri: str) -> int:
        if uri not in self.files:
            raise StagingError(f"No such object {uri}")
        return len(self.files[uri])

    def copy(self, source: str, destination: str, overwrite: bool = False) -> None:
        if source not in self.files:
            raise StagingError(f"No such object {source}")
        if not overwrite and self.exists(destination):
            raise StagingError(f"Destination {destination} exists and overwrite is disabled")
        self.files[destination] = self.files[source]

    def upload_file(self, path: str, destination: str) -> None:
        self.copy(path, destination, overwrite=True)

    def write_text(self, uri: str, text: str) -> None:
        self.files[uri] = text.encode()

    def read_text(self, uri: str) -> str:
        if uri not in self.files:
            raise StagingError(f"No such object {uri}")
        return self.files[uri].decode()

    def list(self, uri: str) -> List[str]:
        prefix = uri.rstrip("/") + "/"
        return sorted(name for name in self.files if name.startswith(prefix))

    def delete(self, uri: str, recursive: bool = False) -> None:
        prefix = uri.rstrip("/") + "/"
        for name in list(self.files):
            if name == uri or (recursive and name.startswith(prefix)):
                del self.files[name]
        self.deleted.append(uri)

    def set_permissions(self, uri: str, mode: int) -> None:
        self.permissions[uri] = mode

    def demux_source(self, uri: str) -> str:
        return f"https://signed.example/{uri}"

    def make_temp_file(self, suffix: str) -> str:
        self._temp += 1
        path = f"/tmp/fake-{self._temp}{suffix}"
        self.files[path] = b""
        return path


def build_manifest(source: str, chunk_count: int, stream_ids=(0, 1)) -> ChunkManifest:
    return ChunkManifest(
        source=source,
        stream_ids=list(stream_ids),
        chunk_size=1024,
        chunks=[
            ChunkRecord(
                sequence_number=i,
                leading_stream_id=stream_ids[0],
                stream_ids=list(stream_ids),
                size_bytes=100,
                start_timestamp=i * 1_000_000,
                end_timestamp=(i + 1) * 1_000_000,
                object_name=chunk_file_name(i, "mkv"),
            )
            for i in range(chunk_count)
        ],
    )


class FakeChunking:
    def __init__(self, staging: FakeStaging, chunk_count: int = 3):
        self.staging = staging
        self.chunk_count = chunk_count
        self.staged: List[tuple] = []
        self.manifests: Dict[str, ChunkManifest] = {}

    def stage_chunks(self, source: str, destination: str, chunk_size: int) -> ChunkManifest:
        self.staged.append((source, destination, chunk_size))
        manifest = build_manifest(source, self.chunk_count)
        for record in manifest.chunks:
            self.staging.files[join_uri(destination, record.object_name)] = b"chunk"
        return manifest

    def load_manifest(self, location: str) -> ChunkManifest:
        if location not in self.manifests:
            raise ChunkingError(f"No usable chunk manifest at {location}")
        return self.manifests[location]


class FakeSubstrate:
    def __init__(self, staging: FakeStaging, succeed: bool = True):
        self.staging = staging
        self.succeed = succeed
        self.requests = []

    async def submit(self, request) -> bool:
        self.requests.append(request)
        request.report({"partition_count": 4})
        if self.succeed:
            for record in request.manifest.chunks:
                name = segment_file_name(record.sequence_number)
                self.staging.files[join_uri(request.output_location, name)] = b"segment"
            request.report({f"stream_progress:{request.manifest.stream_ids[0]}": len(request.manifest.chunks)})
        return self.succeed


class FakeMerger:
    def __init__(self, staging: FakeStaging, fail_on: Optional[str] = None):
        self.staging = staging
        self.fail_on = fail_on
        self.merged = []
        self.finalized = []

    def merge(self, output_prefix: str, destination: str, expected_count: int) -> str:
        if self.fail_on is not None and self.fail_on in output_prefix:
            raise MergeError("concat failed")
        self.merged.append((output_prefix, destination, expected_count))
        self.staging.files[destination] = b"merged"
        self.staging.delete(output_prefix, recursive=True)
        return destination

    def finalize_segments(self, output_prefix: str, expected_count: int):
        self.finalized.append((output_prefix, expected_count))
        return self.staging.list(output_prefix)


def job_definition(name: str = "job", **overrides) -> JobDefinition:
    fields = dict(
        job_name=name,
        input_uri=f"s3://media/{name}.mkv",
        input_type="raw_remote",
        output_uri=f"s3://media/out/{name}.mp4",
        output_type="single_file",
        demux_chunk_size=16 * 1024 * 1024,
    )
    fields.update(overrides)
    return JobDefinition(**fields)


@pytest.fixture
def config():
    return BaseConfig(WORK_URI="s3://work", LARGE_FILE_THRESHOLD=1024, STAGING_DIR="/tmp/job_runner_tests")


@pytest.fixture
def staging():
    return FakeStaging()


@pytest.fixture
def store():
    return InMemoryAttributeStore()


@pytest.fixture
def chunking(staging):
    return FakeChunking(staging)


@pytest.fixture
def substrate(staging):
    return FakeSubstrate(staging)


@pytest.fixture
def merger(staging):
    return FakeMerger(staging)


@pytest.fixture
def orchestrator(staging, chunking, substrate, merger, store, config):
    return TranscodingOrchestrator(
        staging=staging,
        chunking=chunking,
        substrate=substrate,
        merger=merger,
        store_factory=lambda: store,
        config=config,
    )


class FakeStream:
    def __init__(self, index: int, type: str = "video", codec_context=True):
        self.index = index
        self.type = type
        self.codec_context = object() if codec_context else None
        self.time_base = Fraction(1, 1000)


class FakeAvPacket:
    def __init__(self, stream_index, dts, data=b"xxxx", pts=None, duration=40, is_keyframe=True):
        self.stream_index = stream_index
        self.dts = dts
        self.pts = dts if pts is None else pts
        self.duration = duration
        self.is_keyframe = is_keyframe
        self.time_base = Fraction(1, 1000)
        self._data = data

    @property
    def size(self):
        return len(self._data)

    def __bytes__(self):
        return self._data


class FakeContainer:
    def __init__(self, streams, packets):
        self.streams = streams
        self._packets = packets
        self.closed = False

    def demux(self):
        return iter(self._packets)

    def close(self):
        self.closed = True
