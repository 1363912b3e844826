from collections import deque
from contextlib import closing
from dataclasses import dataclass, field
from fractions import Fraction
from pathlib import Path
from typing import Callable, Deque, Iterable, Iterator, List, Optional, Set
import logging
import os

import av

from job_runner.config.base_config import settings
from job_runner.demux.bridge import PacketStreamBridge
from job_runner.demux.packet import DemuxPacket
from job_runner.exceptions.exceptions import ChunkingError
from job_runner.schema import ChunkManifest, ChunkRecord
from job_runner.services.staging_service import StagingService, join_uri
from job_runner.storage.path_generator import MANIFEST_NAME, chunk_file_name


logger = logging.getLogger(__name__)

MICROSECOND_TIME_BASE = Fraction(1, 1_000_000)


@dataclass
class Chunk:
    sequence_number: int
    packets: List[DemuxPacket] = field(default_factory=list)

    @property
    def stream_ids(self) -> frozenset:
        return frozenset(p.stream_id for p in self.packets)

    @property
    def size_bytes(self) -> int:
        return sum(p.size for p in self.packets)

    @property
    def leading_stream_id(self) -> int:
        return self.packets[0].stream_id

    @property
    def start_timestamp(self) -> int:
        return min(p.timestamp for p in self.packets)

    @property
    def end_timestamp(self) -> int:
        return max(p.timestamp + p.duration for p in self.packets)

    def release(self) -> None:
        for packet in self.packets:
            packet.release()


class ChunkPlanner:
    """
    Cuts a packet sequence into ordered chunks of at most ``threshold`` bytes.

    A chunk is only cut in front of a split point. The cut is held open
    until every stream of the closing chunk has shown its next packet; if
    one of them resumes on a packet that is not a split point the cut is
    abandoned and the held packets stay in the closing chunk, however large
    the held run has grown by then. A chunk can therefore overrun the
    threshold when no aligned cut exists, and a single oversized packet
    always gets a chunk of its own when it is a split point.
    """

    def __init__(self, threshold: int):
        if threshold <= 0:
            raise ValueError("threshold must be greater than 0")
        self.threshold = threshold

    def plan(self, packets: Iterable[DemuxPacket]) -> Iterator[Chunk]:
        state = _PlannerState(self.threshold)
        try:
            for packet in packets:
                state.feed(packet)
                yield from state.drain()
            state.finish()
            yield from state.drain()
        finally:
            # Packets not yet handed out in a chunk are still ours.
            state.release_pending()


class _PlannerState:
    def __init__(self, threshold: int):
        self.threshold = threshold
        self.sequence = 0
        self.current: List[DemuxPacket] = []
        self.current_size = 0
        self.held: Optional[List[DemuxPacket]] = None
        self.held_size = 0
        self.awaiting: Set[int] = set()
        self.held_streams: Set[int] = set()
        self.ready: Deque[Chunk] = deque()

    def feed(self, packet: DemuxPacket) -> None:
        if self.held is not None:
            self._feed_held(packet)
            return

        if self.current and self.current_size + packet.size > self.threshold and packet.split_point:
            self.held = [packet]
            self.held_size = packet.size
            self.held_streams = {packet.stream_id}
            self.awaiting = {p.stream_id for p in self.current} - self.held_streams
            if not self.awaiting:
                self._cut()
            return

        self.current.append(packet)
        self.current_size += packet.size

    def _feed_held(self, packet: DemuxPacket) -> None:
        if packet.stream_id not in self.held_streams:
            self.held_streams.add(packet.stream_id)
            if not packet.split_point:
                logger.debug(
                    f"Abandoning cut at ts={self.held[0].timestamp}: stream {packet.stream_id} "
                    f"resumes without a split point"
                )
                self.current.extend(self.held)
                self.current_size += self.held_size
                self.current.append(packet)
                self.current_size += packet.size
                self.held = None
                return
            self.awaiting.discard(packet.stream_id)

        # A held run only overflows into a cut once every stream has resumed
        # on a split point; until then it keeps growing past the threshold.
        if not self.awaiting and self.held_size + packet.size > self.threshold:
            self._cut()
            self.feed(packet)
            return

        self.held.append(packet)
        self.held_size += packet.size
        if not self.awaiting:
            self._cut()

    def _cut(self) -> None:
        self.ready.append(Chunk(sequence_number=self.sequence, packets=self.current))
        self.sequence += 1
        self.current = self.held
        self.current_size = self.held_size
        self.held = None
        self.held_size = 0

    def finish(self) -> None:
        if self.held is not None:
            self._cut()
        if self.current:
            self.ready.append(Chunk(sequence_number=self.sequence, packets=self.current))
            self.sequence += 1
            self.current = []
            self.current_size = 0

    def drain(self) -> Iterator[Chunk]:
        while self.ready:
            yield self.ready.popleft()

    def release_pending(self) -> None:
        for chunk in self.ready:
            chunk.release()
        for packet in self.current + (self.held or []):
            packet.release()


class MatroskaChunkWriter:
    """Remuxes the packets of one chunk into a standalone Matroska file."""

    extension = "mkv"

    def write(self, chunk: Chunk, bridge: PacketStreamBridge, path: Path) -> None:
        with av.open(str(path), mode="w", format="matroska") as output:
            out_streams = {
                stream_id: output.add_stream_from_template(bridge.stream_template(stream_id))
                for stream_id in sorted(chunk.stream_ids)
            }
            for packet in chunk.packets:
                with packet:
                    av_packet = av.Packet(packet.payload)
                    av_packet.stream = out_streams[packet.stream_id]
                    av_packet.time_base = MICROSECOND_TIME_BASE
                    av_packet.dts = packet.timestamp
                    av_packet.pts = (
                        packet.presentation_timestamp
                        if packet.presentation_timestamp is not None
                        else packet.timestamp
                    )
                    av_packet.duration = packet.duration
                    av_packet.is_keyframe = packet.split_point
                    output.mux(av_packet)


class ChunkingService:
    def __init__(
        self,
        staging: StagingService,
        writer: Optional[MatroskaChunkWriter] = None,
        bridge_factory: Callable[[str], PacketStreamBridge] = PacketStreamBridge.open,
        work_dir: Optional[str] = None,
    ):
        self.staging = staging
        self.writer = writer or MatroskaChunkWriter()
        self.bridge_factory = bridge_factory
        self.work_dir = Path(work_dir or settings.STAGING_DIR) / "chunks"

    def stage_chunks(self, source: str, destination: str, chunk_size: int) -> ChunkManifest:
        """
        Demux ``source``, write every planned chunk to ``destination`` and
        finish with a manifest describing them.
        """
        local_dir = self.work_dir / Path(destination.rstrip("/")).name
        local_dir.mkdir(parents=True, exist_ok=True)

        with self.bridge_factory(source) as bridge:
            records: List[ChunkRecord] = []
            with closing(ChunkPlanner(chunk_size).plan(bridge)) as chunks:
                for chunk in chunks:
                    name = chunk_file_name(chunk.sequence_number, self.writer.extension)
                    local_path = local_dir / name
                    try:
                        self.writer.write(chunk, bridge, local_path)
                    except Exception as e:
                        raise ChunkingError(f"Failed to write chunk {chunk.sequence_number} of {source}: {e}") from e
                    finally:
                        chunk.release()

                    self.staging.upload_file(str(local_path), join_uri(destination, name))
                    try:
                        os.remove(local_path)
                    except OSError as e:
                        logger.warning(f"Could not remove local chunk {local_path}: {e}")
                    records.append(ChunkRecord.from_chunk(chunk, name))

            manifest = ChunkManifest(
                source=source,
                stream_ids=bridge.stream_ids,
                chunk_size=chunk_size,
                chunks=records,
            )

        self.staging.write_text(join_uri(destination, MANIFEST_NAME), manifest.model_dump_json(indent=2))
        logger.info(f"Staged {len(records)} chunks of {source} into {destination}")
        return manifest

    def load_manifest(self, location: str) -> ChunkManifest:
        try:
            return ChunkManifest.model_validate_json(self.staging.read_text(join_uri(location, MANIFEST_NAME)))
        except Exception as e:
            raise ChunkingError(f"No usable chunk manifest at {location}: {e}") from e
