"""
Sequential packet bridge over a PyAV input container.

Opens any source FFmpeg can read (local path, presigned URL), exposes the
usable elementary streams and hands packets out one at a time with their
timing rescaled to microseconds. Packet payloads are copied out of the
demuxer so that ownership moves to the caller on receipt.

    with PacketStreamBridge.open(path) as bridge:
        for packet in bridge:
            with packet:
                ...
"""

import enum
import logging
from typing import Dict, Iterator, List, Optional

import av

from job_runner.demux.packet import DemuxPacket
from job_runner.exceptions.exceptions import BridgeStateError, DemuxOpenError

logger = logging.getLogger(__name__)
leak_logger = logging.getLogger("job_runner.demux.leaks")

MICROSECONDS_PER_SECOND = 1_000_000
DEMUXABLE_TYPES = {"video", "audio", "subtitle"}


class BridgeState(str, enum.Enum):
    OPEN = "open"
    END_OF_STREAM = "end_of_stream"
    CLOSED = "closed"


def to_microseconds(value: Optional[int], time_base) -> Optional[int]:
    if value is None or time_base is None:
        return None
    return int(value * time_base * MICROSECONDS_PER_SECOND)


class PacketStreamBridge:
    def __init__(self, source: str, container):
        self.source = source
        self._container = container
        self._streams: Dict[int, object] = {
            stream.index: stream for stream in container.streams if self._is_usable(stream)
        }
        self._packets = container.demux()
        self._state = BridgeState.OPEN
        self._outstanding = 0

    @classmethod
    def open(cls, source: str, options: Optional[dict] = None) -> "PacketStreamBridge":
        """Open ``source`` for demuxing. Raises DemuxOpenError, no handle is returned on failure."""
        try:
            container = av.open(source, mode="r", options=options or {})
        except av.error.FFmpegError as e:
            code = e.errno if e.errno is not None else -1
            logger.error(f"Failed to open {source} for demux: {e}")
            raise DemuxOpenError(str(source), code, e.strerror or "") from e

        bridge = cls(str(source), container)
        if not bridge._streams:
            container.close()
            raise DemuxOpenError(str(source), -1, "no demuxable streams")

        logger.info(f"Opened {source} with {bridge.stream_count} demuxable streams")
        return bridge

    @staticmethod
    def _is_usable(stream) -> bool:
        return stream.type in DEMUXABLE_TYPES and stream.codec_context is not None

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def stream_count(self) -> int:
        return len(self._streams)

    @property
    def stream_ids(self) -> List[int]:
        return sorted(self._streams)

    @property
    def outstanding_packets(self) -> int:
        """Packets handed out and not yet released."""
        return self._outstanding

    def stream_template(self, stream_id: int):
        """The input stream a muxer should copy codec parameters from."""
        if self._state is BridgeState.CLOSED:
            raise BridgeStateError(f"Bridge for {self.source} is closed")
        return self._streams[stream_id]

    def next_packet(self) -> Optional[DemuxPacket]:
        """Return the next packet, or None once the source is exhausted."""
        if self._state is BridgeState.CLOSED:
            raise BridgeStateError(f"Bridge for {self.source} is closed")
        if self._state is BridgeState.END_OF_STREAM:
            raise BridgeStateError(f"Bridge for {self.source} already reached end of stream")

        for packet in self._packets:
            # Flush packets and packets of streams without a codec are skipped.
            if packet.stream_index not in self._streams or packet.dts is None or packet.size == 0:
                continue
            return self._wrap(packet)

        self._state = BridgeState.END_OF_STREAM
        return None

    def _wrap(self, packet) -> DemuxPacket:
        time_base = packet.time_base or self._streams[packet.stream_index].time_base
        self._outstanding += 1
        return DemuxPacket(
            stream_id=packet.stream_index,
            split_point=bool(packet.is_keyframe),
            timestamp=to_microseconds(packet.dts, time_base),
            presentation_timestamp=to_microseconds(packet.pts, time_base),
            duration=to_microseconds(packet.duration or 0, time_base),
            payload=bytes(packet),
            on_release=self._on_release,
        )

    def _on_release(self, packet: DemuxPacket) -> None:
        self._outstanding -= 1

    def release(self, packet: DemuxPacket) -> bool:
        return packet.release()

    def close(self) -> bool:
        """Close the container. Returns True if the bridge was already closed."""
        if self._state is BridgeState.CLOSED:
            return True
        self._state = BridgeState.CLOSED
        self._packets = None
        self._container.close()
        if self._outstanding:
            leak_logger.warning(f"{self._outstanding} packets from {self.source} were not released before close")
        return False

    def __iter__(self) -> Iterator[DemuxPacket]:
        while True:
            packet = self.next_packet()
            if packet is None:
                return
            yield packet

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
