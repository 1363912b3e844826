from typing import Callable, Optional

from job_runner.exceptions.exceptions import PacketReleasedError


class DemuxPacket:
    """
    One demultiplexed packet.

    Timestamps and durations are in microseconds. The payload belongs to
    whoever holds the packet; it must be released exactly once, either with
    ``release()`` or by using the packet as a context manager.
    """

    __slots__ = (
        "stream_id",
        "split_point",
        "timestamp",
        "presentation_timestamp",
        "duration",
        "_payload",
        "_size",
        "_on_release",
    )

    def __init__(
        self,
        stream_id: int,
        split_point: bool,
        timestamp: int,
        duration: int,
        payload: bytes,
        presentation_timestamp: Optional[int] = None,
        on_release: Optional[Callable[["DemuxPacket"], None]] = None,
    ):
        self.stream_id = stream_id
        self.split_point = split_point
        self.timestamp = timestamp
        self.presentation_timestamp = presentation_timestamp
        self.duration = duration
        self._payload = payload
        self._size = len(payload)
        self._on_release = on_release

    @property
    def size(self) -> int:
        # Kept after release so planned chunks can still report their size.
        return self._size

    @property
    def released(self) -> bool:
        return self._payload is None

    @property
    def payload(self) -> bytes:
        if self._payload is None:
            raise PacketReleasedError(f"Payload of {self!r} was already released")
        return self._payload

    def release(self) -> bool:
        """Drop the payload. Returns True if it had already been released."""
        if self._payload is None:
            return True
        self._payload = None
        if self._on_release is not None:
            self._on_release(self)
            self._on_release = None
        return False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()

    def __repr__(self) -> str:
        return (
            f"DemuxPacket(stream_id={self.stream_id}, split_point={self.split_point}, "
            f"timestamp={self.timestamp}, duration={self.duration}, size={self._size}, "
            f"released={self.released})"
        )
