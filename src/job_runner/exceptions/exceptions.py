class DemuxOpenError(Exception):
    """Raised when a source cannot be opened or demultiplexed"""

    def __init__(self, source: str, code: int, message: str = ""):
        self.source = source
        self.code = code
        super().__init__(f"Cannot demux {source} (code {code}){': ' + message if message else ''}")


class BridgeStateError(Exception):
    """Raised when a packet bridge is used after end of stream or close"""
    pass


class PacketReleasedError(Exception):
    """Raised when a released packet payload is accessed"""
    pass


class ChunkingError(Exception):
    """Raised when chunk staging fails"""
    pass


class StagingError(Exception):
    """Raised when storage or staging copy operations fail"""
    pass


class TranscodingError(Exception):
    """Raised when the distributed transcode of a job fails"""
    pass


class MergeError(Exception):
    """Raised when partition outputs cannot be reassembled"""
    pass


class OutputExistsError(Exception):
    """Raised when a job output exists and overwrite is disabled"""
    pass


class JobDefinitionError(Exception):
    """Raised when the job definition list cannot be loaded"""
    pass


class ResourceNotFoundError(Exception):
    """Raised when a resource is not found"""
    pass
