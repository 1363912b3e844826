from typing import Dict, Iterable, List, Sequence


class StreamRouter:
    """
    Maps chunks to execution partitions.

    Every stream owns a fixed subset of the partitions (disjoint when there
    are at least as many partitions as streams). Within that subset a chunk
    goes to the partition matching its position in the run, so the
    partitions of one stream receive ascending, contiguous sequence ranges
    and reading them in partition order replays the stream in order.
    """

    def __init__(self, partition_count: int, stream_ids: Iterable[int], total_chunks: int):
        if partition_count <= 0:
            raise ValueError("partition_count must be greater than 0")
        self.partition_count = partition_count
        self.stream_ids = sorted(set(stream_ids))
        if not self.stream_ids:
            raise ValueError("at least one stream is required")
        self.total_chunks = max(total_chunks, 1)

        self._subsets: Dict[int, List[int]] = {}
        stream_total = len(self.stream_ids)
        for position, stream_id in enumerate(self.stream_ids):
            if partition_count >= stream_total:
                subset = list(range(position, partition_count, stream_total))
            else:
                subset = [position % partition_count]
            self._subsets[stream_id] = subset

    def partitions_for_stream(self, stream_id: int) -> List[int]:
        try:
            return self._subsets[stream_id]
        except KeyError:
            raise ValueError(f"Unknown stream {stream_id}") from None

    def partition_for(self, stream_id: int, sequence_number: int) -> int:
        if not 0 <= sequence_number < self.total_chunks:
            raise ValueError(f"Sequence number {sequence_number} outside 0..{self.total_chunks - 1}")
        subset = self.partitions_for_stream(stream_id)
        return subset[sequence_number * len(subset) // self.total_chunks]

    def assign(self, chunks: Sequence) -> Dict[int, List]:
        """Group chunks (anything with leading_stream_id and sequence_number) by partition."""
        assignments: Dict[int, List] = {}
        for chunk in sorted(chunks, key=lambda c: c.sequence_number):
            partition = self.partition_for(chunk.leading_stream_id, chunk.sequence_number)
            assignments.setdefault(partition, []).append(chunk)
        return assignments
