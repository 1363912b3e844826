from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence
import logging
import shutil
import subprocess
import tempfile

from job_runner.exceptions.exceptions import MergeError
from job_runner.services.staging_service import StagingService, is_object_uri, local_path
from job_runner.storage.path_generator import parse_sequence_number


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PartitionOutput:
    sequence_number: int
    location: str

    @classmethod
    def from_location(cls, location: str) -> "PartitionOutput":
        return cls(parse_sequence_number(location), location)


class RemuxMerger:
    """Reassembles per-chunk transcode outputs in chunk sequence order."""

    def __init__(self, staging: StagingService, work_dir: Optional[str] = None, ffmpeg: str = "ffmpeg"):
        self.staging = staging
        self.work_dir = work_dir
        self.ffmpeg = ffmpeg

    @staticmethod
    def order(outputs: Iterable, expected_count: Optional[int] = None) -> List:
        """
        Sort anything carrying a ``sequence_number``. Sequence numbers must run
        0..n-1 without gaps or duplicates, otherwise MergeError.
        """
        ordered = sorted(outputs, key=lambda o: o.sequence_number)
        seen = [o.sequence_number for o in ordered]

        duplicates = sorted({n for n in seen if seen.count(n) > 1})
        if duplicates:
            raise MergeError(f"Duplicate sequence numbers in partition outputs: {duplicates}")

        total = expected_count if expected_count is not None else (seen[-1] + 1 if seen else 0)
        missing = sorted(set(range(total)) - set(seen))
        if missing:
            raise MergeError(f"Missing sequence numbers in partition outputs: {missing}")
        if len(seen) != total:
            raise MergeError(f"Expected {total} partition outputs, found {len(seen)}")
        return ordered

    @classmethod
    def reassemble(cls, chunks: Iterable) -> Iterator:
        """Packets of every chunk, in sequence order."""
        for chunk in cls.order(chunks):
            yield from chunk.packets

    def collect(self, output_prefix: str) -> List[PartitionOutput]:
        outputs = []
        for location in self.staging.list(output_prefix):
            try:
                outputs.append(PartitionOutput.from_location(location))
            except ValueError:
                logger.debug(f"Ignoring {location}, not a partition output")
        return outputs

    def finalize_segments(self, output_prefix: str, expected_count: int) -> List[PartitionOutput]:
        """Segmented jobs keep their outputs; only the ordering is checked."""
        ordered = self.order(self.collect(output_prefix), expected_count)
        logger.info(f"{len(ordered)} ordered segments in {output_prefix}")
        return ordered

    def merge(self, output_prefix: str, destination: str, expected_count: int) -> str:
        """
        Concatenate the outputs under ``output_prefix`` into the local file
        ``destination`` and delete the per-partition outputs afterwards.
        """
        ordered = self.order(self.collect(output_prefix), expected_count)
        merge_dir = Path(tempfile.mkdtemp(prefix="merge-", dir=self.work_dir))
        try:
            inputs = self._localize(ordered, merge_dir)
            concat_file = merge_dir / "concat.txt"
            self.create_concat_file(inputs, concat_file)
            self._run_concat(concat_file, Path(destination), len(inputs))
        finally:
            shutil.rmtree(merge_dir, ignore_errors=True)

        self.staging.delete(output_prefix, recursive=True)
        return destination

    def _localize(self, ordered: Sequence[PartitionOutput], merge_dir: Path) -> List[Path]:
        paths = []
        for output in ordered:
            if is_object_uri(output.location):
                target = merge_dir / Path(output.location).name
                self.staging.copy(output.location, str(target), overwrite=True)
                paths.append(target)
            else:
                paths.append(local_path(output.location))
        return paths

    @staticmethod
    def create_concat_file(chunks: Sequence[Path], concat_file: Path):
        """Create ffmpeg concat demuxer file."""
        with open(concat_file, 'w') as f:
            for chunk in chunks:
                # Escape single quotes in paths
                escaped_path = str(chunk).replace("'", "'\\''")
                f.write(f"file '{escaped_path}'\n")

    def _run_concat(self, concat_file: Path, output_path: Path, count: int):
        cmd = [
            self.ffmpeg,
            "-y",
            "-f", "concat",
            "-safe", "0",
            "-i", str(concat_file),
            "-c", "copy",  # remux, no re-encoding
            str(output_path),
        ]
        logger.info(f"Merging {count} partition outputs into {output_path}")
        try:
            subprocess.run(cmd, check=True, capture_output=True, text=True)
        except subprocess.CalledProcessError as e:
            logger.error(f"FFmpeg merge error: {e.stderr}")
            raise MergeError(f"ffmpeg concat failed with code {e.returncode}") from e
        except OSError as e:
            raise MergeError(f"Could not run {self.ffmpeg}: {e}") from e
