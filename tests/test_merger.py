import random
import subprocess

import pytest

from job_runner.exceptions.exceptions import MergeError
from job_runner.services import merge_service
from job_runner.services.chunking_service import ChunkPlanner
from job_runner.services.merge_service import PartitionOutput, RemuxMerger
from job_runner.services.staging_service import StagingService

from conftest import interleaved_packets


def _outputs(*sequence_numbers):
    return [PartitionOutput(n, f"out/chunk_{n:05d}.ts") for n in sequence_numbers]


def test_order_sorts_by_sequence_number():
    ordered = RemuxMerger.order(_outputs(2, 0, 1))
    assert [o.sequence_number for o in ordered] == [0, 1, 2]


def test_order_rejects_gaps():
    with pytest.raises(MergeError, match="Missing"):
        RemuxMerger.order(_outputs(0, 2))


def test_order_rejects_duplicates():
    with pytest.raises(MergeError, match="Duplicate"):
        RemuxMerger.order(_outputs(0, 1, 1))


def test_order_checks_the_expected_count():
    with pytest.raises(MergeError):
        RemuxMerger.order(_outputs(0, 1), expected_count=3)
    assert RemuxMerger.order([], expected_count=0) == []


def test_reassembled_packets_keep_per_stream_timestamp_order():
    chunks = list(ChunkPlanner(60).plan(interleaved_packets(30, keyframe_interval=3)))
    shuffled = chunks[:]
    random.Random(7).shuffle(shuffled)

    last_seen = {}
    for packet in RemuxMerger.reassemble(shuffled):
        assert packet.timestamp >= last_seen.get(packet.stream_id, -1)
        last_seen[packet.stream_id] = packet.timestamp


def test_merge_concatenates_in_sequence_order_and_cleans_up(tmp_path, monkeypatch):
    outputs = tmp_path / "transcoded"
    outputs.mkdir()
    for n in (2, 0, 1):
        (outputs / f"chunk_{n:05d}.ts").write_bytes(b"segment")
    (outputs / "manifest.json").write_text("{}")
    destination = tmp_path / "final.mp4"
    seen = {}

    def fake_run(cmd, **kwargs):
        concat_file = cmd[cmd.index("-i") + 1]
        with open(concat_file) as f:
            seen["concat"] = f.read().splitlines()
        seen["cmd"] = cmd
        destination.write_bytes(b"merged")
        return subprocess.CompletedProcess(cmd, 0)

    monkeypatch.setattr(merge_service.subprocess, "run", fake_run)
    merger = RemuxMerger(StagingService(), work_dir=str(tmp_path))

    merger.merge(str(outputs), str(destination), expected_count=3)

    assert [line.rsplit("/", 1)[-1] for line in seen["concat"]] == [
        "chunk_00000.ts'", "chunk_00001.ts'", "chunk_00002.ts'",
    ]
    assert seen["cmd"][-3:] == ["-c", "copy", str(destination)]
    assert destination.read_bytes() == b"merged"
    assert not outputs.exists()


def test_failed_concat_raises_merge_error(tmp_path, monkeypatch):
    outputs = tmp_path / "transcoded"
    outputs.mkdir()
    (outputs / "chunk_00000.ts").write_bytes(b"segment")

    def failing_run(cmd, **kwargs):
        raise subprocess.CalledProcessError(1, cmd, stderr="broken")

    monkeypatch.setattr(merge_service.subprocess, "run", failing_run)
    merger = RemuxMerger(StagingService(), work_dir=str(tmp_path))

    with pytest.raises(MergeError):
        merger.merge(str(outputs), str(tmp_path / "final.mp4"), expected_count=1)
    assert (outputs / "chunk_00000.ts").exists()


def test_finalize_segments_leaves_outputs_in_place(tmp_path):
    for n in (1, 0):
        (tmp_path / f"chunk_{n:05d}.ts").write_bytes(b"segment")
    merger = RemuxMerger(StagingService())

    ordered = merger.finalize_segments(str(tmp_path), expected_count=2)
    assert [o.sequence_number for o in ordered] == [0, 1]
    assert len(list(tmp_path.iterdir())) == 2


def test_finalize_segments_with_a_missing_segment(tmp_path):
    (tmp_path / "chunk_00001.ts").write_bytes(b"segment")
    with pytest.raises(MergeError):
        RemuxMerger(StagingService()).finalize_segments(str(tmp_path), expected_count=2)
