from datetime import datetime, timedelta, timezone

import pytest

from job_runner.services.timing_service import (
    Boundary,
    TimeEntry,
    TimedEvent,
    TimingKey,
    TimingRecorder,
    load_time_entries,
)

from conftest import InMemoryAttributeStore


class SteppingClock:
    def __init__(self, start=datetime(2024, 1, 1, tzinfo=timezone.utc), step=timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self):
        current = self.now
        self.now += self.step
        return current


def test_timing_key_round_trip():
    key = TimingKey(TimedEvent.DISTRIBUTED_EXECUTION, Boundary.END)
    assert key.encode() == "time:distributed_execution:end"
    assert TimingKey.parse(key.encode()) == key


@pytest.mark.parametrize("name", ["time/demux/start", "time demux start", "demux:start", "time:demux", "time:nope:start"])
def test_timing_key_parsing_is_strict(name):
    with pytest.raises(ValueError):
        TimingKey.parse(name)


def test_recorder_writes_one_item_per_job_and_run_events_to_counter_zero():
    store = InMemoryAttributeStore()
    recorder = TimingRecorder(store, "run", clock=SteppingClock())

    recorder.mark_start(TimedEvent.JOB_RUN)
    recorder.start_job(1)
    with recorder.timed(TimedEvent.DEMUX):
        pass
    recorder.mark_end(TimedEvent.JOB_RUN)
    recorder.flush()

    assert set(store.items) == {"run-0", "run-1"}
    assert set(store.items["run-0"]) == {"time:job_run:start", "time:job_run:end"}
    assert set(store.items["run-1"]) == {"time:demux:start", "time:demux:end"}
    assert recorder.record(TimedEvent.DEMUX, job_counter=1).duration == 1.0


def test_timed_block_that_raises_records_no_end():
    recorder = TimingRecorder(InMemoryAttributeStore(), "run", clock=SteppingClock())
    recorder.start_job(2)
    with pytest.raises(RuntimeError):
        with recorder.timed(TimedEvent.MERGE):
            raise RuntimeError("boom")

    record = recorder.record(TimedEvent.MERGE)
    assert record.start is not None
    assert record.end is None
    assert record.duration is None


def test_failed_flush_keeps_attributes_for_the_next_attempt():
    store = InMemoryAttributeStore()
    store.fail_puts = True
    recorder = TimingRecorder(store, "run", clock=SteppingClock())
    recorder.start_job(1)
    recorder.mark_start(TimedEvent.JOB)

    recorder.flush()
    assert store.items == {}

    store.fail_puts = False
    recorder.flush()
    assert "time:job:start" in store.items["run-1"]


def test_cluster_details_are_kept_apart_from_timings():
    store = InMemoryAttributeStore()
    recorder = TimingRecorder(store, "run", clock=SteppingClock())
    recorder.start_job(1)
    recorder.log_cluster_details({"kafka_topic": "video-chunks", "workers": 4})
    recorder.mark_start(TimedEvent.JOB)
    recorder.mark_end(TimedEvent.JOB)
    recorder.flush()

    entry = TimeEntry.from_attributes("run-1", store.get_attributes("run-1"))
    assert entry.job_id == "run"
    assert entry.job_counter == 1
    assert entry.details == {"kafka_topic": "video-chunks", "workers": "4"}
    assert entry.timings == {TimedEvent.JOB: 1.0}


def test_time_entry_ignores_malformed_timing_attributes():
    entry = TimeEntry.from_attributes(
        "a-b-c-3",
        {"time:demux:start": "2024-01-01T00:00:00+00:00", "time:bogus:start": "2024-01-01T00:00:00+00:00"},
    )
    assert entry.job_id == "a-b-c"
    assert entry.job_counter == 3
    assert list(entry.start_times) == [TimedEvent.DEMUX]
    assert entry.timings == {}


def test_load_time_entries_sorts_by_start_date():
    store = InMemoryAttributeStore()
    store.put_attributes("run-2", {"time:job:start": "2024-01-01T00:00:05+00:00"})
    store.put_attributes("run-1", {"time:job:start": "2024-01-01T00:00:09+00:00"})
    store.put_attributes("run-3", {"note": "no timings"})
    store.put_attributes("other-1", {"time:job:start": "2024-01-01T00:00:00+00:00"})

    entries = load_time_entries(store, "run")
    assert [e.job_counter for e in entries] == [3, 2, 1]


def test_time_entry_reads_job_statistics_apart_from_details():
    entry = TimeEntry.from_attributes("run-2", {
        "file_size": "1048576",
        "chunk_size": "65536",
        "chunk_count": "16",
        "partition_count": "4",
        "stream_count:0": "12",
        "stream_count:1": "4",
        "stream_progress:0": "6",
        "stream_progress:1": "oops",
        "kafka_topic": "video-chunks",
    })

    assert (entry.file_size, entry.chunk_size, entry.chunk_count, entry.partition_count) == (1048576, 65536, 16, 4)
    assert entry.stream_progress[0].fraction == 0.5
    assert entry.stream_progress[1].completed == 0
    assert entry.details == {"kafka_topic": "video-chunks"}


def test_statistics_are_missing_when_never_recorded():
    entry = TimeEntry.from_attributes("run-1", {"time:job:start": "2024-01-01T00:00:00+00:00"})
    assert entry.file_size is None
    assert entry.partition_count is None
    assert entry.stream_progress == {}
