"""
Per-stage timing for job runs.

Each job of a run gets one attribute item named ``{run_id}-{job_counter}``
in the attribute store; run-wide events go to counter 0. Timing attributes
are keyed by an explicit (event, boundary) pair, e.g. ``time:demux:start``,
with an ISO-8601 UTC timestamp as the value. A few job statistics have
fixed names (``file_size``, ``chunk_size``, ``chunk_count``,
``partition_count``, ``stream_count:<id>``, ``stream_progress:<id>``);
anything else in the item (cluster details) is free-form.
"""

import enum
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol


logger = logging.getLogger(__name__)

RUN_COUNTER = 0
TIMING_PREFIX = "time"
KEY_DELIMITER = ":"


class TimedEvent(str, enum.Enum):
    DEMUX = "demux"
    RAW_COPY_IN = "raw_copy_in"
    RAW_COPY_OUT = "raw_copy_out"
    DISTRIBUTED_EXECUTION = "distributed_execution"
    MERGE = "merge"
    JOB = "job"
    JOB_RUN = "job_run"


class Boundary(str, enum.Enum):
    START = "start"
    END = "end"


@dataclass(frozen=True)
class TimingKey:
    event: TimedEvent
    boundary: Boundary

    def encode(self) -> str:
        return KEY_DELIMITER.join((TIMING_PREFIX, self.event.value, self.boundary.value))

    @classmethod
    def parse(cls, name: str) -> "TimingKey":
        parts = name.split(KEY_DELIMITER)
        if len(parts) != 3 or parts[0] != TIMING_PREFIX:
            raise ValueError(f"Not a timing attribute: {name!r}")
        return cls(TimedEvent(parts[1]), Boundary(parts[2]))

    @staticmethod
    def is_timing_attribute(name: str) -> bool:
        return name.startswith(TIMING_PREFIX + KEY_DELIMITER)


class AttributeStore(Protocol):
    def put_attributes(self, item_name: str, attributes: Dict[str, str]) -> None: ...

    def get_attributes(self, item_name: str) -> Dict[str, str]: ...

    def item_names(self, prefix: str) -> List[str]: ...

    def close(self) -> None: ...


@dataclass
class TimingRecord:
    event: TimedEvent
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @property
    def duration(self) -> Optional[float]:
        if self.start is None or self.end is None:
            return None
        return (self.end - self.start).total_seconds()


def item_name(run_id: str, job_counter: int) -> str:
    return f"{run_id}-{job_counter}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TimingRecorder:
    def __init__(self, store: AttributeStore, run_id: str, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.run_id = run_id
        self.clock = clock
        self.job_counter = RUN_COUNTER
        self.records: Dict[int, Dict[TimedEvent, TimingRecord]] = {}
        self._pending: Dict[str, Dict[str, str]] = {}

    def start_job(self, job_counter: int) -> None:
        self.job_counter = job_counter

    def _counter_for(self, event: TimedEvent) -> int:
        return RUN_COUNTER if event is TimedEvent.JOB_RUN else self.job_counter

    def _mark(self, event: TimedEvent, boundary: Boundary) -> None:
        now = self.clock()
        counter = self._counter_for(event)
        record = self.records.setdefault(counter, {}).setdefault(event, TimingRecord(event))
        if boundary is Boundary.START:
            record.start = now
        else:
            record.end = now
        pending = self._pending.setdefault(item_name(self.run_id, counter), {})
        pending[TimingKey(event, boundary).encode()] = now.isoformat()

    def mark_start(self, event: TimedEvent) -> None:
        self._mark(event, Boundary.START)

    def mark_end(self, event: TimedEvent) -> None:
        self._mark(event, Boundary.END)

    @contextmanager
    def timed(self, event: TimedEvent):
        """Marks start, then end once the block completes without raising."""
        self.mark_start(event)
        yield
        self.mark_end(event)

    def record(self, event: TimedEvent, job_counter: Optional[int] = None) -> Optional[TimingRecord]:
        counter = self._counter_for(event) if job_counter is None else job_counter
        return self.records.get(counter, {}).get(event)

    def log_cluster_details(self, details: Dict[str, object]) -> None:
        """Free-form attributes attached to the current job's item (or the run's)."""
        pending = self._pending.setdefault(item_name(self.run_id, self.job_counter), {})
        for key, value in details.items():
            pending[key] = str(value)
        logger.info(f"Cluster details for {item_name(self.run_id, self.job_counter)}: {details}")

    def flush(self) -> None:
        for name in list(self._pending):
            try:
                self.store.put_attributes(name, self._pending[name])
            except Exception as e:
                logger.error(f"Failed to flush timing attributes for {name}: {e}", exc_info=True)
                continue
            del self._pending[name]


FILE_SIZE = "file_size"
CHUNK_SIZE = "chunk_size"
CHUNK_COUNT = "chunk_count"
PARTITION_COUNT = "partition_count"
STREAM_COUNT_PREFIX = "stream_count"
STREAM_PROGRESS_PREFIX = "stream_progress"
STAT_ATTRIBUTES = (FILE_SIZE, CHUNK_SIZE, CHUNK_COUNT, PARTITION_COUNT)


def stream_count_key(stream_id: int) -> str:
    return f"{STREAM_COUNT_PREFIX}{KEY_DELIMITER}{stream_id}"


def stream_progress_key(stream_id: int) -> str:
    return f"{STREAM_PROGRESS_PREFIX}{KEY_DELIMITER}{stream_id}"


@dataclass(frozen=True)
class ProgressFraction:
    completed: int
    total: int

    @property
    def fraction(self) -> float:
        return self.completed / self.total if self.total else 1.0


@dataclass
class TimeEntry:
    job_id: str
    job_counter: int
    start_times: Dict[TimedEvent, datetime] = field(default_factory=dict)
    end_times: Dict[TimedEvent, datetime] = field(default_factory=dict)
    stats: Dict[str, int] = field(default_factory=dict)
    stream_counts: Dict[int, int] = field(default_factory=dict)
    stream_completed: Dict[int, int] = field(default_factory=dict)
    details: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_attributes(cls, name: str, attributes: Dict[str, str]) -> "TimeEntry":
        job_id, _, counter = name.rpartition("-")
        entry = cls(job_id=job_id, job_counter=int(counter))
        for key, value in attributes.items():
            try:
                if TimingKey.is_timing_attribute(key):
                    entry._add_timing(key, value)
                elif key in STAT_ATTRIBUTES:
                    entry.stats[key] = int(value)
                elif key.startswith(STREAM_COUNT_PREFIX + KEY_DELIMITER):
                    entry.stream_counts[int(key.split(KEY_DELIMITER, 1)[1])] = int(value)
                elif key.startswith(STREAM_PROGRESS_PREFIX + KEY_DELIMITER):
                    entry.stream_completed[int(key.split(KEY_DELIMITER, 1)[1])] = int(value)
                else:
                    entry.details[key] = value
            except ValueError:
                logger.warning(f"Ignoring malformed attribute {key!r}={value!r} on {name}")
        return entry

    def _add_timing(self, key: str, value: str) -> None:
        timing_key = TimingKey.parse(key)
        moment = datetime.fromisoformat(value)
        if timing_key.boundary is Boundary.START:
            self.start_times[timing_key.event] = moment
        else:
            self.end_times[timing_key.event] = moment

    @property
    def file_size(self) -> Optional[int]:
        return self.stats.get(FILE_SIZE)

    @property
    def chunk_size(self) -> Optional[int]:
        return self.stats.get(CHUNK_SIZE)

    @property
    def chunk_count(self) -> Optional[int]:
        return self.stats.get(CHUNK_COUNT)

    @property
    def partition_count(self) -> Optional[int]:
        return self.stats.get(PARTITION_COUNT)

    @property
    def stream_progress(self) -> Dict[int, ProgressFraction]:
        """Chunks transcoded per routing stream; a stream with no progress recorded counts as 0 done."""
        return {
            stream_id: ProgressFraction(self.stream_completed.get(stream_id, 0), total)
            for stream_id, total in sorted(self.stream_counts.items())
        }

    @property
    def start_date(self) -> Optional[datetime]:
        moments = list(self.start_times.values()) + list(self.end_times.values())
        return min(moments) if moments else None

    @property
    def timings(self) -> Dict[TimedEvent, float]:
        """Seconds spent per event, for events with both boundaries recorded."""
        return {
            event: (self.end_times[event] - start).total_seconds()
            for event, start in self.start_times.items()
            if event in self.end_times
        }


def load_time_entries(store: AttributeStore, run_id: str) -> List[TimeEntry]:
    entries = [
        TimeEntry.from_attributes(name, store.get_attributes(name))
        for name in store.item_names(f"{run_id}-")
    ]
    # Entries without any timing sort first.
    return sorted(entries, key=lambda e: (e.start_date is not None, e.start_date or datetime.min, e.job_counter))
