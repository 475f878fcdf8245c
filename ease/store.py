"""Central store of encode and quality metrics.

One :class:`Record` holds everything known about a single encode: the
encoder run statistics first, the VMAF/PSNR/MS-SSIM aggregates once
quality measurement has finished. The store is safe to use from many
threads.
"""

import copy
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from ease.errors import RecordNotFoundError


@dataclass
class Record:
    """Metrics for a single encode."""

    name: str = ""
    source_file: str = ""
    compressed_file: str = ""
    vqm_result_file: str = ""
    cmd: str = ""
    h_stime: str = ""
    h_utime: str = ""
    h_elapsed: str = ""
    stime: float = 0.0
    utime: float = 0.0
    elapsed: float = 0.0
    max_rss: int = 0
    video_duration: float = 0.0
    avg_encoding_speed: float = 0.0

    psnr_min: float = 0.0
    psnr_max: float = 0.0
    psnr_mean: float = 0.0
    psnr_harmonic_mean: float = 0.0
    psnr_stdev: float = 0.0
    psnr_variance: float = 0.0

    ms_ssim_min: float = 0.0
    ms_ssim_max: float = 0.0
    ms_ssim_mean: float = 0.0
    ms_ssim_harmonic_mean: float = 0.0
    ms_ssim_stdev: float = 0.0
    ms_ssim_variance: float = 0.0

    vmaf_min: float = 0.0
    vmaf_max: float = 0.0
    vmaf_mean: float = 0.0
    vmaf_harmonic_mean: float = 0.0
    vmaf_stdev: float = 0.0
    vmaf_variance: float = 0.0


class _SharedExclusiveLock:
    """Many readers or one writer.

    Writers waiting for the lock block new readers, so a steady stream of
    reads cannot starve an update.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def shared(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class MetricStore:
    """Keyed collection of :class:`Record` with store-assigned ids.

    Ids are integers handed out in increasing order starting at 0 and are
    never reused, not even after a delete. Records go in and come out as
    copies, so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._lock = _SharedExclusiveLock()
        self._records: dict[int, Record] = {}
        self._next_id = 0

    def insert(self, record: Record) -> int:
        with self._lock.exclusive():
            record_id = self._next_id
            self._records[record_id] = copy.copy(record)
            self._next_id += 1
        return record_id

    def get(self, record_id: int) -> Record:
        with self._lock.shared():
            try:
                return copy.copy(self._records[record_id])
            except KeyError:
                raise RecordNotFoundError("getting", record_id) from None

    def exists(self, record_id: int) -> bool:
        with self._lock.shared():
            return record_id in self._records

    def get_ids(self) -> list[int]:
        """Snapshot of live ids, in no particular order."""
        with self._lock.shared():
            return list(self._records)

    def update(self, record_id: int, record: Record) -> None:
        with self._lock.exclusive():
            if record_id not in self._records:
                raise RecordNotFoundError("updating", record_id)
            self._records[record_id] = copy.copy(record)

    def delete(self, record_id: int) -> None:
        with self._lock.exclusive():
            if record_id not in self._records:
                raise RecordNotFoundError("deleting", record_id)
            del self._records[record_id]

    def __len__(self) -> int:
        with self._lock.shared():
            return len(self._records)
