"""
Data models for trackmaster jobs.

A Job is one raw generated track moving through the mastering pipeline.
It is persisted by core.database.Database and mutated by the process,
reprocess and download workers.
"""

import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone


_id_lock = threading.Lock()
_last_id = 0


def new_job_id() -> str:
    """
    Return a new job identifier.

    Identifiers are microsecond timestamps rendered as fixed-width
    decimal strings, so lexicographic order equals creation order.
    Two calls within the same microsecond still yield increasing ids.

    Thread Safety:
        Safe to call from any thread.
    """
    global _last_id
    with _id_lock:
        candidate = time.time_ns() // 1000
        if candidate <= _last_id:
            candidate = _last_id + 1
        _last_id = candidate
    return f"{candidate:020d}"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Job:
    """
    One track to master.

    Attributes:
        id: Sortable identifier (see new_job_id).
        source: URL or local path of the raw audio.
        type: Free-form category, matched with LIKE by --type.
        style: Label drawn on the waveform image.
        processed: True once the master and wave are stored.
        master: Blob store reference of the mastered MP3.
        wave: Blob store reference of the waveform JPEG.
        duration: Final duration of the master in seconds.
        tempo: Tempo in BPM reported by the beat tracker.
        flags: Serialized Flags record ("" when nothing was flagged).
        ends: True when the track ended naturally (cut at a silence).
        created_at: ISO timestamp of insertion.
        updated_at: ISO timestamp of the last save.
    """
    id: str
    source: str
    type: str = ""
    style: str = ""
    processed: bool = False
    master: str = ""
    wave: str = ""
    duration: float = 0.0
    tempo: float = 0.0
    flags: str = ""
    ends: bool = False
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @property
    def flagged(self) -> bool:
        """Derived from flags; a job is flagged iff any anomaly was recorded."""
        return self.flags != ""

    def copy(self, **changes) -> "Job":
        return replace(self, **changes)
