"""
Anomaly flags attached to every mastered job.

classify() is a pure function of the analysis results. The serialized
form is compact JSON with a fixed key order and falsy fields left out,
so classifying the same analysis twice gives byte-identical output and
a clean track serializes to the empty string.

Example:
    flags = classify(silences, 95.0, bpm_2=False, bpm_4=True, bpm_n=False, natural_end=True)
    flags.to_json()   # '{"silences":[42],"short":true,"bpm_4":true}'
"""

import json
from dataclasses import dataclass, field
from typing import Sequence

from trackmaster.sound.analyzer import Segment


SHORT_TRACK_SECONDS = 120.0
DEFAULT_TAIL_WINDOW = 5.0

# Serialization order
FIELDS = ("silences", "no_end", "short", "bpm_2", "bpm_4", "bpm_n")


@dataclass
class Flags:
    """
    Anomalies found in a master.

    Attributes:
        silences: Positions (percent of the track) of inner silences.
        no_end: No natural ending was found, the end is a long fade-out.
        short: The master is shorter than two minutes.
        bpm_2: Tempo differs between the two halves.
        bpm_4: Tempo differs between the quarters.
        bpm_n: Tempo differs between noisy fragments.
    """
    silences: list[int] = field(default_factory=list)
    no_end: bool = False
    short: bool = False
    bpm_2: bool = False
    bpm_4: bool = False
    bpm_n: bool = False

    @property
    def empty(self) -> bool:
        return not any(getattr(self, name) for name in FIELDS)

    def to_json(self) -> str:
        """Compact JSON in FIELDS order; "" when nothing is flagged."""
        data = {name: getattr(self, name) for name in FIELDS if getattr(self, name)}
        if not data:
            return ""
        return json.dumps(data, separators=(",", ":"))

    @classmethod
    def from_json(cls, text: str) -> "Flags":
        """
        Parse a serialized record. "" gives an empty record.

        Raises:
            ValueError: If text is not a JSON object.
        """
        if not text:
            return cls()
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError(f"Flags must be a JSON object: {text}")
        return cls(
            silences=[int(p) for p in data.get("silences", [])],
            no_end=bool(data.get("no_end", False)),
            short=bool(data.get("short", False)),
            bpm_2=bool(data.get("bpm_2", False)),
            bpm_4=bool(data.get("bpm_4", False)),
            bpm_n=bool(data.get("bpm_n", False)),
        )


def silence_positions(
    silences: Sequence[Segment],
    duration: float,
    tail_window: float = DEFAULT_TAIL_WINDOW
) -> list[int]:
    """
    Percent positions of the midpoints of inner silences.

    Scanning stops at the first final silence or the first one ending
    within tail_window seconds of the end, since those belong to the
    ending rather than the body of the track.
    """
    positions = []
    if duration <= 0:
        return positions
    for silence in silences:
        if silence.final:
            break
        if silence.end > duration - tail_window:
            break
        middle = silence.start + silence.duration / 2.0
        positions.append(round(100.0 * middle / duration))
    return positions


def classify(
    silences: Sequence[Segment],
    duration: float,
    bpm_2: bool,
    bpm_4: bool,
    bpm_n: bool,
    natural_end: bool,
    tail_window: float = DEFAULT_TAIL_WINDOW
) -> Flags:
    """Build the Flags record for a master."""
    return Flags(
        silences=silence_positions(silences, duration, tail_window),
        no_end=not natural_end,
        short=duration < SHORT_TRACK_SECONDS,
        bpm_2=bpm_2,
        bpm_4=bpm_4,
        bpm_n=bpm_n,
    )
