"""
Audio analysis for trackmaster.

The Analyzer works on decoded mono samples and answers the questions the
mastering pipeline asks about a track:

    - Where are the silences and the noisy fragments?
    - Does the track have a silent head or tail?
    - Does the tempo drift between halves, quarters or fragments?
    - Does the track already fade out?

It also renders the diagnostic waveform and RMS images stored next to
every master.

Segmentation:
    By default segments come from the RMS envelope: every 50ms window
    below the threshold (0.002 on the [-1, 1] scale) is silent. When an
    Aubio detector is given, transitions reported by `aubio quiet` at
    -70 dB are used instead. Either way the result is a partition of
    [0, duration) into alternating silent and noisy segments.
"""

import io
import math
from bisect import bisect_right
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

import numpy as np
from matplotlib.figure import Figure

from trackmaster.sound.decoder import decode
from trackmaster.utils import format_duration

if TYPE_CHECKING:
    from trackmaster.sound.aubio import Aubio


DEFAULT_WINDOW = 0.05
DEFAULT_THRESHOLD = 0.002
BPM_TOLERANCE = 10.0
FADE_OUT_SPAN = 1.0
FADE_OUT_TOLERANCE = 0.001
RMS_PLOT_LINE = 0.01


@dataclass(frozen=True)
class Segment:
    """
    A contiguous region of a track, in seconds.

    Attributes:
        start: Start time.
        end: End time (exclusive).
        duration: end - start.
        final: True for the last segment of the partition, which ends
               at the track duration.
    """
    start: float
    end: float
    duration: float
    final: bool = False

    @classmethod
    def between(cls, start: float, end: float, final: bool = False) -> "Segment":
        return cls(start=start, end=end, duration=end - start, final=final)


class Analyzer:
    """
    Analysis of a decoded mono track.

    Args:
        samples: Mono samples in [-1, 1].
        rate: Sample rate in Hz.
        source: Local file the samples came from. Required when a
                detector is used.
        detector: Optional Aubio instance used for segmentation.

    Example:
        analyzer = Analyzer.from_file(Path("master.mp3"))
        tail = analyzer.silences(min_duration=1.0)
        jpeg = analyzer.plot_wave("lofi")
    """

    def __init__(
        self,
        samples: np.ndarray,
        rate: int,
        source: Path | None = None,
        detector: "Aubio | None" = None
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.samples = np.asarray(samples, dtype=np.float64)
        self.rate = rate
        self.source = source
        self.detector = detector
        self._partitions: dict[tuple[float, float], list[tuple[Segment, bool]]] = {}

    @classmethod
    def from_file(cls, path: Path | str, detector: "Aubio | None" = None) -> "Analyzer":
        """
        Decode a file and build an Analyzer for it.

        Raises:
            DecodeError: If the file cannot be decoded.
        """
        decoded = decode(path)
        return cls(decoded.samples, decoded.rate, source=decoded.path, detector=detector)

    @property
    def duration(self) -> float:
        """Track length in seconds."""
        return len(self.samples) / self.rate

    def _window_length(self, window: float) -> int:
        return max(1, int(self.rate * window))

    def _windows(self, window: float) -> list[np.ndarray]:
        length = self._window_length(window)
        return [self.samples[i:i + length] for i in range(0, len(self.samples), length)]

    def envelope(self, window: float = DEFAULT_WINDOW) -> np.ndarray:
        """
        Root-mean-square energy per window.

        The last window may be shorter than the others.
        """
        chunks = self._windows(window)
        return np.array([math.sqrt(float(np.mean(chunk * chunk))) for chunk in chunks])

    def resample(self, window: float = DEFAULT_WINDOW) -> np.ndarray:
        """Interleaved min and max per window, for plotting."""
        values = []
        for chunk in self._windows(window):
            values.append(min(float(chunk.min()), 0.0))
            values.append(max(float(chunk.max()), 0.0))
        return np.array(values)

    # =========================================================================
    # Segmentation
    # =========================================================================

    def segments(
        self,
        threshold: float = DEFAULT_THRESHOLD,
        window: float = DEFAULT_WINDOW
    ) -> list[tuple[Segment, bool]]:
        """
        Partition the track into (segment, silent) pairs.

        Consecutive pairs alternate between silent and noisy, the first
        starts at 0 and the last ends at duration and is final.
        """
        key = (threshold, window)
        if key not in self._partitions:
            if self.detector is not None and self.source is not None:
                transitions = self.detector.quiet(self.source)
            else:
                transitions = self._envelope_transitions(threshold, window)
            self._partitions[key] = self._partition(transitions)
        return self._partitions[key]

    def _envelope_transitions(self, threshold: float, window: float) -> list[tuple[bool, float]]:
        silent = self.envelope(window) < threshold
        if silent.size == 0:
            return []
        length = self._window_length(window)
        changes = np.flatnonzero(np.diff(silent.astype(np.int8))) + 1
        starts = np.concatenate(([0], changes))
        return [(bool(silent[i]), int(i) * length / self.rate) for i in starts]

    def _partition(self, transitions: Sequence[tuple[bool, float]]) -> list[tuple[Segment, bool]]:
        duration = self.duration
        if duration <= 0 or not transitions:
            return []

        points: list[tuple[bool, float]] = []
        for silent, at in transitions:
            at = min(max(at, 0.0), duration)
            if points and points[-1][0] == silent:
                continue
            points.append((silent, at))
        if points[0][1] > 0:
            points.insert(0, (not points[0][0], 0.0))

        pairs: list[tuple[Segment, bool]] = []
        for i, (silent, start) in enumerate(points):
            end = points[i + 1][1] if i + 1 < len(points) else duration
            if end <= start:
                continue
            if pairs and pairs[-1][1] == silent:
                previous = pairs.pop()[0]
                start = previous.start
            pairs.append((Segment.between(start, end), silent))

        last, silent = pairs[-1]
        pairs[-1] = (Segment.between(last.start, duration, final=True), silent)
        return pairs

    def silences(
        self,
        min_duration: float = 0.0,
        threshold: float = DEFAULT_THRESHOLD,
        window: float = DEFAULT_WINDOW
    ) -> list[Segment]:
        """Silent segments longer than min_duration seconds."""
        return [
            segment for segment, silent in self.segments(threshold, window)
            if silent and segment.duration > min_duration
        ]

    def noises(
        self,
        min_duration: float = 0.0,
        threshold: float = DEFAULT_THRESHOLD,
        window: float = DEFAULT_WINDOW
    ) -> list[Segment]:
        """Noisy segments longer than min_duration seconds."""
        return [
            segment for segment, silent in self.segments(threshold, window)
            if not silent and segment.duration > min_duration
        ]

    def _silent_runs(self, threshold: float, window: float) -> list[tuple[int, int]]:
        silent = self.envelope(window) < threshold
        runs = []
        start = None
        for i, value in enumerate(silent):
            if value and start is None:
                start = i
            elif not value and start is not None:
                runs.append((start, i))
                start = None
        if start is not None:
            runs.append((start, len(silent)))
        return runs

    def first_silence(
        self,
        threshold: float = DEFAULT_THRESHOLD,
        window: float = DEFAULT_WINDOW
    ) -> tuple[float, float]:
        """
        Length and start position of the first silent run, in seconds.

        Returns (0.0, 0.0) when no window is below the threshold.
        """
        runs = self._silent_runs(threshold, window)
        if not runs:
            return 0.0, 0.0
        return self._run_seconds(runs[0], window)

    def end_silence(
        self,
        threshold: float = DEFAULT_THRESHOLD,
        window: float = DEFAULT_WINDOW
    ) -> tuple[float, float]:
        """
        Length and start position of the last silent run, in seconds.

        Returns (0.0, 0.0) when no window is below the threshold.
        """
        runs = self._silent_runs(threshold, window)
        if not runs:
            return 0.0, 0.0
        return self._run_seconds(runs[-1], window)

    def _run_seconds(self, run: tuple[int, int], window: float) -> tuple[float, float]:
        length = self._window_length(window)
        start = run[0] * length / self.rate
        end = min(run[1] * length / self.rate, self.duration)
        return end - start, start

    # =========================================================================
    # Tempo drift
    # =========================================================================

    def bpms(self, beats: Sequence[float], splits: Sequence[float]) -> list[float]:
        """
        Beats per minute within each interval delimited by splits.

        splits are interior points in ascending order; n splits give
        n + 1 intervals covering [0, duration).
        """
        splits = list(splits)
        bounds = [0.0, *splits, self.duration]
        counts = [0] * (len(splits) + 1)
        for position in beats:
            if 0.0 <= position < self.duration:
                counts[bisect_right(splits, position)] += 1

        result = []
        for i, count in enumerate(counts):
            length = bounds[i + 1] - bounds[i]
            result.append(count * 60.0 / length if length > 0 else 0.0)
        return result

    def bpm_change(self, beats: Sequence[float], splits: Sequence[float]) -> bool:
        """True if any interval's BPM is more than 10 BPM away from their mean."""
        return _drifts(self.bpms(beats, splits))

    def fragment_bpms(self, beats: Sequence[float], fragments: Sequence[Segment]) -> list[float]:
        """Beats per minute within each fragment."""
        result = []
        for fragment in fragments:
            count = sum(1 for position in beats if fragment.start <= position < fragment.end)
            result.append(count * 60.0 / fragment.duration if fragment.duration > 0 else 0.0)
        return result

    def fragment_bpm_change(self, beats: Sequence[float], fragments: Sequence[Segment]) -> bool:
        """Same as bpm_change, measured over noise fragments only."""
        return _drifts(self.fragment_bpms(beats, fragments))

    def has_fade_out(self, window: float = DEFAULT_WINDOW) -> bool:
        """
        True if the last second of the envelope decreases consistently.

        One step up (above a small tolerance) is allowed; the tail must
        end quieter than it started.
        """
        count = max(2, int(round(FADE_OUT_SPAN / window)))
        tail = self.envelope(window)[-count:]
        if len(tail) < 2:
            return False
        rises = int(np.sum(np.diff(tail) > FADE_OUT_TOLERANCE))
        return rises <= 1 and tail[-1] < tail[0]

    # =========================================================================
    # Plots
    # =========================================================================

    def plot_wave(self, label: str) -> bytes:
        """Min/max waveform as JPEG bytes, titled with label and duration."""
        data = self.resample(DEFAULT_WINDOW)
        return _render_plot(label, data, -1.0, 1.0, DEFAULT_WINDOW / 2, self.duration)

    def plot_rms(self) -> bytes:
        """RMS envelope as JPEG bytes with a reference line at 0.01."""
        data = self.envelope(DEFAULT_WINDOW)
        return _render_plot("rms", data, 0.0, 1.0, DEFAULT_WINDOW, self.duration, line=RMS_PLOT_LINE)


def _drifts(bpms: list[float]) -> bool:
    if len(bpms) < 2:
        return False
    mean = sum(bpms) / len(bpms)
    return any(abs(bpm - mean) > BPM_TOLERANCE for bpm in bpms)


def _render_plot(
    title: str,
    data: np.ndarray,
    y_min: float,
    y_max: float,
    step: float,
    duration: float,
    line: float = 0.0
) -> bytes:
    # No pyplot: workers render concurrently
    figure = Figure(figsize=(4, 4), dpi=100)
    axes = figure.add_subplot()
    axes.plot(np.arange(len(data)) * step, data, linewidth=0.5)
    if line > 0:
        axes.axhline(line, color="red", linewidth=1.0)
    axes.set_ylim(y_min, y_max)
    axes.set_title(f"{title} {format_duration(duration)}")
    axes.set_xlabel("time")
    axes.set_ylabel("data")
    figure.tight_layout()

    buffer = io.BytesIO()
    figure.savefig(buffer, format="jpeg")
    return buffer.getvalue()
