"""
Mastering pipeline: loudness normalization, ending cleanup and analysis.

Steps of MasteringPipeline.master():
    1. Run the limiter (under the run-wide "mastering" lock).
    2. Find silences longer than a second in the mastered audio.
    3. If the last one is final or ends within the tail window, cut the
       track at its start: the track has a natural ending.
    4. Fade out: short after a cut, long otherwise to mask an abrupt end.
    5. Reload the final file for its definitive duration and segments.
    6. Ask the beat tracker for tempo and beats and compute the flags.

The limiter, editor and beat tracker are injected so the pipeline can be
exercised without the real binaries.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

from trackmaster.core.config import ProcessConfig
from trackmaster.core.dispatcher import RunContext
from trackmaster.core.exceptions import ConfigError
from trackmaster.core.logger import get_logger
from trackmaster.processing.flags import Flags, classify
from trackmaster.sound.analyzer import Analyzer, Segment


logger = get_logger(__name__)

MASTERING_LOCK = "mastering"


class Limiter(Protocol):
    def master(self, input_path: Path, output_path: Path) -> None: ...


class Editor(Protocol):
    def cut(self, input_path: Path, output_path: Path, end: float) -> None: ...

    def fade_out(self, input_path: Path, output_path: Path, total: float, fade: float) -> None: ...


class BeatTracker(Protocol):
    def tempo(self, path: Path) -> float: ...

    def beats(self, path: Path) -> list[float]: ...


@dataclass(frozen=True)
class MasteringSettings:
    """
    Tunables of the pipeline.

    Attributes:
        short_fade_out: Fade (seconds) after a natural ending.
        long_fade_out: Fade (seconds) masking an abrupt ending.
        tail_window: A last silence ending this close to the end counts
                     as the natural ending.
        flag_tail_window: Silences this close to the end are not flagged.
        min_silence: Minimum silence length considered.
        min_noise: Minimum noisy fragment length used for bpm_n.

    Raises:
        ConfigError: If a fade is not positive or short_fade_out is
                     longer than long_fade_out.
    """
    short_fade_out: float = 1.0
    long_fade_out: float = 5.0
    tail_window: float = 10.0
    flag_tail_window: float = 5.0
    min_silence: float = 1.0
    min_noise: float = 10.0

    def __post_init__(self) -> None:
        if self.short_fade_out <= 0:
            raise ConfigError(
                "Short fade out is required",
                details={"short_fade_out": self.short_fade_out}
            )
        if self.long_fade_out <= 0:
            raise ConfigError(
                "Long fade out is required",
                details={"long_fade_out": self.long_fade_out}
            )
        if self.short_fade_out > self.long_fade_out:
            raise ConfigError(
                "Short fade out must not be longer than long fade out",
                details={"short_fade_out": self.short_fade_out, "long_fade_out": self.long_fade_out}
            )

    @classmethod
    def from_config(cls, process: ProcessConfig) -> "MasteringSettings":
        return cls(short_fade_out=process.short_fade_out, long_fade_out=process.long_fade_out)


@dataclass
class Analysis:
    """Definitive analysis of a final master."""
    analyzer: Analyzer
    duration: float
    tempo: float
    beats: list[float]
    silences: list[Segment]
    noises: list[Segment]
    flags: Flags


@dataclass
class MasterResult:
    """
    Outcome of MasteringPipeline.master().

    Attributes:
        path: The final master.
        analyzer: Analyzer of the final master.
        natural_end: A terminal silence was found and cut.
        cut_at: Where the track was cut, None if it was not.
        fade_out: Fade length applied.
        duration: Final duration in seconds.
        tempo: Dominant tempo in BPM.
        flags: Anomaly flags.
    """
    path: Path
    analyzer: Analyzer
    natural_end: bool
    cut_at: float | None
    fade_out: float
    duration: float
    tempo: float
    flags: Flags


class MasteringPipeline:
    """Masters one file at a time; safe to share between workers."""

    def __init__(
        self,
        limiter: Limiter,
        editor: Editor,
        beat_tracker: BeatTracker,
        context: RunContext,
        settings: MasteringSettings,
        load: Callable[[Path], Analyzer] = Analyzer.from_file,
    ) -> None:
        self.limiter = limiter
        self.editor = editor
        self.beat_tracker = beat_tracker
        self.context = context
        self.settings = settings
        self.load = load

    def master(self, input_path: Path, output_path: Path) -> MasterResult:
        """
        Master input_path into output_path and analyze the result.

        Raises:
            ToolError: If an external tool fails.
            DecodeError: If the master cannot be decoded.
            RunCancelledError: If the run is cancelled.
        """
        settings = self.settings
        output_path = Path(output_path)
        self.context.check_cancelled()

        with self.context.lock(MASTERING_LOCK):
            self.limiter.master(input_path, output_path)

        analyzer = self.load(output_path)
        duration = analyzer.duration
        silences = analyzer.silences(settings.min_silence)

        cut_at = None
        if silences:
            last = silences[-1]
            if last.final or last.end > duration - settings.tail_window:
                self.editor.cut(output_path, output_path, last.start)
                cut_at = last.start
                duration = last.start
                logger.debug(f"Cut {output_path.name} at {cut_at:.2f}s")

        natural_end = cut_at is not None
        fade = settings.short_fade_out if natural_end else settings.long_fade_out
        self.editor.fade_out(output_path, output_path, duration, fade)

        analysis = self.analyze(output_path, natural_end)
        return MasterResult(
            path=output_path,
            analyzer=analysis.analyzer,
            natural_end=natural_end,
            cut_at=cut_at,
            fade_out=fade,
            duration=analysis.duration,
            tempo=analysis.tempo,
            flags=analysis.flags,
        )

    def analyze(self, path: Path, natural_end: bool, tempo: float | None = None) -> Analysis:
        """
        Analyze a final master and compute its flags.

        Args:
            path: The master.
            natural_end: Whether mastering found a natural ending.
            tempo: Known tempo; the beat tracker is asked when None.
        """
        settings = self.settings
        analyzer = self.load(path)
        duration = analyzer.duration

        if tempo is None:
            tempo = self.beat_tracker.tempo(path)
        beats = self.beat_tracker.beats(path)

        silences = analyzer.silences(settings.min_silence)
        noises = analyzer.noises(settings.min_noise)

        quarter = duration / 4.0
        flags = classify(
            silences,
            duration,
            bpm_2=analyzer.bpm_change(beats, [duration / 2.0]),
            bpm_4=analyzer.bpm_change(beats, [quarter, 2 * quarter, 3 * quarter]),
            bpm_n=analyzer.fragment_bpm_change(beats, noises),
            natural_end=natural_end,
            tail_window=settings.flag_tail_window,
        )
        return Analysis(
            analyzer=analyzer,
            duration=duration,
            tempo=tempo,
            beats=beats,
            silences=silences,
            noises=noises,
            flags=flags,
        )
