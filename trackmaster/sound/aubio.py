"""
Wrapper around the aubio command line tool.

    aubio --version           -> "aubio version 0.4.9"
    aubio beat <file>         -> one beat timestamp (seconds) per line
    aubio tempo <file>        -> "<float> bpm"
    aubio quiet -i <file> -s <dB>
                              -> "QUIET: <seconds>" / "NOISY: <seconds>" transitions
"""

from pathlib import Path

from trackmaster.core.exceptions import ToolError
from trackmaster.sound.tools import ToolRunner


VERSION_PREFIX = "aubio version"
QUIET_PREFIX = "QUIET"
NOISY_PREFIX = "NOISY"
DEFAULT_QUIET_THRESHOLD_DB = -70


class Aubio:
    """Beat tracker and fine-grained silence detector backed by aubio."""

    def __init__(self, runner: ToolRunner, bin_path: str = "aubio") -> None:
        self.runner = runner
        self.bin_path = bin_path

    def version(self) -> str:
        """
        Return the installed aubio version.

        Raises:
            ToolError: If aubio is missing or prints something unexpected.
        """
        line = self.runner.run([self.bin_path, "--version"]).strip()
        if not line.startswith(VERSION_PREFIX):
            raise ToolError(f"aubio: invalid version: {line}")
        return line[len(VERSION_PREFIX):].strip()

    def beats(self, path: Path | str) -> list[float]:
        """
        Return beat timestamps in seconds.

        Lines that do not parse as a number are skipped.

        Raises:
            ToolError: If no beat was found.
        """
        output = self.runner.run([self.bin_path, "beat", str(path)])
        beats = []
        for line in output.splitlines():
            try:
                beats.append(float(line.strip()))
            except ValueError:
                continue
        if not beats:
            raise ToolError("aubio: no beats found", details={"path": str(path)})
        return beats

    def tempo(self, path: Path | str) -> float:
        """
        Return the dominant tempo in BPM.

        Raises:
            ToolError: If no "<float> bpm" line is printed.
        """
        output = self.runner.run([self.bin_path, "tempo", str(path)])
        for line in output.splitlines():
            line = line.strip()
            if not line.endswith(" bpm"):
                continue
            try:
                return float(line[:-len(" bpm")])
            except ValueError:
                continue
        raise ToolError("aubio: no tempo found", details={"path": str(path)})

    def quiet(
        self,
        path: Path | str,
        threshold_db: int = DEFAULT_QUIET_THRESHOLD_DB
    ) -> list[tuple[bool, float]]:
        """
        Return silence transitions as (silent, timestamp) pairs.

        Each pair marks where a quiet (silent=True) or noisy region begins.

        Raises:
            ToolError: On empty output or a line that cannot be parsed.
        """
        output = self.runner.run(
            [self.bin_path, "quiet", "-i", str(path), "-s", str(threshold_db)],
            merge_stderr=False,
        )
        lines = [line.strip() for line in output.splitlines() if line.strip()]
        if not lines:
            raise ToolError("aubio: no silence transitions found", details={"path": str(path)})
        return [parse_quiet_line(line) for line in lines]


def parse_quiet_line(line: str) -> tuple[bool, float]:
    """Parse "QUIET: 1.23" / "NOISY: 4.56" into (silent, seconds)."""
    kind, sep, value = line.strip().partition(": ")
    if not sep or kind not in (QUIET_PREFIX, NOISY_PREFIX):
        raise ToolError(f"aubio: invalid quiet entry: {line}")
    try:
        timestamp = float(value)
    except ValueError as e:
        raise ToolError(f"aubio: invalid quiet timestamp: {line}") from e
    return kind == QUIET_PREFIX, timestamp
