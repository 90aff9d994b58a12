"""
Wrapper around the phase_limiter mastering tool.

phase_limiter writes a WAV file; master() encodes it to MP3 with ffmpeg
and removes the intermediate WAV.
"""

from pathlib import Path

from trackmaster.core.exceptions import ToolError
from trackmaster.sound.ffmpeg import FFmpeg
from trackmaster.sound.tools import ToolRunner


VERSION_PREFIX = "phase_limiter version"
DEFAULT_SOUND_QUALITY2_CACHE = "/etc/phaselimiter/resource/sound_quality2_cache"


def _format_float(value: float) -> str:
    return f"{value:.7f}"


def _format_bool(value: bool) -> str:
    return "true" if value else "false"


class PhaseLimiter:
    """
    Loudness normalization through phase_limiter's mastering5 mode.

    Args:
        runner: Subprocess capability.
        ffmpeg: Used for the WAV to MP3 step (its binary is also passed
                to phase_limiter).
        bin_path: phase_limiter binary.
        loudness: Reference loudness.
        level: Matching level for the three mastering levels.
        bass_preservation: Weight the evaluation function to keep bass.
        sound_quality2_cache: Resource file shipped with phase_limiter.
    """

    def __init__(
        self,
        runner: ToolRunner,
        ffmpeg: FFmpeg,
        bin_path: str = "phase_limiter",
        loudness: float = -9.0,
        level: float = 1.0,
        bass_preservation: bool = True,
        sound_quality2_cache: str = DEFAULT_SOUND_QUALITY2_CACHE,
    ) -> None:
        self.runner = runner
        self.ffmpeg = ffmpeg
        self.bin_path = bin_path
        self.loudness = loudness
        self.level = level
        self.bass_preservation = bass_preservation
        self.sound_quality2_cache = sound_quality2_cache

    def version(self) -> str:
        """
        Return the installed phase_limiter version.

        Raises:
            ToolError: If the binary is missing or prints something unexpected.
        """
        line = self.runner.run([self.bin_path, "--version"]).strip()
        if not line.startswith(VERSION_PREFIX):
            raise ToolError(f"phase_limiter: invalid version: {line}")
        return line[len(VERSION_PREFIX):].strip()

    def arguments(self, input_path: Path, wav_path: Path) -> list[str]:
        level = _format_float(self.level)
        return [
            self.bin_path,
            "--input", str(input_path),
            "--output", str(wav_path),
            "--ffmpeg", self.ffmpeg.bin_path,
            "--mastering", "true",
            "--mastering_mode", "mastering5",
            "--sound_quality2_cache", self.sound_quality2_cache,
            "--mastering_matching_level", level,
            "--mastering_ms_matching_level", level,
            "--mastering5_mastering_level", level,
            "--erb_eval_func_weighting", _format_bool(self.bass_preservation),
            "--reference", _format_float(self.loudness),
        ]

    def master(self, input_path: Path, output_path: Path) -> None:
        """
        Master input_path into an MP3 at output_path.

        Raises:
            ToolError: If phase_limiter or the encoding step fails.
        """
        output_path = Path(output_path)
        wav_path = output_path.with_name(output_path.name + ".wav")
        try:
            self.runner.run(self.arguments(Path(input_path), wav_path))
            self.ffmpeg.encode_mp3(wav_path, output_path)
        finally:
            wav_path.unlink(missing_ok=True)
