"""
Wrapper around ffmpeg for the edits the mastering pipeline needs.

All edits write to a temp file beside the output and move it into place
with os.replace, so input and output may be the same path.
"""

import os
from pathlib import Path
from typing import Callable

from trackmaster.core.exceptions import ToolError
from trackmaster.sound.tools import ToolRunner


BITRATE = "320k"


def format_timestamp(seconds: float) -> str:
    """Format seconds as HH:MM:SS.mmm for ffmpeg's -to option."""
    millis = int(round(max(seconds, 0.0) * 1000))
    hours, millis = divmod(millis, 3_600_000)
    minutes, millis = divmod(millis, 60_000)
    secs, millis = divmod(millis, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{millis:03d}"


class FFmpeg:
    """Lossless cut, linear fade-out and MP3 encoding."""

    def __init__(self, runner: ToolRunner, bin_path: str = "ffmpeg") -> None:
        self.runner = runner
        self.bin_path = bin_path

    def _write_via_temp(self, output: Path, command: Callable[[Path], list[str]]) -> None:
        output = Path(output)
        tmp = output.with_name(f"{output.stem}.tmp{output.suffix}")
        try:
            self.runner.run(command(tmp))
            os.replace(tmp, output)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

    def cut(self, input_path: Path, output_path: Path, end: float) -> None:
        """
        Keep [0, end) of the input without re-encoding.

        Raises:
            ToolError: If ffmpeg fails.
        """
        self._write_via_temp(output_path, lambda tmp: [
            self.bin_path, "-y", "-i", str(input_path),
            "-to", format_timestamp(end),
            "-acodec", "copy", str(tmp),
        ])

    def fade_out(self, input_path: Path, output_path: Path, total: float, fade: float) -> None:
        """
        Apply a linear fade over the last `fade` seconds of a `total` long track.

        Raises:
            ToolError: If ffmpeg fails.
        """
        start = max(total - fade, 0.0)
        self._write_via_temp(output_path, lambda tmp: [
            self.bin_path, "-y", "-i", str(input_path),
            "-b:a", BITRATE,
            "-af", f"afade=t=out:st={start:f}:d={fade:f}",
            str(tmp),
        ])

    def encode_mp3(self, wav_path: Path, mp3_path: Path) -> None:
        """
        Encode a WAV file to 320 kbps stereo MP3.

        Raises:
            ToolError: On wrong extensions or if ffmpeg fails.
        """
        wav_path, mp3_path = Path(wav_path), Path(mp3_path)
        if wav_path.suffix.lower() != ".wav":
            raise ToolError(f"ffmpeg: input file must be a wav file: {wav_path.suffix}")
        if mp3_path.suffix.lower() != ".mp3":
            raise ToolError(f"ffmpeg: output file must be a mp3 file: {mp3_path.suffix}")
        self._write_via_temp(mp3_path, lambda tmp: [
            self.bin_path, "-y", "-i", str(wav_path),
            "-codec:a", "libmp3lame", "-b:a", BITRATE, "-ac", "2",
            str(tmp),
        ])
