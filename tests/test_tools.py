"""Test the external tool wrappers with a fake runner"""

import sys
import threading
import time
from pathlib import Path

import pytest

from trackmaster.core.exceptions import RunCancelledError, ToolError, ToolTimeoutError
from trackmaster.sound.aubio import Aubio, parse_quiet_line
from trackmaster.sound.ffmpeg import FFmpeg, format_timestamp
from trackmaster.sound.phaselimiter import PhaseLimiter
from trackmaster.sound.tools import ToolRunner


class FakeRunner:
    """
    Replays canned output keyed by subcommand.

    Writes the file named after --output (phase_limiter) or the last
    argument (ffmpeg) so the wrappers find their outputs.
    """

    def __init__(self, outputs=None):
        self.outputs = outputs or {}
        self.calls = []

    def run(self, args, merge_stderr=True):
        args = [str(a) for a in args]
        self.calls.append(args)
        if "--output" in args:
            Path(args[args.index("--output") + 1]).write_bytes(b"wav")
        elif Path(args[0]).name == "ffmpeg":
            Path(args[-1]).write_bytes(b"mp3")
        key = args[1] if len(args) > 1 else ""
        return self.outputs.get(key, "")


class TestAubio:
    """Test aubio output parsing"""

    def test_version(self):
        runner = FakeRunner({"--version": "aubio version 0.4.9\n"})
        assert Aubio(runner).version() == "0.4.9"

    def test_invalid_version(self):
        runner = FakeRunner({"--version": "command not found"})
        with pytest.raises(ToolError):
            Aubio(runner).version()

    def test_beats(self):
        """Unparseable lines are skipped"""
        runner = FakeRunner({"beat": "0.512\n1.024\nwarning: something\n\n1.536\n"})
        assert Aubio(runner).beats("a.mp3") == [0.512, 1.024, 1.536]
        assert runner.calls[0] == ["aubio", "beat", "a.mp3"]

    def test_no_beats(self):
        runner = FakeRunner({"beat": "\n"})
        with pytest.raises(ToolError):
            Aubio(runner).beats("a.mp3")

    def test_tempo(self):
        runner = FakeRunner({"tempo": "loading\n121.35 bpm\n"})
        assert Aubio(runner).tempo("a.mp3") == 121.35

    def test_no_tempo(self):
        runner = FakeRunner({"tempo": "nothing here\n"})
        with pytest.raises(ToolError):
            Aubio(runner).tempo("a.mp3")

    def test_quiet(self):
        """Transitions are parsed from stdout only"""
        runner = FakeRunner({"quiet": "NOISY: 0.000000\nQUIET: 175.103\n"})
        assert Aubio(runner).quiet("a.mp3") == [(False, 0.0), (True, 175.103)]
        assert runner.calls[0] == ["aubio", "quiet", "-i", "a.mp3", "-s", "-70"]

    def test_parse_quiet_line_errors(self):
        with pytest.raises(ToolError):
            parse_quiet_line("LOUD: 1.0")
        with pytest.raises(ToolError):
            parse_quiet_line("QUIET: soon")


class TestFFmpeg:
    """Test ffmpeg argument building"""

    def test_format_timestamp(self):
        assert format_timestamp(0) == "00:00:00.000"
        assert format_timestamp(175.25) == "00:02:55.250"
        assert format_timestamp(3725.5) == "01:02:05.500"

    def test_cut_in_place(self, temp_dir):
        """The edit goes through a temp file and replaces the output"""
        path = temp_dir / "master.mp3"
        path.write_bytes(b"original")
        runner = FakeRunner()

        FFmpeg(runner).cut(path, path, 175.0)

        args = runner.calls[0]
        assert args[args.index("-to") + 1] == "00:02:55.000"
        assert args[-1] == str(temp_dir / "master.tmp.mp3")
        assert path.read_bytes() == b"mp3"
        assert not (temp_dir / "master.tmp.mp3").exists()

    def test_fade_out(self, temp_dir):
        """The fade starts `fade` seconds before the end"""
        runner = FakeRunner()
        FFmpeg(runner).fade_out(temp_dir / "in.mp3", temp_dir / "out.mp3", 90.0, 5.0)
        args = runner.calls[0]
        assert args[args.index("-af") + 1] == "afade=t=out:st=85.000000:d=5.000000"

    def test_encode_mp3_checks_extensions(self, temp_dir):
        with pytest.raises(ToolError):
            FFmpeg(FakeRunner()).encode_mp3(temp_dir / "a.flac", temp_dir / "a.mp3")
        with pytest.raises(ToolError):
            FFmpeg(FakeRunner()).encode_mp3(temp_dir / "a.wav", temp_dir / "a.ogg")

    def test_failed_edit_removes_temp_file(self, temp_dir):
        class FailingRunner(FakeRunner):
            def run(self, args, merge_stderr=True):
                super().run(args, merge_stderr)
                raise ToolError("ffmpeg: exited with status 1")

        with pytest.raises(ToolError):
            FFmpeg(FailingRunner()).cut(temp_dir / "in.mp3", temp_dir / "out.mp3", 10.0)
        assert list(temp_dir.iterdir()) == []


class TestPhaseLimiter:
    """Test phase_limiter invocation"""

    def test_arguments(self, temp_dir):
        limiter = PhaseLimiter(FakeRunner(), FFmpeg(FakeRunner()), loudness=-9.0, level=1.0)
        args = limiter.arguments(Path("in.mp3"), Path("out.wav"))
        assert args[args.index("--reference") + 1] == "-9.0000000"
        assert args[args.index("--mastering5_mastering_level") + 1] == "1.0000000"
        assert args[args.index("--erb_eval_func_weighting") + 1] == "true"
        assert args[args.index("--ffmpeg") + 1] == "ffmpeg"

    def test_master(self, temp_dir):
        """The WAV is encoded to MP3 and removed"""
        runner = FakeRunner()
        limiter = PhaseLimiter(runner, FFmpeg(runner))
        output = temp_dir / "0001.mp3"

        limiter.master(temp_dir / "raw.mp3", output)

        assert output.exists()
        assert not (temp_dir / "0001.mp3.wav").exists()
        assert runner.calls[0][0] == "phase_limiter"
        assert runner.calls[1][0] == "ffmpeg"

    def test_version(self):
        runner = FakeRunner({"--version": "phase_limiter version 0.2.0"})
        assert PhaseLimiter(runner, FFmpeg(runner)).version() == "0.2.0"


class TestToolRunner:
    """Test the subprocess runner against the Python interpreter"""

    def test_output(self):
        output = ToolRunner().run([sys.executable, "-c", "print('hello')"])
        assert output.strip() == "hello"

    def test_non_zero_exit(self):
        with pytest.raises(ToolError) as exc_info:
            ToolRunner().run([sys.executable, "-c", "import sys; print('boom'); sys.exit(3)"])
        assert exc_info.value.details["returncode"] == 3
        assert "boom" in exc_info.value.message

    def test_missing_binary(self):
        with pytest.raises(ToolError):
            ToolRunner().run(["trackmaster-no-such-binary"])

    def test_cancelled_before_start(self):
        event = threading.Event()
        event.set()
        with pytest.raises(RunCancelledError):
            ToolRunner(cancel_event=event).run([sys.executable, "-c", "pass"])

    def test_stderr_kept_out_of_output(self):
        code = "import sys; print('out'); print('err', file=sys.stderr)"
        output = ToolRunner().run([sys.executable, "-c", code], merge_stderr=False)
        assert output.strip() == "out"

    def test_cancel_kills_running_child(self):
        """Setting the event stops a child that is already running"""
        event = threading.Event()
        timer = threading.Timer(0.3, event.set)
        timer.start()
        started = time.monotonic()
        try:
            with pytest.raises(RunCancelledError):
                ToolRunner(cancel_event=event).run([sys.executable, "-c", "import time; time.sleep(30)"])
        finally:
            timer.cancel()
        assert time.monotonic() - started < 10

    def test_timeout(self):
        """A child outliving the runner timeout is killed"""
        started = time.monotonic()
        with pytest.raises(ToolTimeoutError):
            ToolRunner(timeout=0.3).run([sys.executable, "-c", "import time; time.sleep(30)"])
        assert time.monotonic() - started < 10
