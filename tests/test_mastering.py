"""Test the mastering pipeline with in-memory tools"""

import pytest

from trackmaster.core.exceptions import ConfigError, RunCancelledError
from trackmaster.core.config import ProcessConfig
from trackmaster.processing.mastering import MasteringSettings
from tests.conftest import silence, tone, track


class TestMasteringSettings:
    """Test fade-out validation"""

    def test_defaults(self):
        """One second after a cut, five seconds otherwise"""
        settings = MasteringSettings()
        assert settings.short_fade_out == 1.0
        assert settings.long_fade_out == 5.0

    def test_short_longer_than_long_is_rejected(self):
        """A short fade can't exceed the long one"""
        with pytest.raises(ConfigError):
            MasteringSettings(short_fade_out=6.0, long_fade_out=5.0)

    def test_zero_fade_is_rejected(self):
        """Both fades are required"""
        with pytest.raises(ConfigError):
            MasteringSettings(short_fade_out=0.0)

    def test_from_config(self):
        """Fades come from the process section"""
        settings = MasteringSettings.from_config(ProcessConfig(short_fade_out=2.0, long_fade_out=8.0))
        assert (settings.short_fade_out, settings.long_fade_out) == (2.0, 8.0)


class TestMaster:
    """Test cut / fade decisions and final flags"""

    def test_trailing_silence_is_cut(self, pipeline, fake_tools, temp_dir):
        """A final silence is cut at its start and faded briefly"""
        source = fake_tools.register(temp_dir / "raw.wav", track(tone(175), silence(5)))
        output = temp_dir / "master.mp3"

        result = pipeline.master(source, output)

        assert result.natural_end
        assert result.cut_at == pytest.approx(175.0)
        assert result.fade_out == 1.0
        assert result.duration == pytest.approx(175.0)
        assert fake_tools.called("cut") == [("cut", pytest.approx(175.0))]
        assert fake_tools.called("fade_out") == [("fade_out", pytest.approx(175.0), 1.0)]
        assert not result.flags.no_end
        assert not result.flags.short
        assert result.flags.to_json() == ""
        assert result.tempo == 120.0

    def test_track_without_silence_gets_long_fade(self, pipeline, fake_tools, temp_dir):
        """No natural end: no cut, long fade over the whole track"""
        source = fake_tools.register(temp_dir / "raw.wav", tone(90))
        output = temp_dir / "master.mp3"

        result = pipeline.master(source, output)

        assert not result.natural_end
        assert result.cut_at is None
        assert fake_tools.called("cut") == []
        assert fake_tools.called("fade_out") == [("fade_out", pytest.approx(90.0), 5.0)]
        assert result.flags.no_end
        assert result.flags.short
        assert result.flags.to_json() == '{"no_end":true,"short":true}'

    def test_silence_close_to_end_is_cut(self, pipeline, fake_tools, temp_dir):
        """A last silence ending inside the tail window counts as the ending"""
        source = fake_tools.register(
            temp_dir / "raw.wav", track(tone(150), silence(3), tone(4))
        )
        result = pipeline.master(source, temp_dir / "master.mp3")

        assert result.natural_end
        assert result.cut_at == pytest.approx(150.0)

    def test_inner_silence_is_flagged(self, pipeline, fake_tools, temp_dir):
        """Silences in the body of the track are reported as percent positions"""
        source = fake_tools.register(
            temp_dir / "raw.wav", track(tone(60), silence(2), tone(113), silence(5))
        )
        result = pipeline.master(source, temp_dir / "master.mp3")

        assert result.duration == pytest.approx(175.0)
        assert result.flags.silences == [35]
        assert not result.flags.bpm_n

    def test_cancelled_run_does_not_master(self, fake_tools, pipeline, run_context, temp_dir):
        """Cancellation is checked before the limiter starts"""
        source = fake_tools.register(temp_dir / "raw.wav", tone(30))
        run_context.cancel()
        with pytest.raises(RunCancelledError):
            pipeline.master(source, temp_dir / "master.mp3")
        assert fake_tools.called("master") == []


class TestAnalyze:
    """Test analysis of an existing master"""

    def test_known_tempo_is_kept(self, pipeline, fake_tools, temp_dir):
        """The beat tracker is not asked for a tempo that is already known"""
        path = fake_tools.register(temp_dir / "master.mp3", tone(150))

        analysis = pipeline.analyze(path, natural_end=True, tempo=98.5)

        assert analysis.tempo == 98.5
        assert fake_tools.called("tempo") == []
        assert analysis.duration == pytest.approx(150.0)
        assert analysis.flags.empty

    def test_tempo_drift_is_flagged(self, pipeline, fake_tools, temp_dir):
        """Beats slowing down in the second half set bpm_2"""
        path = fake_tools.register(temp_dir / "master.mp3", tone(160))
        fake_tools.beats = lambda p: [i * 0.5 for i in range(160)] + [80.0 + i for i in range(80)]

        analysis = pipeline.analyze(path, natural_end=True)

        assert analysis.flags.bpm_2
        assert analysis.flags.bpm_4
