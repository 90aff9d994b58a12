"""Test configuration and fixtures"""

import logging
from pathlib import Path

import numpy as np
import pytest

from trackmaster.core.config import parse_config
from trackmaster.core.database import Database
from trackmaster.core.dispatcher import RunContext
from trackmaster.core.logger import shutdown_logging
from trackmaster.processing.mastering import MasteringPipeline, MasteringSettings
from trackmaster.sound.analyzer import Analyzer


# Low sample rate keeps synthetic tracks small: 50 samples per 50ms window
RATE = 1000


def tone(seconds: float) -> np.ndarray:
    """Constant-energy signal (RMS 0.5) lasting seconds."""
    count = int(round(seconds * RATE))
    return np.resize(np.array([0.5, -0.5]), count)


def silence(seconds: float) -> np.ndarray:
    return np.zeros(int(round(seconds * RATE)))


def track(*parts: np.ndarray) -> np.ndarray:
    return np.concatenate(parts)


class FakeAudioTools:
    """
    In-memory limiter, editor and beat tracker.

    Audio lives in a dict keyed by path; every write also touches the
    file on disk so blob stores can copy it.
    """

    def __init__(self, tempo: float = 120.0, beat_interval: float = 0.5):
        self.audio: dict[Path, np.ndarray] = {}
        self.tempo_value = tempo
        self.beat_interval = beat_interval
        self.calls: list[tuple] = []

    def register(self, path: Path, samples: np.ndarray) -> Path:
        path = Path(path)
        self.audio[path] = samples
        path.write_bytes(b"audio")
        return path

    def load(self, path: Path) -> Analyzer:
        return Analyzer(self.audio[Path(path)], RATE, source=Path(path))

    # Limiter
    def master(self, input_path: Path, output_path: Path) -> None:
        self.calls.append(("master", Path(input_path), Path(output_path)))
        self.register(output_path, self.audio[Path(input_path)].copy())

    # Editor
    def cut(self, input_path: Path, output_path: Path, end: float) -> None:
        self.calls.append(("cut", end))
        samples = self.audio[Path(input_path)]
        self.register(output_path, samples[:int(round(end * RATE))])

    def fade_out(self, input_path: Path, output_path: Path, total: float, fade: float) -> None:
        self.calls.append(("fade_out", total, fade))
        self.register(output_path, self.audio[Path(input_path)])

    # Beat tracker
    def tempo(self, path: Path) -> float:
        self.calls.append(("tempo", Path(path)))
        return self.tempo_value

    def beats(self, path: Path) -> list[float]:
        duration = len(self.audio[Path(path)]) / RATE
        return list(np.arange(0.0, duration, self.beat_interval))

    def called(self, name: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == name]


@pytest.fixture
def temp_dir(tmp_path):
    """Temporary directory for tests"""
    return tmp_path


@pytest.fixture
def run_context():
    return RunContext()


@pytest.fixture
def fake_tools():
    return FakeAudioTools()


@pytest.fixture
def pipeline(fake_tools, run_context):
    """MasteringPipeline wired to the in-memory fake tools"""
    return MasteringPipeline(
        fake_tools,
        fake_tools,
        fake_tools,
        run_context,
        MasteringSettings(),
        load=fake_tools.load,
    )


@pytest.fixture
def database(temp_dir):
    db = Database(temp_dir / "jobs.db")
    yield db
    db.close()


@pytest.fixture
def raw_config(temp_dir):
    """Minimal valid configuration dictionary with local storage"""
    return {
        "output": {"directory": str(temp_dir / "output")},
        "storage": {"type": "local", "directory": str(temp_dir / "blobs")},
    }


@pytest.fixture
def config(raw_config):
    return parse_config(raw_config)


@pytest.fixture
def clean_logging():
    """Restore the root logger after tests that call setup_logging()"""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    shutdown_logging()
    root.handlers[:] = handlers
    root.setLevel(level)
