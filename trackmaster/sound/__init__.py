"""
Sound module for trackmaster.

    - decoder: local path or URL to mono float samples
    - analyzer: envelope, segmentation, tempo drift, plots
    - tools: subprocess runner shared by the wrappers below
    - aubio / ffmpeg / phaselimiter: external tool wrappers
"""

from trackmaster.sound.analyzer import Analyzer, Segment
from trackmaster.sound.aubio import Aubio
from trackmaster.sound.decoder import DecodedAudio, decode, fetch
from trackmaster.sound.ffmpeg import FFmpeg
from trackmaster.sound.phaselimiter import PhaseLimiter
from trackmaster.sound.tools import ToolRunner

__all__ = [
    "Analyzer",
    "Segment",
    "Aubio",
    "DecodedAudio",
    "decode",
    "fetch",
    "FFmpeg",
    "PhaseLimiter",
    "ToolRunner",
]
