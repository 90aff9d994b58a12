"""
Audio decoding for trackmaster.

Turns a local path or an http(s) URL into mono float samples in [-1, 1]
plus the sample rate. pydub handles the container (WAV natively, MP3 and
friends through ffmpeg); numpy does the channel mixing and scaling.
"""

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

import numpy as np
import requests
from pydub import AudioSegment
from pydub.exceptions import CouldntDecodeError

from trackmaster.core.exceptions import DecodeError
from trackmaster.core.logger import get_logger


logger = get_logger(__name__)

DEFAULT_TIMEOUT = 120
CHUNK_SIZE = 64 * 1024


@dataclass
class DecodedAudio:
    """
    Decoded mono audio.

    Attributes:
        samples: float64 array in [-1, 1].
        rate: Sample rate in Hz.
        path: Local file the samples came from (a temp file for URLs).
    """
    samples: np.ndarray
    rate: int
    path: Path


def is_remote(source: str) -> bool:
    return str(source).startswith("http")


def fetch(
    url: str,
    destination: Path,
    session: requests.Session | None = None,
    timeout: float = DEFAULT_TIMEOUT
) -> Path:
    """
    Download a remote file to destination.

    The body is streamed into a temp file next to destination and moved
    into place once complete, so a failed download never leaves a
    truncated file behind.

    Raises:
        DecodeError: If the request fails or answers with an error status.
    """
    http = session or requests.Session()
    tmp = destination.with_name(destination.name + ".part")
    try:
        with http.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            with open(tmp, "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    f.write(chunk)
        os.replace(tmp, destination)
    except (requests.RequestException, OSError) as e:
        tmp.unlink(missing_ok=True)
        raise DecodeError(
            f"Couldn't download audio: {e}",
            details={"source": url, "original_error": str(e)}
        ) from e
    finally:
        if session is None:
            http.close()
    logger.debug(f"Downloaded {url} to {destination}")
    return destination


def load_samples(path: Path) -> tuple[np.ndarray, int]:
    """
    Decode a local file into mono float64 samples.

    Returns:
        (samples, rate)

    Raises:
        DecodeError: Missing or undecodable file, more than two
                     channels, or no audio frames.
    """
    try:
        audio = AudioSegment.from_file(str(path))
    except FileNotFoundError as e:
        raise DecodeError(f"Audio file not found: {path}", details={"path": str(path)}) from e
    except (CouldntDecodeError, OSError, EOFError) as e:
        raise DecodeError(
            f"Couldn't decode audio: {e}",
            details={"path": str(path), "original_error": str(e)}
        ) from e

    channels = audio.channels
    if channels not in (1, 2):
        raise DecodeError(
            f"Unsupported channel layout: {channels} channels",
            details={"path": str(path), "channels": channels}
        )

    bit_depth = audio.sample_width * 8
    samples = np.array(audio.get_array_of_samples())
    if channels == 2:
        samples = samples.reshape((-1, 2)).mean(axis=1)
    samples = samples.astype(np.float64) / (2 ** (bit_depth - 1))

    if samples.size == 0:
        raise DecodeError(f"No audio frames in {path}", details={"path": str(path)})

    return samples, audio.frame_rate


def decode(
    source: str | Path,
    session: requests.Session | None = None,
    timeout: float = DEFAULT_TIMEOUT
) -> DecodedAudio:
    """
    Decode a local path or remote URL.

    Remote sources are downloaded into the system temp directory first;
    the returned path points at that copy and the caller owns it.

    Raises:
        DecodeError: If the source cannot be fetched or decoded.
    """
    source = str(source)
    if is_remote(source):
        name = Path(urlparse(source).path).name or "audio"
        fd, tmp_name = tempfile.mkstemp(prefix="trackmaster-", suffix="-" + name)
        os.close(fd)
        path = Path(tmp_name)
        try:
            fetch(source, path, session=session, timeout=timeout)
            samples, rate = load_samples(path)
        except DecodeError:
            path.unlink(missing_ok=True)
            raise
        return DecodedAudio(samples=samples, rate=rate, path=path)

    path = Path(source)
    samples, rate = load_samples(path)
    return DecodedAudio(samples=samples, rate=rate, path=path)
