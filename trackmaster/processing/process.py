"""
process, reprocess, analyze and add commands.

process:
    For every unprocessed job: fetch the raw audio, master it, render the
    waveform, upload both to the blob store and save the results.

reprocess:
    For every processed job: download the stored master and recompute its
    flags and duration. The natural ending, tempo and references are kept.

analyze:
    Master a single local file and write <name>-master.mp3 and
    <name>-wave.jpg beside it (or into an output directory).

add:
    Insert jobs for a list of sources.

Each worker ends with the same update: fetch the latest stored version of
the job, change the result fields and save it back. Two workers saving the
same job overwrite each other; the last save wins.
"""

from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Callable, Iterable
from urllib.parse import urlparse

import requests

from trackmaster.core.config import Config
from trackmaster.core.database import Database
from trackmaster.core.dispatcher import DispatchOptions, DispatchStats, Dispatcher, RunContext
from trackmaster.core.exceptions import DatabaseError, MissingReferenceError
from trackmaster.core.logger import format_job_done_message, get_logger
from trackmaster.core.models import Job, new_job_id
from trackmaster.core.progress import JobProgressBar
from trackmaster.processing.mastering import (
    Analysis,
    MasteringPipeline,
    MasteringSettings,
    MasterResult,
)
from trackmaster.sound.analyzer import Analyzer
from trackmaster.sound.aubio import Aubio
from trackmaster.sound.decoder import fetch, is_remote
from trackmaster.sound.ffmpeg import FFmpeg
from trackmaster.sound.phaselimiter import PhaseLimiter
from trackmaster.sound.tools import ToolRunner
from trackmaster.storage import BlobStore
from trackmaster.utils import ensure_directory


logger = get_logger(__name__)

UPLOAD_LOCK = "upload"
DOWNLOAD_TIMEOUT = 120


def build_pipeline(config: Config, context: RunContext, check_tools: bool = True) -> MasteringPipeline:
    """
    Wire the external tools into a MasteringPipeline.

    Raises:
        ConfigError: If the fade-out settings are invalid.
        ToolError: If check_tools is set and aubio or phase_limiter is
                   missing.
    """
    settings = MasteringSettings.from_config(config.process)
    tools = config.tools

    runner = ToolRunner(cancel_event=context.cancel_event)
    ffmpeg = FFmpeg(runner, bin_path=tools.ffmpeg)
    aubio = Aubio(runner, bin_path=tools.aubio)
    limiter = PhaseLimiter(
        runner,
        ffmpeg,
        bin_path=tools.phase_limiter,
        loudness=tools.loudness,
        level=tools.level,
        bass_preservation=tools.bass_preservation,
        sound_quality2_cache=tools.sound_quality2_cache,
    )

    if check_tools:
        logger.debug(f"aubio {aubio.version()}")
        logger.debug(f"phase_limiter {limiter.version()}")

    load: Callable[[Path], Analyzer] = Analyzer.from_file
    if tools.use_aubio_quiet:
        load = partial(Analyzer.from_file, detector=aubio)

    return MasteringPipeline(limiter, ffmpeg, aubio, context, settings, load=load)


def _source_suffix(source: str) -> str:
    path = urlparse(source).path if is_remote(source) else source
    return Path(path).suffix or ".mp3"


@dataclass
class JobWorker:
    """
    Per-job work of the process and reprocess commands.

    Attributes:
        db: Job store.
        store: Blob store for masters and waves.
        pipeline: Mastering pipeline.
        work_dir: Scratch directory for downloads and masters.
        session: HTTP session used to fetch remote sources.
    """
    db: Database
    store: BlobStore
    pipeline: MasteringPipeline
    work_dir: Path
    session: requests.Session | None = None

    def process(self, job: Job, context: RunContext) -> MasterResult:
        """
        Master one job and store the results.

        Raises:
            DecodeError: If the source cannot be fetched or decoded.
            ToolError: If an external tool fails.
            StorageError: If uploading fails.
            DatabaseError: If the job disappeared or cannot be saved.
            RunCancelledError: If the run is cancelled.
        """
        ensure_directory(self.work_dir)
        master_dir = ensure_directory(self.work_dir / "master")

        temporary: list[Path] = []
        if is_remote(job.source):
            original = self.work_dir / f"{job.id}{_source_suffix(job.source)}"
            temporary.append(original)
            logger.debug(f"process: start download {job.id}")
            fetch(job.source, original, session=self.session, timeout=DOWNLOAD_TIMEOUT)
            logger.debug(f"process: end download {job.id}")
        else:
            original = Path(job.source)

        mastered = master_dir / f"{job.id}.mp3"
        wave_path = self.work_dir / f"{job.id}.jpg"
        temporary.extend([mastered, wave_path])
        try:
            mastered.unlink(missing_ok=True)
            logger.debug(f"process: start master {job.id}")
            result = self.pipeline.master(original, mastered)
            logger.debug(f"process: end master {job.id}")

            wave_path.write_bytes(result.analyzer.plot_wave(job.style))

            with context.lock(UPLOAD_LOCK):
                wave_ref = self.store.set(wave_path)
                master_ref = self.store.set(mastered)

            saved = self._save(
                job.id,
                processed=True,
                master=master_ref,
                wave=wave_ref,
                duration=result.duration,
                tempo=result.tempo,
                ends=result.natural_end,
                flags=result.flags.to_json(),
            )
        finally:
            for path in temporary:
                path.unlink(missing_ok=True)

        logger.info(format_job_done_message(job.id, saved.duration, saved.flags))
        return result

    def reprocess(self, job: Job, context: RunContext) -> Analysis:
        """
        Recompute the flags of an already mastered job.

        Raises:
            MissingReferenceError: If the job has no stored master.
            StorageError: If the master cannot be downloaded.
            ToolError / DecodeError: If the analysis fails.
        """
        if not job.master:
            raise MissingReferenceError(
                f"Job {job.id} has no master to reprocess",
                details={"job_id": job.id}
            )

        ensure_directory(self.work_dir)
        mastered = self.work_dir / f"{job.id}.mp3"
        try:
            logger.debug(f"reprocess: start download master {job.id}")
            self.store.download(job.master, mastered)
            logger.debug(f"reprocess: end download master {job.id}")
            context.check_cancelled()

            analysis = self.pipeline.analyze(mastered, job.ends, tempo=job.tempo)
            saved = self._save(
                job.id,
                processed=True,
                duration=analysis.duration,
                flags=analysis.flags.to_json(),
            )
        finally:
            mastered.unlink(missing_ok=True)

        logger.info(format_job_done_message(job.id, saved.duration, saved.flags))
        return analysis

    def _save(self, job_id: str, **changes) -> Job:
        """Fetch the latest version of a job, apply changes and save it."""
        latest = self.db.get_job(job_id)
        if latest is None:
            raise DatabaseError(f"Job not found: {job_id}", details={"job_id": job_id})
        return self.db.save_job(latest.copy(**changes))


def job_pages(
    db: Database,
    processed: bool | None,
    job_type: str | None = None
) -> Callable[[str, int], list[Job]]:
    """next_page function listing jobs by processing state and type."""
    def next_page(after_id: str, page_size: int) -> list[Job]:
        return db.list_jobs(after_id, page_size, processed=processed, job_type=job_type)
    return next_page


def run_process(
    db: Database,
    worker: JobWorker,
    options: DispatchOptions,
    context: RunContext,
    job_type: str | None = None,
    reprocess: bool = False,
    progress: JobProgressBar | None = None,
) -> DispatchStats:
    """
    Run the process (or reprocess) command over the job store.

    Raises:
        NoJobsAvailableError / TooManyErrorsError / RunCancelledError:
            See Dispatcher.run().
    """
    name = "reprocess" if reprocess else "process"
    work = worker.reprocess if reprocess else worker.process

    dispatcher = Dispatcher(
        name,
        job_pages(db, processed=reprocess, job_type=job_type),
        work,
        options,
        context=context,
        progress=progress,
    )
    return dispatcher.run()


def analyze_file(
    pipeline: MasteringPipeline,
    input_path: Path,
    output_dir: Path | None = None,
    label: str | None = None,
) -> tuple[MasterResult, Path, Path]:
    """
    Master one local file and write the master and waveform beside it.

    Returns:
        (result, master path, wave path)
    """
    input_path = Path(input_path)
    output_dir = ensure_directory(output_dir or input_path.parent)

    master_path = output_dir / f"{input_path.stem}-master.mp3"
    wave_path = output_dir / f"{input_path.stem}-wave.jpg"

    result = pipeline.master(input_path, master_path)
    wave_path.write_bytes(result.analyzer.plot_wave(label or input_path.stem))
    return result, master_path, wave_path


def add_jobs(
    db: Database,
    sources: Iterable[str],
    job_type: str = "",
    style: str = ""
) -> list[Job]:
    """Insert one unprocessed job per source, in order."""
    jobs = []
    for source in sources:
        job = Job(id=new_job_id(), source=source, type=job_type, style=style)
        db.add_job(job)
        jobs.append(job)
    return jobs
