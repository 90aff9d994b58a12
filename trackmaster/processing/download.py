"""
download command: copy finished masters and waveforms out of the blob store.

Each processed job yields <id>.mp3 and <id>.jpg in the output directory.
Files that already exist are left alone, and the run resumes after the
highest <id>.mp3 already present, so repeated runs only fetch new jobs.
"""

from pathlib import Path

from trackmaster.core.database import Database
from trackmaster.core.dispatcher import DispatchOptions, DispatchStats, Dispatcher, RunContext
from trackmaster.core.exceptions import MissingReferenceError
from trackmaster.core.logger import get_logger
from trackmaster.core.models import Job
from trackmaster.core.progress import JobProgressBar
from trackmaster.processing.process import job_pages
from trackmaster.storage import BlobStore
from trackmaster.utils import ensure_directory


logger = get_logger(__name__)


def last_downloaded_id(output_dir: Path) -> str:
    """Highest job id with an .mp3 in output_dir, or "" if there is none."""
    output_dir = Path(output_dir)
    if not output_dir.is_dir():
        return ""
    ids = [path.stem for path in output_dir.glob("*.mp3")]
    return max(ids, default="")


class JobDownloader:
    """Downloads the master and waveform of one job."""

    def __init__(self, store: BlobStore, output_dir: Path) -> None:
        self.store = store
        self.output_dir = Path(output_dir)

    def download(self, job: Job, context: RunContext) -> list[Path]:
        """
        Fetch <id>.mp3 and <id>.jpg unless they already exist.

        Returns:
            The paths that were written.

        Raises:
            MissingReferenceError: If the job lacks a master or wave reference.
            StorageError: If the blob store fails.
        """
        if not job.master or not job.wave:
            raise MissingReferenceError(
                f"Job {job.id} has no master or wave reference",
                details={"job_id": job.id, "master": job.master, "wave": job.wave}
            )

        ensure_directory(self.output_dir)
        written = []
        for ref, suffix in ((job.master, ".mp3"), (job.wave, ".jpg")):
            target = self.output_dir / f"{job.id}{suffix}"
            if target.exists():
                continue
            context.check_cancelled()
            self.store.download(ref, target)
            written.append(target)

        logger.info(f"Downloaded {job.id}")
        return written


def run_download(
    db: Database,
    store: BlobStore,
    output_dir: Path,
    options: DispatchOptions,
    context: RunContext,
    job_type: str | None = None,
    progress: JobProgressBar | None = None,
) -> DispatchStats:
    """
    Download every processed job newer than the last one on disk.

    Raises:
        NoJobsAvailableError / TooManyErrorsError / RunCancelledError:
            See Dispatcher.run().
    """
    output_dir = ensure_directory(Path(output_dir))
    start_after = last_downloaded_id(output_dir)
    if start_after:
        logger.info(f"download: resuming after {start_after}")

    downloader = JobDownloader(store, output_dir)
    dispatcher = Dispatcher(
        "download",
        job_pages(db, processed=True, job_type=job_type),
        downloader.download,
        options,
        context=context,
        start_after=start_after,
        progress=progress,
    )
    return dispatcher.run()
