"""
Processing layer for trackmaster.

    - flags: anomaly flag record and classification
    - mastering: master, cut / fade and analyze one track
    - process: process, reprocess, analyze and add commands
    - download: download command
"""

from trackmaster.processing.download import JobDownloader, last_downloaded_id, run_download
from trackmaster.processing.flags import Flags, classify
from trackmaster.processing.mastering import (
    Analysis,
    MasteringPipeline,
    MasteringSettings,
    MasterResult,
)
from trackmaster.processing.process import (
    JobWorker,
    add_jobs,
    analyze_file,
    build_pipeline,
    job_pages,
    run_process,
)

__all__ = [
    "Flags",
    "classify",
    "Analysis",
    "MasteringPipeline",
    "MasteringSettings",
    "MasterResult",
    "JobWorker",
    "add_jobs",
    "analyze_file",
    "build_pipeline",
    "job_pages",
    "run_process",
    "JobDownloader",
    "last_downloaded_id",
    "run_download",
]
