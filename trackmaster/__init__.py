"""
trackmaster: batch mastering of generated audio tracks.

Raw tracks are queued as jobs in a SQLite store. Batch commands pick them
up in id order and run them through a bounded pool of worker threads.

Architecture:
    core/: configuration, job store, dispatcher, logging, progress bars
    sound/: decoding, analysis, and wrappers for ffmpeg, aubio and
            phase_limiter
    processing/: the mastering pipeline, flag classification and the
                 batch commands
    storage/: blob stores (local directory, Telegram chat)

Commands:
    trackmaster process              Master every unprocessed job
    trackmaster process --reprocess  Recompute flags of processed jobs
    trackmaster download             Copy masters and waves to a directory
    trackmaster analyze <file>       Master a single local file
    trackmaster add <source>...      Queue new jobs
"""

__version__ = "0.1.0"
