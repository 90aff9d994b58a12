"""
Command-line interface for trackmaster.

This module implements the CLI using Click; rich-click is used for the
output colors.

Commands:
    trackmaster process                      Master unprocessed jobs
    trackmaster process --reprocess          Recompute flags of processed jobs
    trackmaster download --output <dir>      Download masters and waves
    trackmaster analyze <file>               Master one local file
    trackmaster add <source>...              Queue jobs

Common options:
    --config <path>      config.yaml to use (default: ./config.yaml)
    --debug              Print DEBUG messages on the console

Batch options (process, download):
    --concurrency <n>    Jobs in flight at once
    --limit <n>          Stop after dispatching n jobs
    --timeout <dur>      Stop dispatching after dur ("90", "3:45", "1:02:30")
    --type <pattern>     Only jobs whose type matches (SQL LIKE)

Exit codes:
    0   Finished, timed out, or no jobs to run
    1   Configuration error
    2   Database error
    3   Too many consecutive job failures
    4   Other trackmaster error
    130 Interrupted
"""

import sys
from dataclasses import replace
from pathlib import Path
from typing import Callable, Optional

import requests
import rich_click as click

# Configure rich-click for better help formatting
click.rich_click.USE_RICH_MARKUP = True
click.rich_click.SHOW_ARGUMENTS = True
click.rich_click.GROUP_ARGUMENTS_OPTIONS = True
click.rich_click.STYLE_ERRORS_SUGGESTION = "magenta italic"
click.rich_click.ERRORS_SUGGESTION = ""
click.rich_click.MAX_WIDTH = 100

from trackmaster import __version__
from trackmaster.core import (
    Config,
    ConfigError,
    Database,
    DatabaseError,
    DispatchOptions,
    NoJobsAvailableError,
    RunCancelledError,
    RunContext,
    TooManyErrorsError,
    TrackmasterError,
    get_logger,
    load_config,
    setup_logging,
    shutdown_logging,
)
from trackmaster.core.progress import JobProgressBar
from trackmaster.processing import (
    JobWorker,
    add_jobs,
    analyze_file,
    build_pipeline,
    run_download,
    run_process,
)
from trackmaster.storage import new_blob_store
from trackmaster.utils import ensure_directory, format_duration, parse_duration

logger = get_logger(__name__)


def _parse_timeout(ctx: click.Context, param: click.Parameter, value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return parse_duration(value)
    except ValueError:
        raise click.BadParameter(f"invalid duration: {value}")


def config_options(func: Callable) -> Callable:
    """--config and --debug, shared by every command."""
    func = click.option(
        "--debug",
        is_flag=True,
        help="Print debug messages"
    )(func)
    func = click.option(
        "--config", "config_path",
        type=click.Path(dir_okay=False, path_type=Path),
        default=None,
        metavar="<config.yaml>",
        help="Configuration file (default: ./config.yaml)"
    )(func)
    return func


def batch_options(func: Callable) -> Callable:
    """Dispatcher overrides shared by the batch commands."""
    func = click.option(
        "--type", "job_type",
        type=str,
        default=None,
        metavar="<pattern>",
        help="Only jobs whose type matches this LIKE pattern"
    )(func)
    func = click.option(
        "--timeout",
        type=str,
        default=None,
        callback=_parse_timeout,
        metavar="<duration>",
        help="Stop dispatching after this long (e.g. 90, 3:45, 1:02:30)"
    )(func)
    func = click.option(
        "--limit",
        type=click.IntRange(min=0),
        default=None,
        help="Stop after dispatching this many jobs (0 = no limit)"
    )(func)
    func = click.option(
        "--concurrency",
        type=click.IntRange(min=1),
        default=None,
        help="Jobs processed at the same time"
    )(func)
    return func


@click.group()
@click.version_option(__version__, prog_name="trackmaster")
def cli() -> None:
    """
    trackmaster: batch mastering of generated audio tracks.

    \b
    BASIC USAGE:
        trackmaster add https://example.com/raw/1.mp3     # Queue a job
        trackmaster process --concurrency 2               # Master queued jobs
        trackmaster download --output ~/Masters           # Fetch the results

    \b
    MAINTENANCE:
        trackmaster process --reprocess                   # Recompute flags
        trackmaster analyze song.wav                      # Master one file
    """


@cli.command()
@config_options
@batch_options
@click.option(
    "--reprocess",
    is_flag=True,
    help="Recompute flags of already processed jobs"
)
def process(
    config_path: Optional[Path],
    debug: bool,
    concurrency: Optional[int],
    limit: Optional[int],
    timeout: Optional[int],
    job_type: Optional[str],
    reprocess: bool
) -> None:
    """Master every unprocessed job (or reprocess finished ones)."""
    def command(config: Config, context: RunContext) -> None:
        database = _open_database(config)
        try:
            store = new_blob_store(config.storage, cancel_event=context.cancel_event)
            store.check()
            pipeline = build_pipeline(config, context)
            worker = JobWorker(
                database,
                store,
                pipeline,
                config.output.work_directory,
                session=requests.Session(),
            )
            options = _dispatch_options(config, concurrency, limit, timeout)
            with JobProgressBar("Reprocess" if reprocess else "Process") as progress:
                run_process(
                    database,
                    worker,
                    options,
                    context,
                    job_type=job_type,
                    reprocess=reprocess,
                    progress=progress,
                )
            _print_stats(database)
        finally:
            database.close()

    _run(config_path, debug, command)


@cli.command()
@config_options
@batch_options
@click.option(
    "--output", "output_dir",
    type=click.Path(file_okay=False, path_type=Path),
    required=True,
    metavar="<dir>",
    help="Directory receiving <id>.mp3 and <id>.jpg"
)
def download(
    config_path: Optional[Path],
    debug: bool,
    concurrency: Optional[int],
    limit: Optional[int],
    timeout: Optional[int],
    job_type: Optional[str],
    output_dir: Path
) -> None:
    """Download masters and waveforms of processed jobs."""
    def command(config: Config, context: RunContext) -> None:
        database = _open_database(config)
        try:
            store = new_blob_store(config.storage, cancel_event=context.cancel_event)
            store.check()
            options = _dispatch_options(config, concurrency, limit, timeout)
            with JobProgressBar("Download") as progress:
                run_download(
                    database,
                    store,
                    output_dir.expanduser(),
                    options,
                    context,
                    job_type=job_type,
                    progress=progress,
                )
        finally:
            database.close()

    _run(config_path, debug, command)


@cli.command()
@config_options
@click.argument(
    "input_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    metavar="<file>"
)
@click.option(
    "--output", "output_dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    metavar="<dir>",
    help="Where to write the master and wave (default: beside the input)"
)
@click.option(
    "--label",
    type=str,
    default=None,
    help="Waveform title (default: the file name)"
)
def analyze(
    config_path: Optional[Path],
    debug: bool,
    input_path: Path,
    output_dir: Optional[Path],
    label: Optional[str]
) -> None:
    """Master and analyze a single local file."""
    def command(config: Config, context: RunContext) -> None:
        pipeline = build_pipeline(config, context)
        result, master_path, wave_path = analyze_file(pipeline, input_path, output_dir, label)

        silences = result.analyzer.silences(pipeline.settings.min_silence)
        click.echo(f"Master:    {master_path}")
        click.echo(f"Wave:      {wave_path}")
        click.echo(f"Duration:  {format_duration(result.duration)} ({result.duration:.2f}s)")
        click.echo(f"Tempo:     {result.tempo:.1f} bpm")
        if result.cut_at is not None:
            click.echo(f"Cut at:    {result.cut_at:.2f}s")
        click.echo(f"Fade out:  {result.fade_out:.1f}s")
        for silence in silences:
            click.echo(f"Silence:   {silence.start:.2f}s - {silence.end:.2f}s")
        click.echo(f"Flags:     {result.flags.to_json() or '-'}")

    _run(config_path, debug, command)


@cli.command()
@config_options
@click.argument("sources", nargs=-1, metavar="<source>...")
@click.option(
    "--from-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    metavar="<list.txt>",
    help="Read sources from a file, one per line"
)
@click.option(
    "--type", "job_type",
    type=str,
    default="",
    help="Job type"
)
@click.option(
    "--style",
    type=str,
    default="",
    help="Style label drawn on the waveform"
)
def add(
    config_path: Optional[Path],
    debug: bool,
    sources: tuple[str, ...],
    from_file: Optional[Path],
    job_type: str,
    style: str
) -> None:
    """Queue jobs for raw audio URLs or paths."""
    all_sources = list(sources)
    if from_file is not None:
        lines = from_file.read_text(encoding="utf-8").splitlines()
        all_sources.extend(line.strip() for line in lines if line.strip())
    if not all_sources:
        raise click.UsageError("Give at least one source or --from-file")

    def command(config: Config, context: RunContext) -> None:
        database = _open_database(config)
        try:
            jobs = add_jobs(database, all_sources, job_type=job_type, style=style)
            for job in jobs:
                logger.info(f"Added {job.id}: {job.source}")
            _print_stats(database)
        finally:
            database.close()

    _run(config_path, debug, command)


def _run(
    config_path: Optional[Path],
    debug: bool,
    command: Callable[[Config, RunContext], None]
) -> None:
    """
    Load configuration, set up logging and run a command.

    Maps errors to exit codes and always shuts logging down.
    """
    context = RunContext()
    try:
        config = load_config(config_path)
        ensure_directory(config.output.directory)
        setup_logging(config.output.directory, debug=debug)

        command(config, context)

    except ConfigError as e:
        click.echo(f"Configuration error: {e.message}", err=True)
        sys.exit(1)

    except DatabaseError as e:
        click.echo(f"Database error: {e.message}", err=True)
        logger.error(f"Database error: {e.message}", exc_info=True)
        sys.exit(2)

    except NoJobsAvailableError as e:
        logger.info(e.message)

    except TooManyErrorsError as e:
        click.echo(f"Aborted: {e.message}", err=True)
        logger.error(f"Aborted: {e.message}")
        sys.exit(3)

    except RunCancelledError:
        click.echo("\nInterrupted", err=True)
        logger.info("Run cancelled")
        sys.exit(130)

    except TrackmasterError as e:
        click.echo(f"Error: {e.message}", err=True)
        logger.error(f"Error: {e.message}", exc_info=True)
        sys.exit(4)

    except KeyboardInterrupt:
        context.cancel()
        click.echo("\nInterrupted by user", err=True)
        logger.info("Interrupted by user")
        sys.exit(130)

    finally:
        shutdown_logging()


def _open_database(config: Config) -> Database:
    """
    Open the job store, creating its directory if needed.

    Raises:
        DatabaseError: If the database cannot be opened.
    """
    try:
        ensure_directory(config.database.path.parent)
    except OSError as e:
        raise DatabaseError(
            f"Couldn't create database directory: {e}",
            details={"path": str(config.database.path)}
        ) from e
    return Database(config.database.path)


def _dispatch_options(
    config: Config,
    concurrency: Optional[int],
    limit: Optional[int],
    timeout: Optional[int]
) -> DispatchOptions:
    """Merge command-line overrides into the process section."""
    overrides = {}
    if concurrency is not None:
        overrides["concurrency"] = concurrency
    if limit is not None:
        overrides["limit"] = limit
    if timeout is not None:
        overrides["timeout"] = float(timeout)
    process_config = replace(config.process, **overrides)

    return DispatchOptions(
        concurrency=process_config.concurrency,
        page_size=process_config.page_size,
        limit=process_config.limit,
        timeout=process_config.timeout,
        error_threshold=process_config.error_threshold,
    )


def _print_stats(database: Database) -> None:
    """Log job counts from the store."""
    stats = database.get_stats()

    logger.info("=" * 60)
    logger.info("JOB STATISTICS")
    logger.info("=" * 60)
    logger.info(f"Total jobs:        {stats['total']}")
    logger.info(f"Processed:         {stats['processed']}")
    logger.info(f"Pending:           {stats['pending']}")
    logger.info(f"Flagged:           {stats['flagged']}")
    logger.info("=" * 60)


def main() -> None:
    """
    Entry point for the CLI.

    This function is called when running `trackmaster` from the command
    line. It invokes the Click CLI group.
    """
    cli()


if __name__ == "__main__":
    main()
