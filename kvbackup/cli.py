"""
Command-line interface for kvbackup.

This module provides the ``kvbackup`` entry point with the ``backup``,
``restore`` and ``ls`` commands.
"""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Annotated, NoReturn, Optional

import orjson
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from kvbackup import __version__
from kvbackup.archiver import Archiver
from kvbackup.config import BackupConfig
from kvbackup.errors import CodecError, KvBackupError, SetupError
from kvbackup.platform import default_manifest_path
from kvbackup.pool import WorkerPool
from kvbackup.report import FileResult, FileStatus, RunReport
from kvbackup.restorer import Restorer
from kvbackup.selector import resolve_manifest
from kvbackup.store import Entry
from kvbackup.store.sqlite import SqliteStore

# Set up the consoles and logger; logs go to stderr so that `ls` output
# stays pipeable
console = Console()
err_console = Console(stderr=True)
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(console=err_console, rich_tracebacks=True)],
)
logger = logging.getLogger("kvbackup")

# Some files failed while the run itself completed
PARTIAL_FAILURE_EXIT = 3

STATUS_STYLES = {
    FileStatus.UPDATED: "green",
    FileStatus.RESTORED: "green",
    FileStatus.UP_TO_DATE: "yellow",
    FileStatus.FAILED: "red",
}

# Create the Typer app
app = typer.Typer(
    help="File backup utility built on an embedded SQLite store.",
    add_completion=False,
)


def printable(text: str) -> str:
    """Show bytes of a path that are not valid UTF-8 as escapes."""
    return os.fsencode(text).decode("utf-8", "backslashreplace")


def fail(message: str) -> NoReturn:
    """Log a fatal error, print it in red and exit with status 1."""
    logger.error(message)
    console.print(f"[red]{escape(printable(message))}[/red]")
    raise typer.Exit(1)


def print_result(result: FileResult) -> None:
    """Print one per-file outcome in its status colour."""
    if result.status is FileStatus.FAILED:
        message = str(result.error)
    elif result.status is FileStatus.RESTORED:
        message = f"{result.path} -> {result.target}"
    else:
        message = f"{result.path}: {result.status.value}"
    console.print(
        printable(message),
        style=STATUS_STYLES[result.status],
        markup=False,
        highlight=False,
        soft_wrap=True,
    )


def finish(report: RunReport) -> None:
    """Print the run summary and exit non-zero if any file failed."""
    console.print(f"\n[cyan]Done: {report.summary()}[/cyan]")
    if not report.ok:
        message = f"{len(report.failures)} files failed"
        logger.warning(message)
        console.print(f"[red]{message}[/red]")
        raise typer.Exit(PARTIAL_FAILURE_EXIT)


def entry_mtime(entry: Entry) -> Optional[int]:
    try:
        return entry.resolved_mtime()
    except CodecError:
        return None


def get_config(ctx: typer.Context) -> BackupConfig:
    if isinstance(ctx.obj, BackupConfig):
        return ctx.obj
    return BackupConfig.load()


def get_db_path(db: Optional[str], config: BackupConfig) -> str:
    """
    Resolve the store path.

    The order of precedence is:
    1. Command-line argument
    2. ``KVBACKUP_DB`` environment variable
    3. Configuration file
    """
    db_path = db or os.environ.get("KVBACKUP_DB") or config.db
    if not db_path:
        raise SetupError("--db missing: need a store path")
    return str(Path(db_path).expanduser())


def get_manifest_path(manifest: Optional[str], config: BackupConfig) -> Path:
    """Resolve the manifest path the same way as :func:`get_db_path`."""
    path = manifest or os.environ.get("KVBACKUP_MANIFEST") or config.manifest
    manifest_path = Path(path).expanduser() if path else default_manifest_path()
    if not manifest_path.is_file():
        raise SetupError(f"manifest not found: {manifest_path}")
    return manifest_path


def check_workers(workers: int) -> int:
    if workers < 1:
        raise SetupError(f"invalid worker count: {workers}")
    return workers


@app.callback()
def callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose output."
    ),
    json_logs: bool = typer.Option(
        False, "--json-logs", help="Output logs in JSON format."
    ),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        help="Path to the configuration file "
        "(default: ~/.config/kvbackup/config.yaml).",
    ),
) -> None:
    """
    kvbackup: incremental file backup into a single SQLite file.
    """
    # Configure logging level based on verbosity
    if verbose:
        logger.setLevel(logging.DEBUG)
        logger.debug("Verbose logging enabled")

    # Configure JSON logging if requested
    if json_logs:
        for handler in logging.root.handlers[:]:
            logging.root.removeHandler(handler)
        logging.basicConfig(
            level=logging.INFO if not verbose else logging.DEBUG,
            format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
            '"logger": "%(name)s", "message": "%(message)s"}',
            datefmt="%Y-%m-%dT%H:%M:%S",
            stream=sys.stderr,
        )
        logger.debug("JSON logging enabled")

    ctx.obj = BackupConfig.load(config_path)


@app.command()
def backup(
    ctx: typer.Context,
    manifest: Annotated[
        Optional[str],
        typer.Option(
            "--file",
            "-f",
            help="Manifest of files to back up, specified as patterns "
            "(default: ~/.backup). Uses KVBACKUP_MANIFEST env var if not set.",
        ),
    ] = None,
    db: Annotated[
        Optional[str],
        typer.Option(
            "--db",
            help="Store file; created if it doesn't already exist. "
            "Uses KVBACKUP_DB env var if not set.",
        ),
    ] = None,
    workers: Annotated[
        Optional[int],
        typer.Option("--workers", "-n", help="Max number of files open at once."),
    ] = None,
    compress: Annotated[
        Optional[int],
        typer.Option("--compress", help="gzip compression level (0 <= x <= 9)."),
    ] = None,
    maxage: Annotated[
        Optional[int],
        typer.Option(
            "--maxage",
            help="How many seconds newer than its stored copy a file must be "
            "in order to be updated.",
        ),
    ] = None,
    collection: Annotated[
        Optional[str],
        typer.Option("--collection", help="Name of the collection in the store."),
    ] = None,
) -> None:
    """
    Put the files named by a manifest into the store.
    """
    config = get_config(ctx)
    try:
        manifest_path = get_manifest_path(manifest, config)
        db_path = get_db_path(db, config)
        nworkers = check_workers(workers if workers is not None else config.workers)
        level = compress if compress is not None else config.compress
        if not 0 <= level <= 9:
            raise SetupError(f"invalid gzip compression: {level}")
        threshold = maxage if maxage is not None else config.maxage
        if threshold < 0:
            raise SetupError(f"invalid maxage: {threshold}")

        logger.info(f"Backing up {manifest_path} into {db_path}")
        with SqliteStore(db_path, collection or config.collection) as store:
            store.ensure_collection()
            paths = resolve_manifest(manifest_path)
            archiver = Archiver(store, threshold=threshold, level=level)
            with WorkerPool(nworkers) as pool:
                report = archiver.run(paths, pool, on_result=print_result)
    except KvBackupError as e:
        fail(str(e))

    finish(report)


@app.command()
def restore(
    ctx: typer.Context,
    db: Annotated[
        Optional[str],
        typer.Option("--db", help="Store file. Uses KVBACKUP_DB env var if not set."),
    ] = None,
    output: Annotated[
        Optional[str],
        typer.Option(
            "--output", "-o", help="Directory to write files to (default: .)."
        ),
    ] = None,
    workers: Annotated[
        Optional[int],
        typer.Option("--workers", "-n", help="Max number of files written at once."),
    ] = None,
    stream: Annotated[
        bool,
        typer.Option(
            "--stream",
            help="Decouple decompression from disk writes with a bounded queue.",
        ),
    ] = False,
    write_workers: Annotated[
        Optional[int],
        typer.Option(
            "--write-workers",
            help="With --stream, max number of files written at once "
            "(default: --workers).",
        ),
    ] = None,
    queue_size: Annotated[
        Optional[int],
        typer.Option("--queue-size", help="With --stream, hand-off queue length."),
    ] = None,
    collection: Annotated[
        Optional[str],
        typer.Option("--collection", help="Name of the collection in the store."),
    ] = None,
) -> None:
    """
    Get every file out of the store.
    """
    config = get_config(ctx)
    try:
        db_path = get_db_path(db, config)
        nworkers = check_workers(workers if workers is not None else config.workers)
        output_dir = Path(output or config.output or ".").expanduser()

        with SqliteStore(
            db_path, collection or config.collection, create=False
        ) as store:
            restorer = Restorer(store, output_dir)
            if stream:
                nwriters = check_workers(
                    write_workers if write_workers is not None else nworkers
                )
                qsize = queue_size if queue_size is not None else config.queue_size
                if qsize < 1:
                    raise SetupError(f"invalid queue size: {qsize}")
                with WorkerPool(nworkers, name="kvbackup-decompress") as dpool:
                    with WorkerPool(nwriters, name="kvbackup-write") as wpool:
                        report = restorer.run_streaming(
                            dpool, wpool, queue_size=qsize, on_result=print_result
                        )
            else:
                with WorkerPool(nworkers) as pool:
                    report = restorer.run(pool, on_result=print_result)
    except KvBackupError as e:
        fail(str(e))

    finish(report)


@app.command(name="ls")
def list_files(
    ctx: typer.Context,
    db: Annotated[
        Optional[str],
        typer.Option("--db", help="Store file. Uses KVBACKUP_DB env var if not set."),
    ] = None,
    long: Annotated[
        bool,
        typer.Option(
            "--long", "-l", help="Show modification time, level and stored size."
        ),
    ] = False,
    json_output: Annotated[
        bool, typer.Option("--json", help="Output entries in JSON format.")
    ] = False,
    collection: Annotated[
        Optional[str],
        typer.Option("--collection", help="Name of the collection in the store."),
    ] = None,
) -> None:
    """
    List files that exist in the store.
    """
    config = get_config(ctx)
    try:
        db_path = get_db_path(db, config)
        with SqliteStore(
            db_path, collection or config.collection, create=False
        ) as store:
            if not (long or json_output):
                # Raw bytes keep names that are not valid UTF-8 intact
                for key in store.keys():
                    typer.echo(os.fsencode(key))
                return
            rows = []
            store.for_each(
                lambda e: rows.append(
                    (printable(e.key), entry_mtime(e), e.level, e.size)
                )
            )
            total = store.count()
    except KvBackupError as e:
        fail(str(e))

    if json_output:
        typer.echo(
            orjson.dumps(
                [
                    {"key": key, "mtime": mtime, "level": level, "size": size}
                    for key, mtime, level, size in rows
                ],
                option=orjson.OPT_INDENT_2,
            ).decode()
        )
        return

    table = Table(title=f"Files in {db_path}", caption=f"{total} files")
    table.add_column("Path")
    table.add_column("Modified")
    table.add_column("Level", justify="right")
    table.add_column("Stored", justify="right")
    for key, mtime, level, size in rows:
        table.add_row(
            escape(key),
            (
                datetime.fromtimestamp(mtime).strftime("%Y-%m-%d %H:%M:%S")
                if mtime is not None
                else "?"
            ),
            str(level),
            str(size),
        )
    console.print(table)


@app.command()
def version() -> None:
    """Show the application version and exit."""
    console.print(f"kvbackup version: {__version__}")


if __name__ == "__main__":
    app()
