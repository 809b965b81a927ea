"""whatwasthat CLI."""

import logging
import multiprocessing
import os
import sys
from pathlib import Path

import click
from tqdm import tqdm

from .config import AUDIO_EXTENSIONS, DB_PATH
from .engine import Engine
from .errors import EngineError
from .features import fingerprint, load_wav


# ---------------------------------------------------------------------------
# Parallel scan worker (runs in subprocess, no DB access here)
# ---------------------------------------------------------------------------

def _scan_worker(path_str: str) -> dict:
    """
    Fingerprint one WAV file.
    Runs in a worker process. Returns a plain dict so it's picklable.
    """
    result = {"path": path_str, "fp": None, "error": None}
    try:
        samples, sample_rate = load_wav(path_str)
        result["fp"] = fingerprint(samples, sample_rate)
    except (EngineError, OSError, ValueError) as e:
        result["error"] = str(e)
    return result


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _open(db: Path | None) -> Engine:
    try:
        return Engine(db or DB_PATH)
    except EngineError as e:
        _fail(e)


def _read(clip: Path):
    try:
        return load_wav(clip)
    except (OSError, ValueError) as e:
        _fail(f"cannot read {clip}: {e}")


def _fail(message):
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _owner(owner_id) -> str:
    return owner_id if owner_id is not None else "-"


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

db_option = click.option(
    "--db", type=click.Path(path_type=Path), default=None,
    help="Database path (default: ~/.whatwasthat/fingerprints.db).",
)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log engine activity to stderr.")
def cli(verbose: bool):
    """whatwasthat — recognize household sounds from short recordings."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )


@cli.command()
@click.argument("clip", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--id", "ref_id", default=None, help="Reference id (default: file name without extension).")
@click.option("--owner", default=None, help="Owner of the reference sound.")
@db_option
def register(clip: Path, ref_id: str | None, owner: str | None, db: Path | None):
    """Register CLIP as a reference sound."""
    samples, sample_rate = _read(clip)
    with _open(db) as engine:
        try:
            entry = engine.register(samples, sample_rate, ref_id or clip.stem, owner)
        except EngineError as e:
            _fail(e)
    click.echo(f"Registered {entry.id} ({len(entry.fingerprint)} frames, owner: {_owner(entry.owner_id)})")


@cli.command()
@click.argument("directory", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--owner", default=None, help="Owner for every registered sound.")
@click.option("--workers", "-j", default=None, type=int,
              help="Parallel workers (default: CPU count).")
@db_option
def scan(directory: Path, owner: str | None, workers: int | None, db: Path | None):
    """Register every WAV file in DIRECTORY, using the file name as id."""
    n_workers = workers or os.cpu_count() or 4
    audio_files = sorted(
        p for p in directory.rglob("*")
        if p.suffix.lower() in AUDIO_EXTENSIONS
    )
    click.echo(f"Found {len(audio_files)} audio files in {directory}")
    if not audio_files:
        click.echo("Nothing to do.")
        return

    errors = 0
    work_args = [str(p.resolve()) for p in audio_files]

    # Workers handle all CPU-bound work; main process owns the store.
    with _open(db) as engine:
        with multiprocessing.Pool(processes=n_workers) as pool:
            with tqdm(total=len(work_args), unit="clip") as pbar:
                for result in pool.imap_unordered(_scan_worker, work_args):
                    pbar.update(1)
                    if result["error"]:
                        tqdm.write(f"ERROR {Path(result['path']).name}: {result['error']}")
                        errors += 1
                        continue
                    try:
                        engine.store.put(Path(result["path"]).stem, result["fp"], owner)
                    except EngineError as e:
                        tqdm.write(f"ERROR {Path(result['path']).name}: {e}")
                        errors += 1

    click.echo(f"Done. Errors: {errors}.")


@cli.command("match")
@click.argument("clip", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--threshold", "-t", default=None, type=click.FloatRange(0.0, 1.0),
              help="Match threshold (default: 0.85).")
@click.option("--owner", default=None, help="Only compare against this owner's sounds.")
@click.option("-k", "--count", default=3, show_default=True, help="Candidates to show.")
@db_option
def match_cmd(clip: Path, threshold: float | None, owner: str | None, count: int, db: Path | None):
    """Identify CLIP against the registered sounds."""
    samples, sample_rate = _read(clip)
    with _open(db) as engine:
        if len(engine.store) == 0:
            click.echo("No sounds registered. Run `wwt register` first.", err=True)
        try:
            result = engine.match(samples, sample_rate, threshold, owner)
        except EngineError as e:
            _fail(e)

    if result.matched:
        click.echo(f"Match: {result.best_id} ({result.confidence:.1%})")
        if result.should_notify:
            click.echo("Confident enough to notify.")
    else:
        click.echo(f"No match (best score {result.confidence:.1%}, threshold {result.threshold:.1%})")

    for rank, s in enumerate(result.ranked_scores[:count], 1):
        mark = "+" if s.score >= result.threshold else " "
        click.echo(f"  {rank}. [{s.score:.3f}{mark}]  {s.id}  (owner: {_owner(s.owner_id)})")


@cli.command()
@click.argument("ref_id")
@db_option
def delete(ref_id: str, db: Path | None):
    """Delete the reference sound REF_ID."""
    with _open(db) as engine:
        try:
            removed = engine.delete(ref_id)
        except EngineError as e:
            _fail(e)
    if not removed:
        click.echo(f"No sound with id {ref_id}", err=True)
        sys.exit(1)
    click.echo(f"Deleted {ref_id}")


@cli.command("list")
@click.option("--owner", default=None, help="Only list this owner's sounds.")
@db_option
def list_cmd(owner: str | None, db: Path | None):
    """List registered sounds."""
    with _open(db) as engine:
        summaries = engine.list(owner)
    if not summaries:
        click.echo("No sounds registered.")
        return
    for s in summaries:
        stale = " (stale)" if s.stale else ""
        click.echo(f"  {s.id:<24} {_owner(s.owner_id):<12} {s.length:>5} frames  {s.created_at}{stale}")


@cli.command("import-json")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--owner", default=None, help="Owner for entries that have none.")
@db_option
def import_json(path: Path, owner: str | None, db: Path | None):
    """Import a fingerprints.json database from the old server."""
    with _open(db) as engine:
        try:
            n = engine.store.import_json(path, default_owner=owner)
        except EngineError as e:
            _fail(e)
    click.echo(f"Imported {n} fingerprint(s).")


@cli.command()
@db_option
def stats(db: Path | None):
    """Show store statistics."""
    db_path = db or DB_PATH
    with _open(db) as engine:
        s = engine.store.stats()
    click.echo(f"Sounds:    {s['references']}")
    click.echo(f"Owners:    {s['owners']}")
    click.echo(f"Frames:    {s['frames']}")
    if s["stale"]:
        click.echo(f"Stale:     {s['stale']} (register again to match)")
    click.echo(f"Database:  {db_path}")


if __name__ == "__main__":
    cli()
