#!/usr/bin/env python3
"""
Overlay Sync - Main CLI

Keeps EPUB3 media overlays synchronized with edited transcripts.

Features:
- Seed transcripts from page text or legacy sync records
- Edit fragment text without losing fragment ids
- Re-run forced alignment (aeneas) to refresh timings
- Export XHTML + SMIL page pairs for EPUB packaging
"""

import functools
import json
import shutil
import sys
from pathlib import Path
from typing import Optional, Tuple

import click

from overlaysync.readalong.errors import OverlaySyncError
from overlaysync.readalong.sync_service import TranscriptService
from overlaysync.readalong.text_segmenter import segment as segment_text
from overlaysync.readalong.transcript import FragmentKind
from overlaysync.readalong.transcript_store import TranscriptStore
from overlaysync.utils import logger
from overlaysync.utils.config import config

KIND_CHOICE = click.Choice([k.value for k in FragmentKind])


def reports_errors(func):
    """Turn engine errors into a logged message and exit status 1."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except OverlaySyncError as exc:
            logger.error(str(exc))
            sys.exit(1)

    return wrapper


def _service(ctx: click.Context) -> TranscriptService:
    transcripts_dir = ctx.obj.get("transcripts_dir") if ctx.obj else None
    return TranscriptService(store=TranscriptStore(transcripts_dir))


def _read_json(path: str):
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except ValueError as exc:
        raise click.BadParameter(f"{path} is not valid JSON: {exc}")


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False))


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--transcripts-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Transcript store directory (default: paths.transcripts)",
)
@click.option("--debug", is_flag=True, default=False, help="Show debug messages")
@click.pass_context
def cli(ctx: click.Context, transcripts_dir: Optional[str], debug: bool):
    """
    Overlay Sync

    Edit read-along transcripts and keep their XHTML/SMIL media
    overlays in sync with the narration.
    """
    ctx.ensure_object(dict)
    ctx.obj["transcripts_dir"] = transcripts_dir
    logger.set_debug(debug or config.debug)


@cli.command()
@click.argument("job_id", type=int)
@click.argument("page_number", type=int)
@click.option("--json", "as_json", is_flag=True, help="Print the editing view as JSON")
@click.pass_context
@reports_errors
def show(ctx: click.Context, job_id: int, page_number: int, as_json: bool):
    """
    Show the fragments of one page.
    """
    service = _service(ctx)
    view = service.get_transcript_for_editing(job_id, page_number)
    if as_json:
        _echo_json(view)
        return

    logger.header(f"Job {job_id}, page {page_number} ({view['state']})")
    for fragment in view["fragments"]:
        if fragment["startTime"] is None:
            timing = "untimed"
        else:
            timing = f"{fragment['startTime']:.3f}-{fragment['endTime']:.3f}s"
        click.echo(f"{fragment['id']:<24} {timing:<20} {fragment['text']}")


@cli.command(name="list")
@click.argument("job_id", type=int)
@click.pass_context
@reports_errors
def list_pages(ctx: click.Context, job_id: int):
    """
    List the transcripts of a job.
    """
    summaries = _service(ctx).list_transcripts(job_id)
    if not summaries:
        logger.warning(f"No transcripts for job {job_id}")
        return

    logger.header(f"Transcripts for job {job_id}")
    for page_number, summary in summaries.items():
        audio = "audio" if summary["hasAudio"] else "no audio"
        click.echo(
            f"  page {page_number:<5} {summary['fragmentCount']:>4} fragments  "
            f"{summary['state']:<8} {audio:<9} {summary['lastUpdated']}"
        )


@cli.command()
@click.argument("job_id", type=int)
@click.argument("page_number", type=int)
@click.argument("text_file", type=click.Path(exists=True, dir_okay=False))
@click.option("-a", "--audio", type=click.Path(), default=None, help="Narration audio for the page")
@click.option(
    "-g", "--granularity",
    type=KIND_CHOICE,
    default=None,
    help=f"Fragment granularity (default: {config.granularity})",
)
@click.option("-l", "--language", default=None, help=f"Aligner language (default: {config.language})")
@click.pass_context
@reports_errors
def seed(
    ctx: click.Context,
    job_id: int,
    page_number: int,
    text_file: str,
    audio: Optional[str],
    granularity: Optional[str],
    language: Optional[str],
):
    """
    Create a transcript from a page's plain text.
    """
    text = Path(text_file).read_text(encoding="utf-8")
    transcript = _service(ctx).create_from_page_text(
        job_id,
        page_number,
        text,
        audio_path=audio,
        granularity=granularity,
        language=language,
    )
    logger.success(f"Created transcript with {len(transcript.fragments)} fragments")


@cli.command()
@click.argument("job_id", type=int)
@click.argument("page_number", type=int)
@click.argument("fragment_id")
@click.argument("text")
@click.pass_context
@reports_errors
def edit(ctx: click.Context, job_id: int, page_number: int, fragment_id: str, text: str):
    """
    Replace the text of one fragment.
    """
    transcript = _service(ctx).update_fragment_text(job_id, page_number, fragment_id, text)
    logger.success(f"Updated {fragment_id} ({transcript.state.value})")
    if transcript.metadata.text_edited:
        logger.info("Timings are stale until the page is realigned")


@cli.command(name="batch-edit")
@click.argument("job_id", type=int)
@click.argument("page_number", type=int)
@click.argument("updates_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
@reports_errors
def batch_edit(ctx: click.Context, job_id: int, page_number: int, updates_file: str):
    """
    Apply a JSON list of {"id", "text"} edits as one unit.
    """
    updates = _read_json(updates_file)
    if not isinstance(updates, list):
        raise click.BadParameter("updates file must contain a JSON list")
    _service(ctx).batch_update(job_id, page_number, updates)
    logger.success(f"Applied {len(updates)} edit(s)")


@cli.command()
@click.argument("job_id", type=int)
@click.argument("page_number", type=int)
@click.option("-a", "--audio", type=click.Path(), default=None, help="Audio file (default: the transcript's)")
@click.option("-l", "--language", default=None, help="Aligner language")
@click.option(
    "-t", "--timeout",
    type=float,
    default=None,
    help=f"Seconds before the aligner is killed, 0 for no limit (default: {config.get('aligner', 'timeout')})",
)
@click.pass_context
@reports_errors
def realign(
    ctx: click.Context,
    job_id: int,
    page_number: int,
    audio: Optional[str],
    language: Optional[str],
    timeout: Optional[float],
):
    """
    Re-run forced alignment for a page with its current text.
    """
    logger.header(f"Realigning job {job_id}, page {page_number}")
    transcript = _service(ctx).realign(
        job_id,
        page_number,
        audio_file=audio,
        language=language,
        timeout=timeout,
    )
    logger.info(f"Duration: {transcript.duration:.3f} seconds")


@cli.command()
@click.argument("job_id", type=int)
@click.argument("records_file", type=click.Path(exists=True, dir_okay=False))
@click.option("-a", "--audio", type=click.Path(), default=None, help="Narration audio for the pages")
@click.option("-p", "--page", "page_number", type=int, default=None, help="Only migrate this page")
@click.option("--overwrite", is_flag=True, help="Replace existing transcripts")
@click.pass_context
@reports_errors
def migrate(
    ctx: click.Context,
    job_id: int,
    records_file: str,
    audio: Optional[str],
    page_number: Optional[int],
    overwrite: bool,
):
    """
    Seed transcripts from legacy flat sync records (JSON list).
    """
    records = _read_json(records_file)
    if not isinstance(records, list):
        raise click.BadParameter("records file must contain a JSON list")
    transcripts = _service(ctx).initialize_from_existing_sync(
        job_id,
        records,
        audio,
        page_number=page_number,
        overwrite=overwrite,
    )
    for transcript in transcripts:
        logger.info(f"Page {transcript.page_number}: {len(transcript.fragments)} fragments ({transcript.state.value})")


@cli.command()
@click.argument("job_id", type=int)
@click.option(
    "-o", "--output",
    type=click.Path(file_okay=False),
    default=None,
    help="Output directory (default: output/job_<id>)",
)
@click.option("-k", "--kind", "kinds", type=KIND_CHOICE, multiple=True, help="Only render these fragment kinds")
@click.pass_context
@reports_errors
def export(ctx: click.Context, job_id: int, output: Optional[str], kinds: Tuple[str, ...]):
    """
    Write XHTML + SMIL page files for every aligned page.
    """
    logger.header(f"Exporting job {job_id}")
    pages = _service(ctx).export_pages(job_id, output_dir=output, kinds=kinds or None)
    changed = sum(1 for p in pages if p.changed)
    logger.info(f"{changed} of {len(pages)} page(s) changed")


@cli.command()
@click.argument("job_id", type=int)
@click.option("-p", "--page", "page_number", type=int, default=None, help="Delete only this page")
@click.pass_context
@reports_errors
def delete(ctx: click.Context, job_id: int, page_number: Optional[int]):
    """
    Delete a page's transcript, or a whole job.
    """
    service = _service(ctx)
    if page_number is not None:
        removed = service.delete_transcript(job_id, page_number)
    else:
        removed = service.delete_job(job_id)

    if removed:
        logger.success("Deleted")
    else:
        logger.info("Nothing to delete")


@cli.command()
@click.argument("text_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--json", "as_json", is_flag=True, help="Print all segments as JSON")
def segment(text_file: str, as_json: bool):
    """
    Show how a text splits into sentences, phrases and words.
    """
    result = segment_text(Path(text_file).read_text(encoding="utf-8"))
    if as_json:
        _echo_json(result.to_dict())
        return

    click.echo(f"Sentences: {result.sentence_count}")
    click.echo(f"Phrases:   {result.phrase_count}")
    click.echo(f"Words:     {result.word_count}")
    for index, sentence in enumerate(result.sentences, start=1):
        click.echo(f"  {index:>3}. {sentence}")


@cli.command()
def info():
    """
    Show configuration and aligner dependencies.
    """
    logger.header("Overlay Sync")

    logger.console.print("[bold]Configuration:[/bold]")
    logger.console.print(f"  Transcripts:   {config.get_path('transcripts')}")
    logger.console.print(f"  Output:        {config.get_path('output')}")
    logger.console.print(f"  Language:      {config.language}")
    logger.console.print(f"  Granularity:   {config.granularity}")
    logger.console.print(f"  Timeout:       {config.aligner_timeout or 'none'}")

    logger.console.print("\n[bold]Dependencies:[/bold]")

    python = config.get("aligner", "python", default="python3")
    tools = {
        python: shutil.which(python),
        "espeak-ng": shutil.which("espeak-ng") or shutil.which("espeak"),
        "ffmpeg": shutil.which("ffmpeg"),
    }

    for tool, path in tools.items():
        status = "[green]OK[/green]" if path else "[red]NOT FOUND[/red]"
        logger.console.print(f"  {tool:<12} {status}")


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
