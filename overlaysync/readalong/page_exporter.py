"""
Page Exporter Module

Writes the per-page XHTML + SMIL pairs a publication assembler packages, plus
a stylesheet and an ``overlays.json`` summary (page files and durations, for
the package's ``media:duration`` metadata). Every pair is checked for the
cross-reference invariant before it is written.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from overlaysync.readalong.errors import PageKey, StorageError, ValidationError
from overlaysync.readalong.smil_generator import format_clock, generate_smil, smil_file_name, timing_ids
from overlaysync.readalong.transcript import FragmentKind, Transcript
from overlaysync.readalong.transcript_store import atomic_write_text
from overlaysync.readalong.xhtml_generator import (
    MEDIA_OVERLAY_CSS,
    generate_xhtml,
    markup_ids,
    page_file_name,
)
from overlaysync.utils import logger
from overlaysync.utils.config import config

SUMMARY_FILE = "overlays.json"


@dataclass
class PageFiles:
    """Files written for one page."""

    page_number: int
    xhtml_file: str
    smil_file: str
    duration: float
    fragment_count: int
    changed: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pageNumber": self.page_number,
            "xhtml": self.xhtml_file,
            "smil": self.smil_file,
            "duration": format_clock(self.duration),
            "fragmentCount": self.fragment_count,
        }


def check_cross_references(xhtml: str, smil: str, page_key: Optional[PageKey] = None) -> None:
    """
    Verify that the SMIL references exactly the XHTML element ids.

    Raises:
        ValidationError: on any difference in id sets or counts
    """
    markup = markup_ids(xhtml)
    timing = timing_ids(smil)
    if len(markup) != len(timing) or set(markup) != set(timing):
        missing = sorted(set(markup) - set(timing))
        dangling = sorted(set(timing) - set(markup))
        raise ValidationError(
            f"XHTML/SMIL id mismatch: {len(markup)} elements vs {len(timing)} references "
            f"(not timed: {missing[:5]}, dangling: {dangling[:5]})",
            page_key,
        )


def default_audio_href(transcript: Transcript, audio_dir: Optional[str] = None) -> str:
    """Audio path inside the package, e.g. ``audio/page_1.mp3``."""
    if not transcript.audio_file_path:
        raise ValidationError("Transcript has no audio file", transcript.page_key)
    audio_dir = audio_dir if audio_dir is not None else config.get("epub", "audio_dir", default="audio")
    name = Path(transcript.audio_file_path).name
    return f"{audio_dir}/{name}" if audio_dir else name


def render_page(
    transcript: Transcript,
    audio_href: Optional[str] = None,
    title: Optional[str] = None,
    css_href: Optional[str] = None,
    kinds: Optional[Iterable[FragmentKind]] = None,
) -> Tuple[str, str]:
    """
    Generate the XHTML and SMIL documents for one page.

    Returns:
        (xhtml, smil), already checked against each other

    Raises:
        ValidationError: if the transcript is malformed or cannot be rendered
    """
    transcript.validate()
    kinds = list(kinds) if kinds else None
    css_href = css_href if css_href is not None else config.get("epub", "css_href", default="styles.css")
    xhtml = generate_xhtml(transcript, title=title, css_href=css_href, kinds=kinds)
    smil = generate_smil(
        transcript,
        page_file_name(transcript.page_number),
        audio_href or default_audio_href(transcript),
        kinds=kinds,
    )
    check_cross_references(xhtml, smil, transcript.page_key)
    return xhtml, smil


def clip_duration(
    transcript: Transcript,
    kinds: Optional[Iterable[FragmentKind]] = None,
) -> float:
    """
    Length of audio a page's overlay plays, from its first clip to its last.

    Pages that share one chapter file start at an offset, so this is not the
    page's last end time.
    """
    timed = [f for f in transcript.renderable_fragments(kinds) if f.is_timed]
    if not timed:
        return 0.0
    return max(f.end_time for f in timed) - min(f.start_time for f in timed)


def write_if_changed(path: Path, content: str) -> bool:
    """Atomically write ``content`` unless the file already holds it."""
    try:
        if path.read_text(encoding="utf-8") == content:
            return False
    except FileNotFoundError:
        pass
    except OSError as exc:
        raise StorageError(f"Cannot read {path}: {exc}") from exc
    try:
        atomic_write_text(path, content)
    except OSError as exc:
        raise StorageError(f"Cannot write {path}: {exc}") from exc
    return True


class PageExporter:
    """Writes page files for a set of transcripts into one directory."""

    def __init__(
        self,
        output_dir: Union[str, Path],
        css_href: Optional[str] = None,
        audio_dir: Optional[str] = None,
    ):
        self.output_dir = Path(output_dir)
        self.css_href = css_href if css_href is not None else config.get("epub", "css_href", default="styles.css")
        self.audio_dir = audio_dir

    def render(
        self,
        transcript: Transcript,
        kinds: Optional[Iterable[FragmentKind]] = None,
    ) -> Tuple[str, str]:
        audio_href = default_audio_href(transcript, self.audio_dir)
        return render_page(transcript, audio_href=audio_href, css_href=self.css_href, kinds=kinds)

    def write_page(
        self,
        transcript: Transcript,
        xhtml: str,
        smil: str,
        kinds: Optional[Iterable[FragmentKind]] = None,
    ) -> PageFiles:
        """Write an already rendered page pair."""
        xhtml_name = page_file_name(transcript.page_number)
        smil_name = smil_file_name(transcript.page_number)
        changed = write_if_changed(self.output_dir / xhtml_name, xhtml)
        changed = write_if_changed(self.output_dir / smil_name, smil) or changed

        return PageFiles(
            page_number=transcript.page_number,
            xhtml_file=xhtml_name,
            smil_file=smil_name,
            duration=clip_duration(transcript, kinds),
            fragment_count=len(transcript.renderable_fragments(kinds)),
            changed=changed,
        )

    def export_page(
        self,
        transcript: Transcript,
        kinds: Optional[Iterable[FragmentKind]] = None,
    ) -> PageFiles:
        """Render and write one page."""
        xhtml, smil = self.render(transcript, kinds)
        return self.write_page(transcript, xhtml, smil, kinds)

    def export(
        self,
        transcripts: Iterable[Transcript],
        kinds: Optional[Iterable[FragmentKind]] = None,
    ) -> List[PageFiles]:
        """
        Export every aligned transcript; unaligned pages are skipped.

        All pages are rendered and checked before the first file is written,
        so a page that cannot be rendered leaves the output directory as it
        was.

        Args:
            transcripts: Transcripts to export, in page order
            kinds: Restrict output to these fragment kinds

        Returns:
            PageFiles for each exported page
        """
        transcripts = sorted(transcripts, key=lambda t: t.page_number)
        kinds = list(kinds) if kinds else None

        rendered = []
        for transcript in transcripts:
            if not transcript.is_aligned:
                logger.warning(
                    f"Skipping page {transcript.page_number}: not aligned "
                    f"({transcript.state.value})"
                )
                continue
            rendered.append((transcript, *self.render(transcript, kinds)))

        self.output_dir.mkdir(parents=True, exist_ok=True)
        pages = []
        with logger.create_progress() as progress:
            task = progress.add_task("Writing page files", total=len(rendered))
            for transcript, xhtml, smil in rendered:
                pages.append(self.write_page(transcript, xhtml, smil, kinds))
                progress.advance(task)

        write_if_changed(self.output_dir / "styles.css", MEDIA_OVERLAY_CSS)
        self.write_summary(pages)
        logger.success(f"Exported {len(pages)} page(s) to {self.output_dir}")
        return pages

    def write_summary(self, pages: List[PageFiles]) -> Path:
        """Write overlays.json describing the exported pages."""
        total = sum(p.duration for p in pages)
        summary = {
            "pageCount": len(pages),
            "totalDuration": format_clock(total),
            "pages": [p.to_dict() for p in pages],
        }
        path = self.output_dir / SUMMARY_FILE
        write_if_changed(path, json.dumps(summary, indent=2, ensure_ascii=False) + "\n")
        return path
