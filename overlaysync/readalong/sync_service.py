"""
Synchronization Service

Orchestrates the edit -> realign -> persist cycle for transcripts:

1. Seed a transcript from page text or from legacy flat sync records
2. Edit fragment text (single or batch); timings stay until the next realign
3. Re-run forced alignment with the edited text; only timings change
4. Render XHTML/SMIL from the stored transcript

Every operation is a read-modify-write against the store, performed under
that page's lock. Nothing is cached between calls.
"""

import contextlib
import shutil
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from overlaysync.readalong.aligner import AeneasAligner, AlignmentPort
from overlaysync.readalong.alignment import Realigner
from overlaysync.readalong.errors import NotFoundError, StorageError, ValidationError
from overlaysync.readalong.page_exporter import PageExporter, PageFiles, render_page
from overlaysync.readalong.text_segmenter import build_fragments, infer_kind
from overlaysync.readalong.transcript import (
    Fragment,
    FragmentKind,
    Transcript,
    TranscriptMetadata,
    now_iso,
    strip_xml_illegal,
)
from overlaysync.readalong.transcript_store import TranscriptStore
from overlaysync.utils import logger
from overlaysync.utils.config import config


def _fragment_from_record(record: Mapping[str, Any], index: int) -> Fragment:
    """Convert one legacy flat sync record into a fragment, keeping its id."""
    block_id = record.get("block_id")
    if block_id:
        fragment_id = str(block_id)
    elif record.get("id") is not None:
        fragment_id = f"fragment_{record['id']}"
    else:
        raise ValidationError(f"Sync record {index}: needs a block_id or id")

    text = strip_xml_illegal(str(record.get("custom_text") or record.get("text") or ""))
    start = record.get("start_time") or 0
    end = record.get("end_time") or 0

    fragment = Fragment(
        id=fragment_id,
        text=str(text).strip(),
        kind=infer_kind(block_id),
    )
    # Records that were never aligned carry 0/0; keep them untimed
    if isinstance(start, (int, float)) and isinstance(end, (int, float)) and 0 <= start < end:
        fragment.start_time = float(start)
        fragment.end_time = float(end)
    return fragment


class TranscriptService:
    """Entry point for collaborators working with transcripts."""

    def __init__(
        self,
        store: Optional[TranscriptStore] = None,
        aligner: Optional[AlignmentPort] = None,
    ):
        """
        Initialize the service.

        Args:
            store: Transcript repository (default: configured transcripts dir)
            aligner: Alignment port (default: aeneas subprocess)
        """
        self.store = store or TranscriptStore()
        self.aligner = aligner or AeneasAligner()
        self.realigner = Realigner(self.store, self.aligner)

    # -- reads ---------------------------------------------------------------

    def get_transcript(self, job_id: int, page_number: int) -> Transcript:
        """Load a transcript or raise NotFoundError."""
        return self.store.require(job_id, page_number)

    def get_transcript_for_editing(self, job_id: int, page_number: int) -> Dict[str, Any]:
        """Transcript view for an editing UI, with durations and capabilities."""
        transcript = self.store.require(job_id, page_number)
        return {
            "jobId": transcript.job_id,
            "pageNumber": transcript.page_number,
            "audioFilePath": transcript.audio_file_path,
            "fragments": [
                {**f.to_dict(), "duration": f.duration}
                for f in transcript.fragments
            ],
            "metadata": transcript.metadata.to_dict(),
            "state": transcript.state.value,
            "canEdit": True,
            "canRealign": bool(transcript.audio_file_path),
        }

    def list_transcripts(self, job_id: int) -> Dict[int, Dict[str, Any]]:
        """Summaries of every transcript of a job, keyed by page number."""
        summaries = OrderedDict()
        for page_number, transcript in self.store.load_all(job_id).items():
            summaries[page_number] = {
                "pageNumber": page_number,
                "fragmentCount": len(transcript.fragments),
                "hasAudio": bool(transcript.audio_file_path),
                "lastUpdated": transcript.metadata.updated_at,
                "textEdited": transcript.metadata.text_edited,
                "state": transcript.state.value,
            }
        return summaries

    # -- seeding -------------------------------------------------------------

    def create_from_page_text(
        self,
        job_id: int,
        page_number: int,
        text: str,
        audio_path: Optional[str] = None,
        granularity: Optional[str] = None,
        language: Optional[str] = None,
    ) -> Transcript:
        """
        Seed a new, untimed transcript from plain page text.

        Raises:
            ValidationError: if the page already has a transcript or the text
                yields no fragments
        """
        page_key = (job_id, page_number)
        granularity = granularity or config.granularity
        fragments = build_fragments(strip_xml_illegal(text or ""), page_number, granularity)
        if not fragments:
            raise ValidationError("Page text yields no fragments", page_key)

        with self.store.lock(job_id, page_number):
            if self.store.exists(job_id, page_number):
                raise ValidationError("Transcript already exists", page_key)

            timestamp = now_iso()
            transcript = Transcript(
                job_id=job_id,
                page_number=page_number,
                audio_file_path=str(audio_path) if audio_path else None,
                fragments=fragments,
                metadata=TranscriptMetadata(
                    created_at=timestamp,
                    updated_at=timestamp,
                    language=language or config.language,
                    source="page_text",
                ),
            )
            self.store.save(transcript)

        logger.info(f"Seeded job {job_id}, page {page_number} with {len(fragments)} {granularity} fragments")
        return transcript

    def initialize_from_existing_sync(
        self,
        job_id: int,
        records: Iterable[Mapping[str, Any]],
        audio_path: Optional[str],
        page_number: Optional[int] = None,
        overwrite: bool = False,
    ) -> List[Transcript]:
        """
        Seed transcripts from legacy flat timed records.

        Records are grouped by ``page_number`` and sorted by ``start_time``.
        Ids are taken from ``block_id`` (or derived as ``fragment_<id>``) so
        identities survive the migration; usable timings are preserved.

        Args:
            job_id: Job the records belong to
            records: Dicts with page_number, block_id, id, text, custom_text,
                start_time, end_time
            audio_path: Narration file for the pages
            page_number: Only migrate this page
            overwrite: Replace transcripts that already exist

        Returns:
            The transcripts for every migrated page, in page order

        Raises:
            ValidationError: if any page would be invalid (nothing is written)
        """
        grouped: Dict[int, List[Tuple[int, Mapping[str, Any]]]] = {}
        for index, record in enumerate(records):
            record_page = record.get("page_number")
            if not isinstance(record_page, int) or isinstance(record_page, bool):
                raise ValidationError(f"Sync record {index}: page_number must be an integer")
            if page_number is not None and record_page != page_number:
                continue
            grouped.setdefault(record_page, []).append((index, record))

        timestamp = now_iso()
        transcripts = []
        for page in sorted(grouped):
            ordered = sorted(grouped[page], key=lambda item: item[1].get("start_time") or 0)
            transcript = Transcript(
                job_id=job_id,
                page_number=page,
                audio_file_path=str(audio_path) if audio_path else None,
                fragments=[_fragment_from_record(record, index) for index, record in ordered],
                metadata=TranscriptMetadata(
                    created_at=timestamp,
                    updated_at=timestamp,
                    language=config.language,
                    source="migrated_from_sync_data",
                ),
            )
            transcript.validate()
            transcripts.append(transcript)

        result = []
        for transcript in transcripts:
            with self.store.lock(job_id, transcript.page_number):
                existing = self.store.load(job_id, transcript.page_number)
                if existing is not None and not overwrite:
                    logger.warning(f"Page {transcript.page_number} already has a transcript, keeping it")
                    result.append(existing)
                    continue
                self.store.save(transcript)
                result.append(transcript)

        logger.info(f"Migrated {len(result)} page(s) for job {job_id}")
        return result

    # -- edits ---------------------------------------------------------------

    def update_fragment_text(
        self,
        job_id: int,
        page_number: int,
        fragment_id: str,
        new_text: str,
    ) -> Transcript:
        """
        Replace one fragment's text and mark the transcript as edited.

        Timings are left as they are until the next realignment.

        Raises:
            ValidationError: if new_text is not a string
            NotFoundError: for an unknown page or fragment id
        """
        return self.batch_update(job_id, page_number, [{"id": fragment_id, "text": new_text}])

    def batch_update(
        self,
        job_id: int,
        page_number: int,
        updates: Iterable[Mapping[str, Any]],
    ) -> Transcript:
        """
        Apply several text edits as one unit.

        Either every update is applied and persisted with a single write, or
        none is.

        Raises:
            ValidationError: for malformed updates
            NotFoundError: if any fragment id is unknown
        """
        page_key = (job_id, page_number)
        updates = list(updates)
        if not updates:
            raise ValidationError("Updates must be a non-empty list", page_key)

        new_texts: Dict[str, str] = {}
        for index, update in enumerate(updates):
            if not isinstance(update, Mapping):
                raise ValidationError(f"Update {index}: must be an object with id and text", page_key)
            fragment_id = update.get("id")
            text = update.get("text")
            if not isinstance(fragment_id, str) or not fragment_id:
                raise ValidationError(f"Update {index}: id must be a non-empty string", page_key)
            if not isinstance(text, str):
                raise ValidationError(f"Update {index}: text must be a string", page_key)
            if fragment_id in new_texts:
                raise ValidationError(f"Update {index}: duplicate id {fragment_id!r}", page_key)
            new_texts[fragment_id] = text.strip()

        with self.store.lock(job_id, page_number):
            transcript = self.store.require(job_id, page_number)
            known = set(transcript.fragment_ids)
            missing = [fid for fid in new_texts if fid not in known]
            if missing:
                raise NotFoundError(f"Fragment(s) not found: {', '.join(missing)}", page_key)

            changed = 0
            for fragment in transcript.fragments:
                text = new_texts.get(fragment.id)
                if text is not None and text != fragment.text:
                    fragment.text = text
                    changed += 1

            if not changed:
                return transcript

            transcript.metadata.updated_at = now_iso()
            transcript.metadata.text_edited = True
            self.store.save(transcript)

        logger.info(f"Updated {changed} fragment(s) on job {job_id}, page {page_number}")
        return transcript

    # -- alignment -----------------------------------------------------------

    def realign(
        self,
        job_id: int,
        page_number: int,
        audio_file: Optional[str] = None,
        language: Optional[str] = None,
        granularity: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Transcript:
        """
        Re-run forced alignment for a page with its current text.

        Runs under the page lock, so a page is never realigned concurrently
        with itself or with an edit.

        Args:
            timeout: Seconds before the aligner is killed (default:
                aligner.timeout from config); 0 or less disables it

        Raises:
            NotFoundError: unknown page
            AlignmentError: the transcript is left unchanged
        """
        if timeout is None:
            timeout = config.aligner_timeout
        elif timeout <= 0:
            timeout = None
        with self.store.lock(job_id, page_number):
            transcript = self.store.require(job_id, page_number)
            return self.realigner.realign(
                transcript,
                audio_file=audio_file,
                language=language,
                granularity=granularity,
                timeout=timeout,
            )

    # -- output --------------------------------------------------------------

    def render_page(
        self,
        job_id: int,
        page_number: int,
        audio_href: Optional[str] = None,
        kinds: Optional[Iterable[FragmentKind]] = None,
    ) -> Tuple[str, str]:
        """Generate (xhtml, smil) for one stored page."""
        transcript = self.store.require(job_id, page_number)
        return render_page(transcript, audio_href=audio_href, kinds=kinds)

    def default_export_dir(self, job_id: int) -> Path:
        return config.get_path("output") / f"job_{job_id}"

    def export_pages(
        self,
        job_id: int,
        output_dir: Optional[Union[str, Path]] = None,
        kinds: Optional[Iterable[FragmentKind]] = None,
        audio_dir: Optional[str] = None,
    ) -> List[PageFiles]:
        """Write page files for every aligned transcript of a job."""
        transcripts = self.store.load_all(job_id)
        if not transcripts:
            raise NotFoundError(f"No transcripts found for job {job_id}")
        exporter = PageExporter(output_dir or self.default_export_dir(job_id), audio_dir=audio_dir)
        return exporter.export(transcripts.values(), kinds=kinds)

    # -- deletion ------------------------------------------------------------

    def delete_transcript(self, job_id: int, page_number: int) -> bool:
        """Delete one page's transcript and derived text file; idempotent."""
        with self.store.lock(job_id, page_number):
            return self.store.delete(job_id, page_number)

    def delete_job(self, job_id: int, output_dir: Optional[Union[str, Path]] = None) -> bool:
        """
        Delete every transcript of a job plus its exported page files.

        Returns:
            True if anything was removed; deleting twice is a no-op
        """
        with contextlib.ExitStack() as stack:
            for page_number in self.store.list_pages(job_id):
                stack.enter_context(self.store.lock(job_id, page_number))
            removed = self.store.delete_job(job_id)

        export_dir = Path(output_dir) if output_dir else self.default_export_dir(job_id)
        if export_dir.is_dir():
            try:
                shutil.rmtree(export_dir)
            except OSError as exc:
                raise StorageError(f"Cannot delete {export_dir}: {exc}") from exc
            removed = True

        if removed:
            logger.info(f"Deleted job {job_id}")
        return removed
