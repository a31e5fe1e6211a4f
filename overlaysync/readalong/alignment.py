"""
Alignment Adapter

Re-derives fragment timings from the forced aligner while preserving
fragment identity:

1. pick the fragments the aligner sees and derive one whitespace-normalized
   line per fragment
2. run the aligner port on (audio, text file, language)
3. map the i-th aligned segment onto the i-th of those fragments
4. derive timings for the fragments nested in them (words inside a
   sentence, or a sentence around its words)

Only ``start_time``/``end_time`` change. Any failure leaves the stored
transcript exactly as it was.
"""

import os
from pathlib import Path
from typing import List, Optional, Tuple, Union

from overlaysync.readalong.aligner import AlignedSegment, AlignmentPort
from overlaysync.readalong.errors import AlignmentError, PageKey, ValidationError
from overlaysync.readalong.transcript import Fragment, FragmentKind, Transcript, normalize_text, now_iso
from overlaysync.readalong.transcript_store import TranscriptStore
from overlaysync.utils import logger
from overlaysync.utils.config import config


def nest_fragments(transcript: Transcript) -> List[Tuple[Fragment, List[Fragment]]]:
    """
    Group the inline (phrase and word) fragments under their sentence or
    paragraph.

    A word belongs to the block whose id its own id extends
    (``page1_p1_s2_w3`` under ``page1_p1_s2``), otherwise to the nearest
    block before it.

    Returns:
        (block, inline children) pairs in reading order
    """
    renderable = transcript.renderable_fragments()
    blocks = [f for f in renderable if not f.kind.is_inline]
    if not blocks:
        return []

    children = {block.id: [] for block in blocks}
    current = blocks[0]
    for fragment in renderable:
        if not fragment.kind.is_inline:
            current = fragment
            continue
        owners = [b for b in blocks if fragment.id.startswith(b.id + "_")]
        owner = max(owners, key=lambda b: len(b.id)) if owners else current
        children[owner.id].append(fragment)

    return [(block, children[block.id]) for block in blocks]


def alignment_targets(transcript: Transcript, granularity: str = "sentence") -> List[Fragment]:
    """
    Fragments sent to the aligner, in reading order.

    A page holding only blocks or only inline fragments aligns all of them.
    A page mixing both (e.g. migrated sentence and word records) aligns the
    blocks, or the inline fragments when ``granularity`` is phrase or word
    and every block has some.
    """
    renderable = transcript.renderable_fragments()
    inline = [f for f in renderable if f.kind.is_inline]
    if not inline or len(inline) == len(renderable):
        return renderable

    if FragmentKind.parse(granularity).is_inline:
        nested = nest_fragments(transcript)
        if all(children for _, children in nested):
            return inline
    return [f for f in renderable if not f.kind.is_inline]


def derive_aligner_text(transcript: Transcript, granularity: str = "sentence") -> str:
    """
    Plain-text aligner input for a transcript.

    One line per aligned fragment with visible text, in fragment order;
    internal whitespace collapsed; no trailing newline and no BOM.
    """
    lines = [normalize_text(f.text) for f in alignment_targets(transcript, granularity)]
    return "\n".join(lines)


def _weight(fragment: Fragment) -> float:
    # Very short words still take a noticeable moment to say
    length = len(normalize_text(fragment.text))
    if length <= 2:
        return max(length, 1.5)
    if length <= 4:
        return length * 1.2
    return float(length)


def split_interval(start: float, end: float, fragments: List[Fragment]) -> None:
    """Share [start, end) among ``fragments`` by text length, back to back."""
    weights = [_weight(f) for f in fragments]
    total = sum(weights)
    cursor = start
    elapsed = 0.0
    for index, (fragment, weight) in enumerate(zip(fragments, weights)):
        elapsed += weight
        fragment.start_time = cursor
        if index == len(fragments) - 1:
            fragment.end_time = end
        else:
            fragment.end_time = round(start + (end - start) * elapsed / total, 3)
        cursor = fragment.end_time


def propagate_timings(transcript: Transcript, aligned: List[Fragment]) -> None:
    """
    Time the fragments nested in the aligned ones, in place.

    Words of an aligned sentence split its interval; a sentence whose
    words were aligned spans them.
    """
    aligned_ids = {f.id for f in aligned}
    for block, children in nest_fragments(transcript):
        if not children:
            continue
        if block.id in aligned_ids:
            split_interval(block.start_time, block.end_time, children)
        elif all(c.id in aligned_ids for c in children):
            block.start_time = min(c.start_time for c in children)
            block.end_time = max(c.end_time for c in children)


def check_audio(audio_path: Optional[Union[str, Path]], page_key: Optional[PageKey] = None) -> Path:
    """
    Make sure the narration file exists and can be read.

    Raises:
        AlignmentError: missing-audio
    """
    if not audio_path:
        raise AlignmentError(AlignmentError.MISSING_AUDIO, "Audio file path not set", page_key)

    path = Path(audio_path)
    if not path.is_file():
        raise AlignmentError(AlignmentError.MISSING_AUDIO, f"Audio file not found: {path}", page_key)
    if not os.access(path, os.R_OK):
        raise AlignmentError(AlignmentError.MISSING_AUDIO, f"Audio file not readable: {path}", page_key)
    try:
        with open(path, "rb") as f:
            if not f.read(1):
                raise AlignmentError(AlignmentError.MISSING_AUDIO, f"Audio file is empty: {path}", page_key)
    except OSError as exc:
        raise AlignmentError(
            AlignmentError.MISSING_AUDIO,
            f"Audio file not readable: {path} ({exc})",
            page_key,
        ) from exc
    return path


def map_alignment(
    transcript: Transcript,
    segments: List[AlignedSegment],
    granularity: str = "sentence",
) -> Transcript:
    """
    Apply aligned segments to a copy of the transcript by position.

    Segments map onto ``alignment_targets``; fragments nested in them get
    derived timings. Fragments without visible text were not sent to the
    aligner and keep their previous timings. Ids and text are never touched.

    Returns:
        A new Transcript; the input is not modified

    Raises:
        AlignmentError: count-mismatch or invalid-interval
    """
    page_key = transcript.page_key
    updated = transcript.copy()
    targets = alignment_targets(updated, granularity)

    if len(segments) != len(targets):
        raise AlignmentError(
            AlignmentError.COUNT_MISMATCH,
            f"Aligner returned {len(segments)} segments for {len(targets)} lines",
            page_key,
        )

    for fragment, segment in zip(targets, segments):
        if segment.begin < 0 or segment.end <= segment.begin:
            raise AlignmentError(
                AlignmentError.INVALID_INTERVAL,
                f"Invalid interval [{segment.begin}, {segment.end}) for fragment {fragment.id}",
                page_key,
            )
        fragment.start_time = segment.begin
        fragment.end_time = segment.end
    propagate_timings(updated, targets)

    try:
        updated.validate()
    except ValidationError as exc:
        raise AlignmentError(AlignmentError.INVALID_INTERVAL, str(exc), page_key) from exc

    return updated


class Realigner:
    """Runs one realignment of a transcript and persists the result."""

    def __init__(self, store: TranscriptStore, aligner: AlignmentPort):
        self.store = store
        self.aligner = aligner

    def realign(
        self,
        transcript: Transcript,
        audio_file: Optional[Union[str, Path]] = None,
        language: Optional[str] = None,
        granularity: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Transcript:
        """
        Refresh all timings of ``transcript`` from the aligner.

        Args:
            transcript: Current stored transcript
            audio_file: Narration to align against (default: the transcript's)
            language: Aligner language code (default: alignment.language)
            granularity: Which fragments of a mixed page are aligned; also
                passed through to the aligner port
            timeout: Seconds before the aligner is killed

        Returns:
            The updated, persisted transcript

        Raises:
            AlignmentError: on any aligner failure; nothing is persisted
            ValidationError: if the transcript has no text to align
        """
        page_key = transcript.page_key
        language = language or transcript.metadata.language or config.language
        granularity = granularity or config.granularity

        audio_path = check_audio(audio_file or transcript.audio_file_path, page_key)

        text = derive_aligner_text(transcript, granularity)
        if not text:
            raise ValidationError("Transcript has no text to align", page_key)
        line_count = text.count("\n") + 1

        logger.step(f"Writing aligner input ({line_count} lines)", 1, 3)
        text_path = self.store.save_text_file(transcript.job_id, transcript.page_number, text)

        logger.step(f"Aligning against {audio_path.name} ({language})", 2, 3)

        try:
            segments = self.aligner.align(
                audio_path,
                text_path,
                language,
                granularity=granularity,
                timeout=timeout,
            )
        except AlignmentError as exc:
            if exc.page_key is None:
                raise AlignmentError(exc.reason, exc.detail, page_key) from exc
            raise

        logger.step(f"Mapping {len(segments)} segments onto fragments", 3, 3)
        updated = map_alignment(transcript, segments, granularity)

        timestamp = now_iso()
        updated.audio_file_path = str(audio_path)
        updated.metadata.updated_at = timestamp
        updated.metadata.last_aligned_at = timestamp
        updated.metadata.aligner_version = getattr(self.aligner, "version", None)
        updated.metadata.alignment_method = getattr(self.aligner, "name", None)
        updated.metadata.language = language
        updated.metadata.text_edited = False

        self.store.save(updated)
        logger.success(f"Transcript realigned (job {transcript.job_id}, page {transcript.page_number})")
        return updated
