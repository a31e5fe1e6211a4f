"""
Read-Along Synchronization Module

Keeps EPUB3 media overlays in sync with edited transcripts. A transcript per
page is the single source of truth; XHTML markup and SMIL timing files are
regenerated from it, and forced alignment refreshes timings without changing
fragment ids.
"""

from overlaysync.readalong.aligner import AeneasAligner, AlignedSegment, AlignmentPort
from overlaysync.readalong.alignment import Realigner, derive_aligner_text, map_alignment
from overlaysync.readalong.errors import (
    AlignmentError,
    NotFoundError,
    OverlaySyncError,
    StorageError,
    ValidationError,
)
from overlaysync.readalong.page_exporter import PageExporter, PageFiles, render_page
from overlaysync.readalong.smil_generator import format_clock, generate_smil
from overlaysync.readalong.sync_service import TranscriptService
from overlaysync.readalong.text_segmenter import TextSegmenter, build_fragments, segment
from overlaysync.readalong.transcript import (
    Fragment,
    FragmentKind,
    Transcript,
    TranscriptMetadata,
    TranscriptState,
)
from overlaysync.readalong.transcript_store import TranscriptStore
from overlaysync.readalong.xhtml_generator import generate_xhtml

__all__ = [
    "AeneasAligner",
    "AlignedSegment",
    "AlignmentPort",
    "Realigner",
    "derive_aligner_text",
    "map_alignment",
    "AlignmentError",
    "NotFoundError",
    "OverlaySyncError",
    "StorageError",
    "ValidationError",
    "PageExporter",
    "PageFiles",
    "render_page",
    "format_clock",
    "generate_smil",
    "TranscriptService",
    "TextSegmenter",
    "build_fragments",
    "segment",
    "Fragment",
    "FragmentKind",
    "Transcript",
    "TranscriptMetadata",
    "TranscriptState",
    "TranscriptStore",
    "generate_xhtml",
]
