"""
Transcript Model

A transcript is the single source of truth for one page/chapter: the ordered
fragments (stable ids, current text, audio timings) plus alignment metadata.
XHTML and SMIL are always regenerated from it, never edited directly.
"""

import copy
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from overlaysync.readalong.errors import ValidationError

_ID_FORBIDDEN = re.compile(r"[\s#]")
_WHITESPACE = re.compile(r"\s+")
# Code points XML 1.0 does not allow in documents
_XML_ILLEGAL = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\ud800-\udfff\ufffe\uffff]")


class FragmentKind(str, Enum):
    """Granularity of a fragment; decides nesting and highlight level."""

    SENTENCE = "sentence"
    PHRASE = "phrase"
    WORD = "word"
    PARAGRAPH = "paragraph"

    @classmethod
    def parse(cls, value: Any) -> "FragmentKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(k.value for k in cls)
            raise ValidationError(f"Unknown fragment kind {value!r} (expected one of: {allowed})")

    @property
    def is_inline(self) -> bool:
        return self in (FragmentKind.PHRASE, FragmentKind.WORD)


class TranscriptState(str, Enum):
    SEEDED = "seeded"
    ALIGNED = "aligned"
    EDITED = "edited"


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def normalize_text(text: str) -> str:
    """Collapse internal whitespace to single spaces and trim."""
    return _WHITESPACE.sub(" ", text).strip()


def strip_xml_illegal(text: str) -> str:
    """Drop control characters that cannot appear in an XML document."""
    return _XML_ILLEGAL.sub("", text)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class Fragment:
    """Atomic sync unit: one addressable, independently timed piece of text."""

    id: str
    text: str
    kind: FragmentKind = FragmentKind.SENTENCE
    start_time: Optional[float] = None  # seconds, from the last alignment run
    end_time: Optional[float] = None

    @property
    def is_timed(self) -> bool:
        return self.start_time is not None and self.end_time is not None

    @property
    def is_renderable(self) -> bool:
        """Fragments with no visible text are never sent to the aligner or rendered."""
        return isinstance(self.text, str) and bool(normalize_text(self.text))

    @property
    def duration(self) -> Optional[float]:
        if not self.is_timed:
            return None
        return self.end_time - self.start_time

    def validate(self, index: int = 0) -> None:
        """Raise ValidationError if this fragment is malformed."""
        label = f"Fragment {index}"
        if not isinstance(self.id, str) or not self.id:
            raise ValidationError(f"{label}: missing or invalid id")
        if _ID_FORBIDDEN.search(self.id) or _XML_ILLEGAL.search(self.id):
            raise ValidationError(f"{label}: id {self.id!r} must not contain whitespace, control characters or '#'")
        if not isinstance(self.text, str):
            raise ValidationError(f"{label} ({self.id}): text must be a string")
        illegal = _XML_ILLEGAL.search(self.text)
        if illegal:
            raise ValidationError(
                f"{label} ({self.id}): text contains a character not allowed in XML "
                f"(U+{ord(illegal.group()):04X})"
            )
        if not isinstance(self.kind, FragmentKind):
            raise ValidationError(f"{label} ({self.id}): unknown kind {self.kind!r}")

        if self.start_time is None and self.end_time is None:
            return
        if self.start_time is None or self.end_time is None:
            raise ValidationError(f"{label} ({self.id}): startTime and endTime must be set together")
        if not _is_number(self.start_time) or self.start_time < 0:
            raise ValidationError(f"{label} ({self.id}): startTime must be a non-negative number")
        if not _is_number(self.end_time) or self.end_time <= self.start_time:
            raise ValidationError(f"{label} ({self.id}): endTime must be greater than startTime")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON persistence."""
        return {
            "id": self.id,
            "text": self.text,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "type": self.kind.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: int = 0) -> "Fragment":
        if not isinstance(data, dict):
            raise ValidationError(f"Fragment {index}: must be an object")
        start = data.get("startTime")
        end = data.get("endTime")
        # Records written by the legacy pipeline used 0/0 for "not aligned yet"
        if start == 0 and end == 0:
            start = end = None
        return cls(
            id=data.get("id"),
            text=data.get("text"),
            kind=FragmentKind.parse(data.get("type", FragmentKind.SENTENCE.value)),
            start_time=start,
            end_time=end,
        )


@dataclass
class TranscriptMetadata:
    """Bookkeeping for a transcript; never rendered into the publication."""

    created_at: str = ""
    updated_at: str = ""
    last_aligned_at: Optional[str] = None
    aligner_version: Optional[str] = None
    language: str = "eng"
    alignment_method: Optional[str] = None
    text_edited: bool = False
    source: str = "page_text"
    extra: Dict[str, Any] = field(default_factory=dict)

    _KEYS = (
        "createdAt",
        "updatedAt",
        "lastAlignedAt",
        "alignerVersion",
        "language",
        "alignmentMethod",
        "textEdited",
        "source",
    )

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update({
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "lastAlignedAt": self.last_aligned_at,
            "alignerVersion": self.aligner_version,
            "language": self.language,
            "alignmentMethod": self.alignment_method,
            "textEdited": self.text_edited,
            "source": self.source,
        })
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TranscriptMetadata":
        data = dict(data or {})
        # Older records name the aligner after the tool
        if "alignerVersion" not in data and "aeneasVersion" in data:
            data["alignerVersion"] = data.pop("aeneasVersion")
        extra = {k: v for k, v in data.items() if k not in cls._KEYS}
        return cls(
            created_at=data.get("createdAt", ""),
            updated_at=data.get("updatedAt", ""),
            last_aligned_at=data.get("lastAlignedAt"),
            aligner_version=data.get("alignerVersion"),
            language=data.get("language", "eng"),
            alignment_method=data.get("alignmentMethod"),
            text_edited=bool(data.get("textEdited", False)),
            source=data.get("source", "page_text"),
            extra=extra,
        )


@dataclass
class Transcript:
    """All fragments of one page plus its audio reference and metadata."""

    job_id: int
    page_number: int
    audio_file_path: Optional[str]
    fragments: List[Fragment] = field(default_factory=list)
    metadata: TranscriptMetadata = field(default_factory=TranscriptMetadata)

    @property
    def page_key(self) -> Tuple[int, int]:
        return (self.job_id, self.page_number)

    @property
    def fragment_ids(self) -> List[str]:
        return [f.id for f in self.fragments]

    def get_fragment(self, fragment_id: str) -> Optional[Fragment]:
        for fragment in self.fragments:
            if fragment.id == fragment_id:
                return fragment
        return None

    def renderable_fragments(
        self,
        kinds: Optional[Iterable[FragmentKind]] = None,
    ) -> List[Fragment]:
        """
        Fragments that appear in generated output, in reading order.

        Both the XHTML and the SMIL generator select fragments through this
        method, so the two outputs always reference the same ids.
        """
        wanted = {FragmentKind.parse(k) for k in kinds} if kinds else None
        return [
            f for f in self.fragments
            if f.is_renderable and (wanted is None or f.kind in wanted)
        ]

    @property
    def is_aligned(self) -> bool:
        renderable = self.renderable_fragments()
        return bool(renderable) and all(f.is_timed for f in renderable)

    @property
    def state(self) -> TranscriptState:
        if self.metadata.text_edited:
            return TranscriptState.EDITED
        if self.is_aligned:
            return TranscriptState.ALIGNED
        return TranscriptState.SEEDED

    @property
    def duration(self) -> float:
        """End of the last timed fragment, in seconds."""
        ends = [f.end_time for f in self.renderable_fragments() if f.is_timed]
        return max(ends) if ends else 0.0

    def copy(self) -> "Transcript":
        return copy.deepcopy(self)

    def validate(self) -> None:
        """
        Check every invariant that must hold before the transcript is persisted.

        Raises:
            ValidationError: describing the first violation found
        """
        if not _is_number(self.job_id) or not _is_number(self.page_number):
            raise ValidationError("Transcript jobId and pageNumber must be numbers")
        if not isinstance(self.fragments, list):
            raise ValidationError("Transcript must have a fragments list")

        seen = set()
        for index, fragment in enumerate(self.fragments):
            if not isinstance(fragment, Fragment):
                raise ValidationError(f"Fragment {index}: not a Fragment")
            fragment.validate(index)
            if fragment.id in seen:
                raise ValidationError(f"Fragment {index}: duplicate id {fragment.id!r}")
            seen.add(fragment.id)

        timed = [f for f in self.renderable_fragments() if f.is_timed]

        previous = None
        for fragment in timed:
            if previous is not None and fragment.start_time < previous.start_time:
                raise ValidationError(
                    f"Fragment {fragment.id} starts before {previous.id}; "
                    "fragments must be in playback order"
                )
            previous = fragment

        last_by_kind: Dict[FragmentKind, Fragment] = {}
        for fragment in timed:
            prior = last_by_kind.get(fragment.kind)
            if prior is not None and fragment.start_time < prior.end_time:
                raise ValidationError(
                    f"Fragments {prior.id} and {fragment.id} overlap in time"
                )
            last_by_kind[fragment.kind] = fragment

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the persisted record shape."""
        return {
            "jobId": self.job_id,
            "pageNumber": self.page_number,
            "audioFilePath": self.audio_file_path,
            "fragments": [f.to_dict() for f in self.fragments],
            "metadata": self.metadata.to_dict(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False) + "\n"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transcript":
        if not isinstance(data, dict):
            raise ValidationError("Transcript data must be an object")
        fragments = data.get("fragments")
        if not isinstance(fragments, list):
            raise ValidationError("Transcript must have a fragments array")
        return cls(
            job_id=data.get("jobId"),
            page_number=data.get("pageNumber"),
            audio_file_path=data.get("audioFilePath"),
            fragments=[Fragment.from_dict(f, i) for i, f in enumerate(fragments)],
            metadata=TranscriptMetadata.from_dict(data.get("metadata")),
        )
