"""
SMIL Generator

Renders a transcript into an EPUB3 media overlay document: one ``<par>`` per
fragment pairing ``{page file}#{fragment id}`` with an audio clip.

All clip values use one clock format, ``H:MM:SS.mmm``.
"""

import xml.etree.ElementTree as ET
from typing import Iterable, List, Optional
from xml.sax.saxutils import quoteattr

from overlaysync.readalong.errors import ValidationError
from overlaysync.readalong.transcript import FragmentKind, Transcript
from overlaysync.readalong.xhtml_generator import EPUB_NS

SMIL_NS = "http://www.w3.org/ns/SMIL"


def smil_file_name(page_number: int) -> str:
    return f"page_{page_number}.smil"


def format_clock(seconds: float) -> str:
    """
    Format seconds as a SMIL full clock value.

    >>> format_clock(3723.5)
    '1:02:03.500'
    """
    if seconds < 0:
        raise ValueError(f"Negative clock value: {seconds}")
    total_ms = int(round(seconds * 1000))
    hours, rest = divmod(total_ms, 3_600_000)
    minutes, rest = divmod(rest, 60_000)
    secs, millis = divmod(rest, 1000)
    return f"{hours}:{minutes:02d}:{secs:02d}.{millis:03d}"


def parse_clock(value: str) -> float:
    """Inverse of format_clock (also accepts ``MM:SS.mmm``)."""
    parts = [float(p) for p in value.split(":")]
    seconds = 0.0
    for part in parts:
        seconds = seconds * 60 + part
    return round(seconds, 3)


def generate_smil(
    transcript: Transcript,
    xhtml_href: str,
    audio_href: str,
    kinds: Optional[Iterable[FragmentKind]] = None,
) -> str:
    """
    Generate the media overlay document for one page.

    Args:
        transcript: Source transcript; every rendered fragment must be timed
        xhtml_href: Page file the text references point into
        audio_href: Audio source, relative to the SMIL file
        kinds: Restrict output to these fragment kinds (same as the XHTML)

    Returns:
        SMIL document text; identical for identical transcripts

    Raises:
        ValidationError: if a rendered fragment has no timings, or nothing
            would be rendered
    """
    fragments = transcript.renderable_fragments(kinds)
    if not fragments:
        raise ValidationError("Transcript has no fragments to render", transcript.page_key)

    untimed = [f.id for f in fragments if not f.is_timed]
    if untimed:
        raise ValidationError(
            f"Fragments without timings: {', '.join(untimed[:5])}"
            f"{' ...' if len(untimed) > 5 else ''}; realign before generating SMIL",
            transcript.page_key,
        )

    ordered = sorted(fragments, key=lambda f: f.start_time)
    audio_attr = quoteattr(audio_href)

    par_lines = []
    for fragment in ordered:
        par_lines.extend([
            f"      <par id={quoteattr('par_' + fragment.id)}>",
            f"        <text src={quoteattr(xhtml_href + '#' + fragment.id)}/>",
            f"        <audio src={audio_attr}"
            f" clipBegin=\"{format_clock(fragment.start_time)}\""
            f" clipEnd=\"{format_clock(fragment.end_time)}\"/>",
            "      </par>",
        ])

    lines = [
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>",
        f"<smil xmlns=\"{SMIL_NS}\" xmlns:epub=\"{EPUB_NS}\" version=\"3.0\">",
        "  <body>",
        f"    <seq id={quoteattr('seq_page_' + str(transcript.page_number))} epub:textref={quoteattr(xhtml_href)}>",
        *par_lines,
        "    </seq>",
        "  </body>",
        "</smil>",
    ]
    return "\n".join(lines) + "\n"


def timing_ids(smil: str) -> List[str]:
    """Fragment ids referenced by the ``<text>`` elements, in document order."""
    try:
        root = ET.fromstring(smil.encode("utf-8"))
    except ET.ParseError as exc:
        raise ValidationError(f"Generated SMIL is not well-formed: {exc}") from exc
    ids = []
    for text_el in root.iter(f"{{{SMIL_NS}}}text"):
        src = text_el.get("src", "")
        _, _, fragment_id = src.partition("#")
        ids.append(fragment_id)
    return ids
