"""
XHTML Generator

Renders a transcript into an XHTML content document with one addressable
element per fragment. Element ids are the fragment ids verbatim, so the SMIL
file generated from the same transcript can point at them.

Sentences and paragraphs become ``<p>`` elements; runs of consecutive phrase
or word fragments become ``<span>`` elements grouped in an id-less ``<p>``.
"""

import xml.etree.ElementTree as ET
from typing import Iterable, List, Optional
from xml.sax.saxutils import escape, quoteattr

from overlaysync.readalong.errors import ValidationError
from overlaysync.readalong.transcript import FragmentKind, Transcript, normalize_text

XHTML_NS = "http://www.w3.org/1999/xhtml"
EPUB_NS = "http://www.idpf.org/2007/ops"

MEDIA_OVERLAY_CSS = """/* EPUB3 media overlay styles */
body {
  font-family: serif;
  line-height: 1.6;
  margin: 1em;
}

p {
  margin: 0.5em 0;
}

.-epub-media-overlay-active {
  background-color: #ffff00;
  color: #000000;
}

.-epub-media-overlay-playing {
  background-color: #ffcc00;
}
"""


def page_file_name(page_number: int) -> str:
    return f"page_{page_number}.xhtml"


def _element(fragment) -> str:
    tag = "span" if fragment.kind.is_inline else "p"
    css_class = f"fragment-type-{fragment.kind.value}"
    text = escape(normalize_text(fragment.text))
    return f"<{tag} id={quoteattr(fragment.id)} class=\"{css_class}\">{text}</{tag}>"


def generate_xhtml(
    transcript: Transcript,
    title: Optional[str] = None,
    css_href: Optional[str] = "styles.css",
    kinds: Optional[Iterable[FragmentKind]] = None,
    lang: Optional[str] = None,
) -> str:
    """
    Generate the XHTML document for one page.

    Args:
        transcript: Source transcript
        title: Document title (default: "Page N")
        css_href: Stylesheet link, or None for no link
        kinds: Restrict output to these fragment kinds
        lang: Optional BCP 47 language tag for the root element

    Returns:
        XHTML document text; identical for identical transcripts

    Raises:
        ValidationError: if no fragment would be rendered
    """
    fragments = transcript.renderable_fragments(kinds)
    if not fragments:
        raise ValidationError("Transcript has no fragments to render", transcript.page_key)

    title = title if title is not None else f"Page {transcript.page_number}"

    body_lines = []
    inline_run: List[str] = []

    def flush_inline():
        if inline_run:
            body_lines.append(f"    <p class=\"fragment-group\">{' '.join(inline_run)}</p>")
            inline_run.clear()

    for fragment in fragments:
        if fragment.kind.is_inline:
            inline_run.append(_element(fragment))
            continue
        flush_inline()
        body_lines.append(f"    {_element(fragment)}")
    flush_inline()

    lang_attrs = f" lang={quoteattr(lang)} xml:lang={quoteattr(lang)}" if lang else ""
    head_lines = [
        "    <meta charset=\"UTF-8\"/>",
        f"    <title>{escape(title)}</title>",
    ]
    if css_href:
        head_lines.append(f"    <link rel=\"stylesheet\" type=\"text/css\" href={quoteattr(css_href)}/>")

    lines = [
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>",
        "<!DOCTYPE html>",
        f"<html xmlns=\"{XHTML_NS}\" xmlns:epub=\"{EPUB_NS}\"{lang_attrs}>",
        "  <head>",
        *head_lines,
        "  </head>",
        "  <body>",
        *body_lines,
        "  </body>",
        "</html>",
    ]
    return "\n".join(lines) + "\n"


def markup_ids(xhtml: str) -> List[str]:
    """Ids of all addressable elements in the body, in document order."""
    try:
        root = ET.fromstring(xhtml.encode("utf-8"))
    except ET.ParseError as exc:
        raise ValidationError(f"Generated XHTML is not well-formed: {exc}") from exc
    body = root.find(f"{{{XHTML_NS}}}body")
    if body is None:
        return []
    return [el.get("id") for el in body.iter() if el.get("id") is not None]
