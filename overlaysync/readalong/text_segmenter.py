"""
Text Segmenter Module

Splits text into sentences, phrases and words for granular audio sync.
Boundaries come from punctuation only:

- sentences end at a run of ``. ! ?`` (the run stays with its sentence)
- phrases end at a run of ``, ; : — – -`` inside a sentence
- words are maximal runs of word characters; punctuation is dropped

Segmentation is a pure function of its input.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional

from overlaysync.readalong.transcript import Fragment, FragmentKind, normalize_text

SENTENCE_END = re.compile(r"[.!?]+\s*")
PHRASE_DELIMITER = re.compile(r"[,;:—–-]+\s*")
WORD_PATTERN = re.compile(r"\w+")

_SENTENCE_CONTENT = re.compile(r"[^.!?\s]")
_PHRASE_CONTENT = re.compile(r"[^,;:—–\-\s]")


@dataclass
class Segmentation:
    """Result of segmenting one block of text."""

    sentences: List[str] = field(default_factory=list)
    phrases: List[str] = field(default_factory=list)
    words: List[str] = field(default_factory=list)

    @property
    def sentence_count(self) -> int:
        return len(self.sentences)

    @property
    def phrase_count(self) -> int:
        return len(self.phrases)

    @property
    def word_count(self) -> int:
        return len(self.words)

    def to_dict(self):
        return {
            "sentences": list(self.sentences),
            "phrases": list(self.phrases),
            "words": list(self.words),
        }


def _split_on(text: str, boundary: re.Pattern, content: re.Pattern) -> List[str]:
    """
    Cut ``text`` after every boundary match that closes some real content.

    A delimiter run with nothing but whitespace/punctuation before it is kept
    and glued to the following piece instead of becoming a piece of its own.
    Trailing text without a closing delimiter is still emitted.
    """
    pieces = []
    start = 0
    for match in boundary.finditer(text):
        chunk = text[start:match.end()]
        if not content.search(chunk):
            continue
        pieces.append(chunk.strip())
        start = match.end()

    tail = text[start:].strip()
    if tail:
        pieces.append(tail)
    return pieces


def split_sentences(text: str) -> List[str]:
    """Split text into sentences at runs of ``. ! ?``."""
    if not text or not text.strip():
        return []
    return _split_on(text, SENTENCE_END, _SENTENCE_CONTENT)


def split_phrases(sentence: str) -> List[str]:
    """
    Split a sentence into phrases.

    A non-empty sentence always yields at least one phrase: the whole
    sentence when it has no phrase delimiter.
    """
    if not sentence or not sentence.strip():
        return []
    phrases = _split_on(sentence, PHRASE_DELIMITER, _PHRASE_CONTENT)
    return phrases or [sentence.strip()]


def split_words(text: str) -> List[str]:
    """Maximal runs of word characters, punctuation discarded."""
    if not text:
        return []
    return WORD_PATTERN.findall(text)


def split_paragraphs(text: str) -> List[str]:
    """Split text into whitespace-normalized paragraphs on blank lines."""
    if not text:
        return []
    paragraphs = re.split(r"\n\s*\n", text)
    return [normalize_text(p) for p in paragraphs if p.strip()]


def segment(text: str) -> Segmentation:
    """
    Segment text into sentences, phrases and words.

    Args:
        text: Text to segment (may be empty)

    Returns:
        Segmentation with three flat lists; all empty for blank input
    """
    result = Segmentation()
    for sentence in split_sentences(text):
        result.sentences.append(sentence)
        for phrase in split_phrases(sentence):
            result.phrases.append(phrase)
            result.words.extend(split_words(phrase))
    return result


def infer_kind(fragment_id: Optional[str]) -> FragmentKind:
    """Guess a fragment kind from a legacy block id such as ``page1_p2_s3``."""
    if not fragment_id:
        return FragmentKind.SENTENCE
    if "_w" in fragment_id:
        return FragmentKind.WORD
    if "_ph" in fragment_id:
        return FragmentKind.PHRASE
    if "_s" in fragment_id:
        return FragmentKind.SENTENCE
    return FragmentKind.PARAGRAPH


class TextSegmenter:
    """
    Builds untimed fragments with deterministic ids from plain page text.

    Ids follow the ``page{N}_p{P}_s{S}`` scheme so that a page seeded twice
    from the same text gets the same ids.
    """

    def __init__(self, page_number: int, granularity: str = "sentence"):
        """
        Initialize the segmenter.

        Args:
            page_number: Page the fragments belong to (used in ids)
            granularity: sentence, phrase, word or paragraph
        """
        self.page_number = page_number
        self.granularity = FragmentKind.parse(granularity)

    def build_fragments(self, text: str) -> List[Fragment]:
        """
        Split text into fragments at the configured granularity.

        Args:
            text: Full page text; paragraphs separated by blank lines

        Returns:
            List of untimed Fragment objects in reading order
        """
        fragments = []
        prefix = f"page{self.page_number}"

        for p_index, paragraph in enumerate(split_paragraphs(text), start=1):
            para_id = f"{prefix}_p{p_index}"
            if self.granularity is FragmentKind.PARAGRAPH:
                fragments.append(Fragment(para_id, paragraph, FragmentKind.PARAGRAPH))
                continue

            for s_index, sentence in enumerate(split_sentences(paragraph), start=1):
                sentence_id = f"{para_id}_s{s_index}"
                if self.granularity is FragmentKind.SENTENCE:
                    fragments.append(Fragment(sentence_id, sentence, FragmentKind.SENTENCE))
                elif self.granularity is FragmentKind.PHRASE:
                    for k, phrase in enumerate(split_phrases(sentence), start=1):
                        fragments.append(Fragment(f"{sentence_id}_ph{k}", phrase, FragmentKind.PHRASE))
                else:
                    for w, word in enumerate(split_words(sentence), start=1):
                        fragments.append(Fragment(f"{sentence_id}_w{w}", word, FragmentKind.WORD))

        return fragments


def build_fragments(
    text: str,
    page_number: int,
    granularity: str = "sentence",
) -> List[Fragment]:
    """
    Convenience function to seed fragments from page text.

    Args:
        text: Page text
        page_number: Page number used in fragment ids
        granularity: sentence, phrase, word or paragraph

    Returns:
        List of untimed Fragment objects
    """
    return TextSegmenter(page_number, granularity).build_fragments(text)
