"""Tests for writing page files."""

import json

import pytest

from overlaysync.readalong.errors import ValidationError
from overlaysync.readalong.page_exporter import PageExporter, default_audio_href
from overlaysync.readalong.transcript import Fragment, Transcript


def test_export_writes_page_pair(tmp_path, aligned_transcript):
    out = tmp_path / "epub"
    pages = PageExporter(out).export([aligned_transcript])

    assert [p.page_number for p in pages] == [1]
    assert (out / "page_1.xhtml").exists()
    assert (out / "styles.css").exists()
    smil = (out / "page_1.smil").read_text(encoding="utf-8")
    assert 'src="audio/narration.mp3"' in smil
    assert 'epub:textref="page_1.xhtml"' in smil

    summary = json.loads((out / "overlays.json").read_text(encoding="utf-8"))
    assert summary["pageCount"] == 1
    assert summary["totalDuration"] == "0:00:02.750"
    assert summary["pages"][0]["smil"] == "page_1.smil"


def test_export_is_idempotent(tmp_path, aligned_transcript):
    out = tmp_path / "epub"
    exporter = PageExporter(out)
    exporter.export([aligned_transcript])
    before = {p.name: p.read_bytes() for p in out.iterdir()}

    pages = exporter.export([aligned_transcript])

    assert not any(p.changed for p in pages)
    assert {p.name: p.read_bytes() for p in out.iterdir()} == before


def test_unaligned_pages_are_skipped(tmp_path, aligned_transcript, audio_file):
    unaligned = Transcript(1, 2, str(audio_file), [Fragment("page2_p1_s1", "Not yet timed.")])
    pages = PageExporter(tmp_path / "epub").export([unaligned, aligned_transcript])
    assert [p.page_number for p in pages] == [1]
    assert not (tmp_path / "epub" / "page_2.xhtml").exists()


def test_audio_dir_option(tmp_path, aligned_transcript):
    assert default_audio_href(aligned_transcript) == "audio/narration.mp3"
    assert default_audio_href(aligned_transcript, "") == "narration.mp3"

    aligned_transcript.audio_file_path = None
    with pytest.raises(ValidationError):
        default_audio_href(aligned_transcript)


def test_summary_duration_counts_played_audio(tmp_path, audio_file):
    """Pages cut from one chapter recording start at an offset."""
    pages = [
        Transcript(1, 1, str(audio_file), [
            Fragment("page1_p1_s1", "One.", start_time=10.0, end_time=12.0),
            Fragment("page1_p1_s2", "Two.", start_time=12.0, end_time=15.0),
        ]),
        Transcript(1, 2, str(audio_file), [
            Fragment("page2_p1_s1", "Three.", start_time=15.0, end_time=18.5),
        ]),
    ]
    out = tmp_path / "epub"
    PageExporter(out).export(pages)

    summary = json.loads((out / "overlays.json").read_text(encoding="utf-8"))
    assert [p["duration"] for p in summary["pages"]] == ["0:00:05.000", "0:00:03.500"]
    assert summary["totalDuration"] == "0:00:08.500"


def test_unrenderable_page_writes_nothing(tmp_path, aligned_transcript, audio_file):
    broken = Transcript(1, 2, str(audio_file), [
        Fragment("page2_p1_s1", "OCR text\x02 here.", start_time=0.0, end_time=1.0),
    ])
    out = tmp_path / "epub"
    with pytest.raises(ValidationError):
        PageExporter(out).export([aligned_transcript, broken])
    assert not out.exists()
