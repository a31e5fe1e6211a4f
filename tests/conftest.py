"""Shared fixtures for overlaysync tests."""

from pathlib import Path

import pytest

from overlaysync.readalong.aligner import AlignedSegment
from overlaysync.readalong.sync_service import TranscriptService
from overlaysync.readalong.transcript import (
    Fragment,
    FragmentKind,
    Transcript,
    TranscriptMetadata,
)
from overlaysync.readalong.transcript_store import TranscriptStore
from overlaysync.utils.config import config


class FakeAligner:
    """Alignment port stand-in: one segment per text line, evenly spaced."""

    name = "fake"
    version = "0.0-test"

    def __init__(self, segments=None, error=None, step=1.5):
        self.segments = segments
        self.error = error
        self.step = step
        self.calls = []

    def align(self, audio_path, text_path, language, granularity="sentence", timeout=None):
        lines = Path(text_path).read_text(encoding="utf-8").split("\n")
        self.calls.append({
            "audio": str(audio_path),
            "lines": lines,
            "language": language,
            "granularity": granularity,
            "timeout": timeout,
        })
        if self.error is not None:
            raise self.error
        if self.segments is not None:
            return list(self.segments)
        return [
            AlignedSegment(round(i * self.step, 3), round((i + 1) * self.step, 3), line)
            for i, line in enumerate(lines)
        ]


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point configured paths at the test's temp dir."""
    monkeypatch.setattr(config, "_config", config.snapshot())
    config.set("paths", "transcripts", value=str(tmp_path / "transcripts"))
    config.set("paths", "output", value=str(tmp_path / "output"))
    return config


@pytest.fixture
def store(tmp_path):
    return TranscriptStore(tmp_path / "transcripts")


@pytest.fixture
def audio_file(tmp_path):
    """A non-empty stand-in narration file."""
    path = tmp_path / "narration.mp3"
    path.write_bytes(b"ID3\x03\x00\x00\x00fake audio frames")
    return path


@pytest.fixture
def fake_aligner():
    return FakeAligner()


@pytest.fixture
def service(store, fake_aligner):
    return TranscriptService(store=store, aligner=fake_aligner)


@pytest.fixture
def aligned_transcript(audio_file):
    """A two-sentence page with timings, as left by a successful alignment."""
    return Transcript(
        job_id=1,
        page_number=1,
        audio_file_path=str(audio_file),
        fragments=[
            Fragment("page1_p1_s1", "Hello world.", FragmentKind.SENTENCE, 0.0, 1.2),
            Fragment("page1_p1_s2", "This is a test.", FragmentKind.SENTENCE, 1.2, 2.75),
        ],
        metadata=TranscriptMetadata(
            created_at="2024-01-01T00:00:00.000+00:00",
            updated_at="2024-01-01T00:00:00.000+00:00",
        ),
    )
