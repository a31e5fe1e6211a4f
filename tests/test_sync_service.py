"""Tests for the transcript synchronization service."""

import threading

import filelock
import pytest

from overlaysync.readalong.aligner import AlignedSegment
from overlaysync.readalong.errors import AlignmentError, NotFoundError, StorageError, ValidationError
from overlaysync.readalong.smil_generator import timing_ids
from overlaysync.readalong.sync_service import TranscriptService
from overlaysync.readalong.transcript import TranscriptState
from overlaysync.readalong.xhtml_generator import markup_ids

from conftest import FakeAligner

PAGE_TEXT = "Hello world. This is a test."


@pytest.fixture
def seeded(service, audio_file):
    return service.create_from_page_text(1, 1, PAGE_TEXT, audio_path=str(audio_file))


# --- Seeding ---

def test_seed_from_page_text(seeded, service):
    assert seeded.fragment_ids == ["page1_p1_s1", "page1_p1_s2"]
    assert seeded.state is TranscriptState.SEEDED
    assert seeded.metadata.source == "page_text"
    assert service.get_transcript(1, 1) == seeded


def test_seed_refuses_to_overwrite(seeded, service):
    with pytest.raises(ValidationError, match="already exists"):
        service.create_from_page_text(1, 1, "Other text.")


def test_seed_needs_text(service):
    with pytest.raises(ValidationError):
        service.create_from_page_text(1, 2, "   ")
    assert not service.store.exists(1, 2)


# --- Editing ---

def test_edit_keeps_ids_and_timings(seeded, service):
    aligned = service.realign(1, 1)
    edited = service.update_fragment_text(1, 1, "page1_p1_s1", "  Hello there.  ")

    assert edited.fragment_ids == aligned.fragment_ids
    assert edited.get_fragment("page1_p1_s1").text == "Hello there."
    assert [(f.start_time, f.end_time) for f in edited.fragments] == \
        [(f.start_time, f.end_time) for f in aligned.fragments]
    assert edited.metadata.text_edited is True
    assert edited.state is TranscriptState.EDITED
    assert service.get_transcript(1, 1) == edited


def test_edit_with_same_text_is_a_no_op(seeded, service):
    result = service.update_fragment_text(1, 1, "page1_p1_s1", "Hello world.")
    assert result.metadata.text_edited is False


def test_edit_unknown_fragment(seeded, service):
    with pytest.raises(NotFoundError, match="page1_p9_s9"):
        service.update_fragment_text(1, 1, "page1_p9_s9", "Text.")


def test_edit_unknown_page(service):
    with pytest.raises(NotFoundError):
        service.update_fragment_text(1, 42, "page42_p1_s1", "Text.")


def test_edit_rejects_non_string_text(seeded, service):
    with pytest.raises(ValidationError):
        service.update_fragment_text(1, 1, "page1_p1_s1", 42)
    assert service.get_transcript(1, 1) == seeded


def test_batch_update_applies_all(seeded, service):
    result = service.batch_update(1, 1, [
        {"id": "page1_p1_s1", "text": "Hi."},
        {"id": "page1_p1_s2", "text": "Bye."},
    ])
    assert [f.text for f in result.fragments] == ["Hi.", "Bye."]
    assert service.get_transcript(1, 1) == result


def test_batch_update_is_all_or_nothing(seeded, service):
    with pytest.raises(NotFoundError):
        service.batch_update(1, 1, [
            {"id": "page1_p1_s1", "text": "Hi."},
            {"id": "missing", "text": "Bye."},
        ])
    assert service.get_transcript(1, 1) == seeded


@pytest.mark.parametrize("updates", [
    [],
    [{"id": "page1_p1_s1"}],
    [{"text": "No id."}],
    ["page1_p1_s1"],
    [{"id": "page1_p1_s1", "text": "A."}, {"id": "page1_p1_s1", "text": "B."}],
])
def test_batch_update_rejects_malformed(seeded, service, updates):
    with pytest.raises(ValidationError):
        service.batch_update(1, 1, updates)
    assert service.get_transcript(1, 1) == seeded


def test_concurrent_edits_are_serialized(seeded, service):
    """Edits to different fragments of one page from several threads all land."""
    texts = {"page1_p1_s1": "First edit.", "page1_p1_s2": "Second edit."}
    threads = [
        threading.Thread(target=service.update_fragment_text, args=(1, 1, fid, text))
        for fid, text in texts.items()
        for _ in range(5)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    result = service.get_transcript(1, 1)
    assert {f.id: f.text for f in result.fragments} == texts


def test_seed_drops_control_characters(service):
    transcript = service.create_from_page_text(1, 1, "OCR text\x02 here. Next\x0c line.")
    assert [f.text for f in transcript.fragments] == ["OCR text here.", "Next line."]


def test_edit_with_control_character_is_rejected(seeded, service):
    with pytest.raises(ValidationError, match="not allowed in XML"):
        service.update_fragment_text(1, 1, "page1_p1_s1", "Hello\x02 world.")
    assert service.get_transcript(1, 1) == seeded


class BlockingAligner(FakeAligner):
    """Holds the aligner call open until the test lets it finish."""

    def __init__(self):
        super().__init__()
        self.started = threading.Event()
        self.finish = threading.Event()

    def align(self, *args, **kwargs):
        self.started.set()
        assert self.finish.wait(timeout=5)
        return super().align(*args, **kwargs)


def test_edit_waits_for_running_realign(store, audio_file):
    """An edit made while the aligner runs lands after the realigned timings."""
    aligner = BlockingAligner()
    service = TranscriptService(store=store, aligner=aligner)
    service.create_from_page_text(1, 1, PAGE_TEXT, audio_path=str(audio_file))

    realign = threading.Thread(target=service.realign, args=(1, 1))
    realign.start()
    assert aligner.started.wait(timeout=5)

    edit = threading.Thread(
        target=service.update_fragment_text,
        args=(1, 1, "page1_p1_s2", "Edited while aligning."),
    )
    edit.start()
    edit.join(timeout=0.2)
    assert edit.is_alive()
    assert service.get_transcript(1, 1).state is TranscriptState.SEEDED

    aligner.finish.set()
    realign.join(timeout=5)
    edit.join(timeout=5)

    result = service.get_transcript(1, 1)
    assert result.get_fragment("page1_p1_s2").text == "Edited while aligning."
    assert result.metadata.text_edited is True
    assert result.metadata.last_aligned_at is not None


def test_page_locked_by_other_process(seeded, service, isolated_config):
    isolated_config.set("storage", "lock_timeout", value=0.1)
    service.store.lock_path(1, 1).parent.mkdir(parents=True, exist_ok=True)

    with filelock.FileLock(str(service.store.lock_path(1, 1))):
        with pytest.raises(StorageError):
            service.update_fragment_text(1, 1, "page1_p1_s1", "Blocked.")
        with pytest.raises(StorageError):
            service.realign(1, 1)

    assert service.get_transcript(1, 1) == seeded
    service.update_fragment_text(1, 1, "page1_p1_s1", "Unblocked.")
    assert service.get_transcript(1, 1).get_fragment("page1_p1_s1").text == "Unblocked."


# --- Realignment ---

def test_edit_then_realign(seeded, service, fake_aligner):
    service.update_fragment_text(1, 1, "page1_p1_s1", "Hello there.")
    result = service.realign(1, 1, timeout=5)

    assert result.fragment_ids == ["page1_p1_s1", "page1_p1_s2"]
    assert result.get_fragment("page1_p1_s1").text == "Hello there."
    assert result.is_aligned
    assert result.metadata.text_edited is False
    assert fake_aligner.calls[-1]["lines"] == ["Hello there.", "This is a test."]
    assert fake_aligner.calls[-1]["timeout"] == 5


def test_realign_uses_configured_timeout(seeded, service, fake_aligner, isolated_config):
    isolated_config.set("aligner", "timeout", value=42)
    service.realign(1, 1)
    assert fake_aligner.calls[-1]["timeout"] == 42.0


def test_realign_timeout_zero_disables_limit(seeded, service, fake_aligner):
    service.realign(1, 1, timeout=0)
    assert fake_aligner.calls[-1]["timeout"] is None


def test_realign_migrated_sentences_and_words(service, fake_aligner, audio_file):
    records = [
        {"page_number": 1, "block_id": "page1_p1_s1", "text": "Hello world.", "start_time": 0.0, "end_time": 1.0},
        {"page_number": 1, "block_id": "page1_p1_s1_w1", "text": "Hello", "start_time": 0.0, "end_time": 0.4},
        {"page_number": 1, "block_id": "page1_p1_s1_w2", "text": "world.", "start_time": 0.4, "end_time": 1.0},
        {"page_number": 1, "block_id": "page1_p1_s2", "text": "This is a test.", "start_time": 1.0, "end_time": 2.0},
        {"page_number": 1, "block_id": "page1_p1_s2_w1", "text": "This", "start_time": 1.0, "end_time": 1.3},
        {"page_number": 1, "block_id": "page1_p1_s2_w2", "text": "test.", "start_time": 1.3, "end_time": 2.0},
    ]
    service.initialize_from_existing_sync(1, records, str(audio_file))

    result = service.realign(1, 1)

    assert fake_aligner.calls[-1]["lines"] == ["Hello world.", "This is a test."]
    timings = {f.id: (f.start_time, f.end_time) for f in result.fragments}
    assert timings["page1_p1_s1"] == (0.0, 1.5)
    assert timings["page1_p1_s2"] == (1.5, 3.0)
    for sentence, words in (("page1_p1_s1", ["page1_p1_s1_w1", "page1_p1_s1_w2"]),
                            ("page1_p1_s2", ["page1_p1_s2_w1", "page1_p1_s2_w2"])):
        start, end = timings[sentence]
        assert timings[words[0]][0] == start
        assert timings[words[0]][1] == timings[words[1]][0]
        assert timings[words[1]][1] == end
    assert result.is_aligned


def test_realign_timeout_leaves_transcript_unchanged(store, audio_file):
    aligner = FakeAligner(error=AlignmentError(AlignmentError.TIMEOUT, "killed after 1s"))
    service = TranscriptService(store=store, aligner=aligner)
    service.create_from_page_text(1, 1, PAGE_TEXT, audio_path=str(audio_file))
    edited = service.update_fragment_text(1, 1, "page1_p1_s2", "Edited.")

    with pytest.raises(AlignmentError) as exc_info:
        service.realign(1, 1, timeout=1)

    assert exc_info.value.reason == AlignmentError.TIMEOUT
    assert exc_info.value.page_key == (1, 1)
    assert service.get_transcript(1, 1) == edited


def test_realign_count_mismatch(store, audio_file):
    aligner = FakeAligner(segments=[AlignedSegment(0.0, 1.0)])
    service = TranscriptService(store=store, aligner=aligner)
    seeded = service.create_from_page_text(1, 1, PAGE_TEXT, audio_path=str(audio_file))

    with pytest.raises(AlignmentError) as exc_info:
        service.realign(1, 1)

    assert exc_info.value.reason == AlignmentError.COUNT_MISMATCH
    assert service.get_transcript(1, 1) == seeded


def test_realign_without_audio(service, fake_aligner):
    service.create_from_page_text(1, 1, PAGE_TEXT)
    with pytest.raises(AlignmentError) as exc_info:
        service.realign(1, 1)
    assert exc_info.value.reason == AlignmentError.MISSING_AUDIO
    assert fake_aligner.calls == []


# --- Views ---

def test_editing_view(seeded, service):
    view = service.get_transcript_for_editing(1, 1)
    assert view["canEdit"] is True
    assert view["canRealign"] is True
    assert view["state"] == "seeded"
    assert view["fragments"][0]["id"] == "page1_p1_s1"
    assert view["fragments"][0]["duration"] is None


def test_list_transcripts(service, audio_file):
    service.create_from_page_text(1, 2, "Two.", audio_path=str(audio_file))
    service.create_from_page_text(1, 1, "One.")
    summaries = service.list_transcripts(1)
    assert list(summaries) == [1, 2]
    assert summaries[1]["hasAudio"] is False
    assert summaries[2]["hasAudio"] is True
    assert summaries[2]["fragmentCount"] == 1
    assert service.list_transcripts(7) == {}


def test_rendered_ids_match_after_edit_and_realign(seeded, service):
    service.update_fragment_text(1, 1, "page1_p1_s2", "A changed second sentence.")
    service.realign(1, 1)

    xhtml, smil = service.render_page(1, 1, audio_href="audio/narration.mp3")
    assert markup_ids(xhtml) == ["page1_p1_s1", "page1_p1_s2"]
    assert timing_ids(smil) == ["page1_p1_s1", "page1_p1_s2"]
    assert "A changed second sentence." in xhtml


# --- Migration ---

LEGACY_RECORDS = [
    {"id": 7, "page_number": 1, "block_id": "page1_p1_s2", "text": "Second.", "start_time": 1.5, "end_time": 3.0},
    {"id": 6, "page_number": 1, "block_id": "page1_p1_s1", "text": "First.", "custom_text": "First!",
     "start_time": 0.0, "end_time": 1.5},
    {"id": 9, "page_number": 2, "block_id": None, "text": "Untimed.", "start_time": 0, "end_time": 0},
]


def test_migration_preserves_ids_and_timings(service, audio_file):
    transcripts = service.initialize_from_existing_sync(1, LEGACY_RECORDS, str(audio_file))

    assert [t.page_number for t in transcripts] == [1, 2]
    page1 = service.get_transcript(1, 1)
    assert page1.fragment_ids == ["page1_p1_s1", "page1_p1_s2"]
    assert [f.text for f in page1.fragments] == ["First!", "Second."]
    assert [(f.start_time, f.end_time) for f in page1.fragments] == [(0.0, 1.5), (1.5, 3.0)]
    assert page1.state is TranscriptState.ALIGNED
    assert page1.metadata.source == "migrated_from_sync_data"

    page2 = service.get_transcript(1, 2)
    assert page2.fragment_ids == ["fragment_9"]
    assert not page2.fragments[0].is_timed


def test_migration_single_page(service, audio_file):
    service.initialize_from_existing_sync(1, LEGACY_RECORDS, str(audio_file), page_number=2)
    assert service.store.list_pages(1) == [2]


def test_migration_keeps_existing_unless_overwrite(service, audio_file):
    service.create_from_page_text(1, 1, "Seeded text.")

    kept = service.initialize_from_existing_sync(1, LEGACY_RECORDS, str(audio_file), page_number=1)
    assert kept[0].get_fragment("page1_p1_s1").text == "Seeded text."

    replaced = service.initialize_from_existing_sync(
        1, LEGACY_RECORDS, str(audio_file), page_number=1, overwrite=True
    )
    assert replaced[0].get_fragment("page1_p1_s1").text == "First!"


def test_migration_validates_before_writing(service, audio_file):
    records = LEGACY_RECORDS + [{"page_number": "x", "id": 1, "text": "Bad."}]
    with pytest.raises(ValidationError):
        service.initialize_from_existing_sync(1, records, str(audio_file))
    assert service.store.list_pages(1) == []


# --- Deletion ---

def test_delete_transcript_is_idempotent(seeded, service):
    assert service.delete_transcript(1, 1) is True
    assert service.delete_transcript(1, 1) is False
    with pytest.raises(NotFoundError):
        service.get_transcript(1, 1)


def test_delete_job_removes_exports(seeded, service, tmp_path):
    service.realign(1, 1)
    service.export_pages(1)
    export_dir = tmp_path / "output" / "job_1"
    assert (export_dir / "page_1.smil").exists()

    assert service.delete_job(1) is True
    assert not export_dir.exists()
    assert service.store.list_pages(1) == []
    assert service.delete_job(1) is False
