"""
Transcript Store

Durable, keyed record store for transcripts. One JSON file per page:

    <transcripts>/job_<jobId>/chapter_<pageNumber>.json
    <transcripts>/job_<jobId>/chapter_<pageNumber>.txt    (aligner input)

Writes go to a temporary file in the same directory and are swapped in with
``os.replace`` so a crash mid-write never leaves a partial record. Each page
key has its own re-entrant lock; callers wrap read-modify-write cycles in
``store.lock(job_id, page_number)``. The lock holds a thread lock and a lock
file under ``<transcripts>/.locks/``, so it also serializes separate
processes working on the same store.
"""

import contextlib
import json
import os
import re
import shutil
import tempfile
import threading
import weakref
from pathlib import Path
from typing import Dict, List, Optional, Union

import filelock

from overlaysync.readalong.errors import (
    NotFoundError,
    StorageError,
    ValidationError,
)
from overlaysync.readalong.transcript import Transcript
from overlaysync.utils import logger
from overlaysync.utils.config import config

_TRANSCRIPT_FILE = re.compile(r"^chapter_(\d+)\.json$")
_JOB_DIR = re.compile(r"^job_(\d+)$")

# Process-wide so that two stores over the same directory share locks.
# Entries disappear once no caller holds the lock.
_registry_lock = threading.Lock()
_page_locks: "weakref.WeakValueDictionary" = weakref.WeakValueDictionary()


def atomic_write_text(path: Path, content: str) -> Path:
    """
    Write text to ``path`` atomically.

    Raises:
        OSError: if the temporary file cannot be written or swapped in; the
            previous file content (if any) is left untouched
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise
    return path


class PageLock:
    """
    Re-entrant lock for one page, shared by threads and processes.

    Threads of one process queue on an RLock; the holder then takes an
    exclusive lock file so other processes on the same store wait too.
    """

    def __init__(self, lock_file: Path, page_key):
        self.lock_file = Path(lock_file)
        self.page_key = page_key
        self._thread_lock = threading.RLock()
        self._file_lock = filelock.FileLock(str(self.lock_file), thread_local=False)

    def acquire(self, timeout: Optional[float] = None) -> None:
        """
        Raises:
            StorageError: if another process keeps the page locked past ``timeout``
        """
        if timeout is None:
            timeout = config.get("storage", "lock_timeout", default=-1)
        self._thread_lock.acquire()
        try:
            self.lock_file.parent.mkdir(parents=True, exist_ok=True)
            self._file_lock.acquire(timeout=timeout)
        except filelock.Timeout as exc:
            self._thread_lock.release()
            raise StorageError(
                f"Page is locked by another process ({self.lock_file})",
                self.page_key,
            ) from exc
        except OSError as exc:
            self._thread_lock.release()
            raise StorageError(f"Cannot lock {self.lock_file}: {exc}", self.page_key) from exc

    def release(self) -> None:
        try:
            self._file_lock.release()
        finally:
            self._thread_lock.release()

    @property
    def is_locked(self) -> bool:
        return self._file_lock.is_locked

    def __enter__(self) -> "PageLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.release()


class TranscriptStore:
    """Repository for transcripts keyed by (job id, page number)."""

    def __init__(self, base_dir: Optional[Union[str, Path]] = None):
        """
        Initialize the store.

        Args:
            base_dir: Root directory for transcripts (default: paths.transcripts)
        """
        self.base_dir = Path(base_dir) if base_dir else config.get_path("transcripts")

    # -- paths ---------------------------------------------------------------

    def job_dir(self, job_id: int) -> Path:
        return self.base_dir / f"job_{job_id}"

    def transcript_path(self, job_id: int, page_number: int) -> Path:
        return self.job_dir(job_id) / f"chapter_{page_number}.json"

    def text_file_path(self, job_id: int, page_number: int) -> Path:
        return self.job_dir(job_id) / f"chapter_{page_number}.txt"

    # -- locking -------------------------------------------------------------

    def lock_path(self, job_id: int, page_number: int) -> Path:
        # Outside job_<id>/ so deleting a job leaves held locks in place
        return self.base_dir / ".locks" / f"job_{job_id}_chapter_{page_number}.lock"

    def lock(self, job_id: int, page_number: int) -> PageLock:
        """Return the lock serializing all mutations of one page."""
        key = (str(self.base_dir.resolve()), int(job_id), int(page_number))
        with _registry_lock:
            page_lock = _page_locks.get(key)
            if page_lock is None:
                page_lock = PageLock(self.lock_path(job_id, page_number), (job_id, page_number))
                _page_locks[key] = page_lock
            return page_lock

    # -- reads ---------------------------------------------------------------

    def exists(self, job_id: int, page_number: int) -> bool:
        return self.transcript_path(job_id, page_number).exists()

    def load(self, job_id: int, page_number: int) -> Optional[Transcript]:
        """
        Load the transcript for a page.

        Returns:
            Transcript, or None if the page has no transcript yet

        Raises:
            StorageError: if the file exists but cannot be read or parsed
        """
        path = self.transcript_path(job_id, page_number)
        page_key = (job_id, page_number)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            raise StorageError(f"Cannot read transcript {path}: {exc}", page_key) from exc

        try:
            transcript = Transcript.from_dict(data)
            transcript.validate()
        except ValidationError as exc:
            raise StorageError(f"Corrupt transcript {path}: {exc}", page_key) from exc

        if transcript.page_key != (job_id, page_number):
            raise StorageError(
                f"Transcript {path} belongs to job {transcript.job_id}, page {transcript.page_number}",
                page_key,
            )
        return transcript

    def require(self, job_id: int, page_number: int) -> Transcript:
        """Load a transcript or raise NotFoundError."""
        transcript = self.load(job_id, page_number)
        if transcript is None:
            raise NotFoundError("Transcript not found", (job_id, page_number))
        return transcript

    def list_pages(self, job_id: int) -> List[int]:
        """Page numbers with a transcript, ascending."""
        job_dir = self.job_dir(job_id)
        if not job_dir.is_dir():
            return []
        pages = []
        for entry in job_dir.iterdir():
            match = _TRANSCRIPT_FILE.match(entry.name)
            if match:
                pages.append(int(match.group(1)))
        return sorted(pages)

    def list_jobs(self) -> List[int]:
        if not self.base_dir.is_dir():
            return []
        jobs = []
        for entry in self.base_dir.iterdir():
            match = _JOB_DIR.match(entry.name)
            if match and entry.is_dir():
                jobs.append(int(match.group(1)))
        return sorted(jobs)

    def load_all(self, job_id: int) -> Dict[int, Transcript]:
        """Load every transcript of a job, keyed and ordered by page number."""
        transcripts = {}
        for page_number in self.list_pages(job_id):
            transcript = self.load(job_id, page_number)
            if transcript is not None:
                transcripts[page_number] = transcript
        return transcripts

    # -- writes --------------------------------------------------------------

    def save(self, transcript: Transcript) -> Path:
        """
        Validate and atomically persist a transcript.

        Raises:
            ValidationError: if the transcript breaks an invariant (nothing written)
            StorageError: if the write fails (previous record left intact)
        """
        transcript.validate()
        content = transcript.to_json()
        path = self.transcript_path(transcript.job_id, transcript.page_number)
        try:
            atomic_write_text(path, content)
        except OSError as exc:
            raise StorageError(f"Cannot write transcript {path}: {exc}", transcript.page_key) from exc

        logger.debug(f"Saved transcript for job {transcript.job_id}, page {transcript.page_number}")
        return path

    def save_text_file(self, job_id: int, page_number: int, text: str) -> Path:
        """Atomically write the aligner input text (UTF-8, no BOM)."""
        path = self.text_file_path(job_id, page_number)
        try:
            atomic_write_text(path, text)
        except OSError as exc:
            raise StorageError(f"Cannot write text file {path}: {exc}", (job_id, page_number)) from exc
        return path

    def delete(self, job_id: int, page_number: int) -> bool:
        """
        Delete one page's transcript and text file.

        Returns:
            True if a transcript was removed; deleting a missing page is a no-op
        """
        removed = False
        for path in (
            self.transcript_path(job_id, page_number),
            self.text_file_path(job_id, page_number),
        ):
            try:
                path.unlink()
                removed = removed or path.suffix == ".json"
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise StorageError(f"Cannot delete {path}: {exc}", (job_id, page_number)) from exc
        return removed

    def delete_job(self, job_id: int) -> bool:
        """Remove every transcript and derived file of a job; idempotent."""
        job_dir = self.job_dir(job_id)
        if not job_dir.exists():
            return False
        try:
            shutil.rmtree(job_dir)
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(f"Cannot delete {job_dir}: {exc}") from exc
        logger.debug(f"Deleted transcripts for job {job_id}")
        return True
