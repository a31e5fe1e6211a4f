"""
Forced Aligner Integration

Defines the alignment port the sync service depends on and its production
implementation, which runs the aeneas command line tool in a subprocess:

    python -m aeneas.tools.execute_task AUDIO TEXT CONFIG OUTPUT

aeneas receives one line per fragment and returns one ``{begin, end, lines}``
entry per line, in the same order.
"""

import json
import os
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union

from overlaysync.readalong.errors import AlignmentError
from overlaysync.utils import logger
from overlaysync.utils.config import config

PathLike = Union[str, Path]


@dataclass
class AlignedSegment:
    """One aligned line: interval in seconds plus the text the tool saw."""

    begin: float
    end: float
    text: str = ""

    @property
    def duration(self) -> float:
        return self.end - self.begin


class AlignmentPort(Protocol):
    """Contract for forced-alignment backends."""

    name: str
    version: str

    def align(
        self,
        audio_path: PathLike,
        text_path: PathLike,
        language: str,
        granularity: str = "sentence",
        timeout: Optional[float] = None,
    ) -> List[AlignedSegment]:
        """Return one segment per line of ``text_path``, in line order."""
        ...


def parse_aeneas_output(data: Dict[str, Any]) -> List[AlignedSegment]:
    """
    Convert aeneas JSON output into aligned segments.

    aeneas writes times as decimal-second strings ("1.240").

    Raises:
        AlignmentError: if the document does not have the expected shape
    """
    if not isinstance(data, dict) or not isinstance(data.get("fragments", []), list):
        raise AlignmentError(AlignmentError.TOOL_FAILURE, "Aligner output has no fragments list")

    segments = []
    for index, fragment in enumerate(data.get("fragments", [])):
        try:
            lines = fragment.get("lines") or []
            segments.append(AlignedSegment(
                begin=float(fragment["begin"]),
                end=float(fragment["end"]),
                text=" ".join(lines),
            ))
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise AlignmentError(
                AlignmentError.TOOL_FAILURE,
                f"Malformed aligner fragment {index}: {exc}",
            ) from exc
    return segments


def _failure_hint(stderr: str) -> str:
    """Actionable hint for the most common aeneas installation problems."""
    lowered = (stderr or "").lower()
    if "espeak" in lowered:
        return "Ensure eSpeak NG is installed (set aligner.extra_path if it is not on PATH)"
    if "ffmpeg" in lowered or "ffprobe" in lowered:
        return "Ensure FFmpeg is installed and on PATH"
    if "no module named" in lowered or "python" in lowered:
        return "Ensure aeneas is installed for the configured interpreter (pip install aeneas)"
    return ""


class AeneasAligner:
    """Runs aeneas as an external process."""

    name = "aeneas"

    def __init__(
        self,
        python: Optional[str] = None,
        module: Optional[str] = None,
        extra_path: Optional[str] = None,
        version: Optional[str] = None,
    ):
        """
        Initialize the aligner.

        Args:
            python: Interpreter that has aeneas installed
            module: Module to run with ``-m``
            extra_path: Directory prepended to PATH (eSpeak NG, FFmpeg)
            version: Version string recorded in transcript metadata
        """
        self.python = python or config.get("aligner", "python", default="python3")
        self.module = module or config.get("aligner", "module", default="aeneas.tools.execute_task")
        self.extra_path = extra_path if extra_path is not None else config.get("aligner", "extra_path", default="")
        self.version = version or config.aligner_version

    def build_command(
        self,
        audio_path: PathLike,
        text_path: PathLike,
        output_path: PathLike,
        language: str,
    ) -> List[str]:
        task_config = "|".join([
            f"task_language={language}",
            "is_text_type=plain",
            "os_task_file_format=json",
        ])
        return [
            self.python,
            "-m", self.module,
            str(audio_path),
            str(text_path),
            task_config,
            str(output_path),
        ]

    def _environment(self) -> Dict[str, str]:
        env = os.environ.copy()
        env["PYTHONIOENCODING"] = "UTF-8"
        env["PYTHONUTF8"] = "1"
        if self.extra_path:
            env["PATH"] = os.pathsep.join([self.extra_path, env.get("PATH", "")])
        return env

    def align(
        self,
        audio_path: PathLike,
        text_path: PathLike,
        language: str,
        granularity: str = "sentence",
        timeout: Optional[float] = None,
    ) -> List[AlignedSegment]:
        """
        Align ``text_path`` against ``audio_path``.

        With ``is_text_type=plain`` aeneas emits one fragment per input line,
        so the granularity is already fixed by how the text file was derived.

        Raises:
            AlignmentError: tool-failure or timeout
        """
        with tempfile.TemporaryDirectory(prefix="overlaysync_align_") as tmp_dir:
            output_path = Path(tmp_dir) / "alignment.json"
            cmd = self.build_command(audio_path, text_path, output_path, language)
            logger.debug(f"Executing: {' '.join(cmd)} ({granularity} lines)")

            try:
                result = subprocess.run(
                    cmd,
                    capture_output=True,
                    text=True,
                    timeout=timeout,
                    env=self._environment(),
                )
            except subprocess.TimeoutExpired as exc:
                raise AlignmentError(
                    AlignmentError.TIMEOUT,
                    f"Aligner did not finish within {timeout}s",
                ) from exc
            except OSError as exc:
                raise AlignmentError(
                    AlignmentError.TOOL_FAILURE,
                    f"Cannot start aligner '{self.python}': {exc}",
                ) from exc

            if result.returncode != 0:
                logger.error(f"Aligner error: {result.stderr.strip()}")
                message = f"Aligner exited with status {result.returncode}"
                hint = _failure_hint(result.stderr)
                if hint:
                    message = f"{message}. {hint}"
                raise AlignmentError(AlignmentError.TOOL_FAILURE, message)

            if result.stderr:
                logger.debug(f"Aligner stderr: {result.stderr.strip()}")

            try:
                with open(output_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError) as exc:
                raise AlignmentError(
                    AlignmentError.TOOL_FAILURE,
                    f"Failed to read aligner output: {exc}",
                ) from exc

        return parse_aeneas_output(data)
