"""Shared pytest fixtures for the yt-extract-web test suite.

Guidelines
----------
* No internet access in any test.
* yt-dlp is never spawned: a fake runner stands in for ``subprocess.run``.
* Every temp file lives under pytest's ``tmp_path``.
"""

from __future__ import annotations

import json
import os
import subprocess
import tempfile
from pathlib import Path
from typing import Any

import pytest

# app.py resolves its settings at import time; keep that away from the cwd.
os.environ.setdefault("YTDLP_TEMP_DIR", tempfile.mkdtemp(prefix="yt-extract-tests-"))

from extraction import ExtractorSettings  # noqa: E402


class FakeRunner:
    """Stand-in for ``subprocess.run`` that answers like yt-dlp.

    *metadata* is consumed one item per ``--dump-json`` call: a dict is
    returned as JSON on stdout, a string verbatim, an exception is raised.
    *subtitles* maps a language code to the VTT text written next to the
    ``-o`` template, or is an exception raised by the subtitle call.
    """

    def __init__(
        self,
        metadata: list[Any] | None = None,
        subtitles: dict[str, str] | BaseException | None = None,
    ) -> None:
        self.metadata = list(metadata or [])
        self.subtitles = subtitles
        self.calls: list[list[str]] = []
        self.kwargs: list[dict[str, Any]] = []
        self.cookie_files: list[tuple[Path, bool, str]] = []

    @property
    def metadata_calls(self) -> list[list[str]]:
        return [cmd for cmd in self.calls if "--dump-json" in cmd]

    @property
    def subtitle_calls(self) -> list[list[str]]:
        return [cmd for cmd in self.calls if "--write-subs" in cmd]

    def __call__(self, cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess:
        self.calls.append(list(cmd))
        self.kwargs.append(kwargs)
        if "--cookies" in cmd:
            path = Path(cmd[cmd.index("--cookies") + 1])
            exists = path.exists()
            self.cookie_files.append((path, exists, path.read_text(encoding="utf-8") if exists else ""))

        if "--dump-json" in cmd:
            outcome = self.metadata.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            stdout = outcome if isinstance(outcome, str) else json.dumps(outcome)
            return subprocess.CompletedProcess(cmd, 0, stdout, "")

        if isinstance(self.subtitles, BaseException):
            raise self.subtitles
        template = cmd[cmd.index("-o") + 1]
        for language, content in (self.subtitles or {}).items():
            Path(template.replace("%(ext)s", f"{language}.vtt")).write_text(content, encoding="utf-8")
        return subprocess.CompletedProcess(cmd, 0, "", "")


def tool_error(stderr: str, returncode: int = 1) -> subprocess.CalledProcessError:
    return subprocess.CalledProcessError(returncode, ["yt-dlp"], output="", stderr=stderr)


@pytest.fixture
def settings(tmp_path: Path) -> ExtractorSettings:
    return ExtractorSettings(binary="yt-dlp", temp_dir=tmp_path)


@pytest.fixture
def fake_runner() -> type[FakeRunner]:
    return FakeRunner


@pytest.fixture
def make_tool_error():
    return tool_error


@pytest.fixture
def sample_info() -> dict[str, Any]:
    return {
        "id": "abc123",
        "title": "Sample Video",
        "thumbnail": "https://i.ytimg.com/vi/abc123/hq.jpg",
        "description": "A description.",
        "upload_date": "20240131",
        "view_count": 12345,
        "like_count": 678,
        "comment_count": 9,
        "duration": 3725,
        "channel": "Sample Channel",
        "formats": [
            {"ext": "m4a", "vcodec": "none", "acodec": "mp4a.40.2", "url": "https://media/audio"},
            {"ext": "mp4", "height": 720, "vcodec": "avc1", "acodec": "mp4a.40.2", "url": "https://media/720a"},
            {"ext": "mp4", "height": 1080, "vcodec": "avc1", "acodec": "none", "url": "https://media/1080"},
        ],
    }
