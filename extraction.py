from __future__ import annotations

import json
import logging
import re
import subprocess
import uuid
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

NETSCAPE_HEADER = "# Netscape HTTP Cookie File"
SUBTITLE_LANGUAGES = ("en", "zh-Hans", "zh-Hant")
TARGET_RESOLUTIONS = {720: "720p", 1080: "1080p"}

VERIFICATION_MARKERS = (
    "Sign in to confirm",
    "bot",
    "429",
    "403",
    "Requested format is not available",
)
MISSING_RUNTIME_MARKERS = (
    "env: 'python3': No such file",
    "python3: not found",
)
DEFAULT_FAILURE_MESSAGE = (
    "Failed to extract video info. This might be due to YouTube's restrictions on data center IPs."
)

Runner = Callable[..., subprocess.CompletedProcess]


class ExtractionError(RuntimeError):
    pass


class ValidationError(ExtractionError):
    pass


class VerificationRequiredError(ExtractionError):
    """The site challenged the request; only fresh session cookies help."""

    code = "VERIFICATION_REQUIRED"

    def __init__(self, message: str = "HUMAN_VERIFICATION_REQUIRED") -> None:
        super().__init__(message)


class ConfigurationError(ExtractionError):
    """The deployment is missing something yt-dlp needs to run."""


class ExtractionFailure(ExtractionError):
    pass


@dataclass(frozen=True)
class ExtractorSettings:
    binary: str
    temp_dir: Path
    timeout_seconds: int | None = None


@dataclass(frozen=True)
class FormatEntry:
    resolution: str
    url: str
    has_audio: bool
    ext: str = "mp4"

    def to_dict(self) -> dict:
        return {
            "resolution": self.resolution,
            "url": self.url,
            "ext": self.ext,
            "hasAudio": self.has_audio,
        }


@dataclass(frozen=True)
class ExtractionResult:
    title: str | None
    thumbnail: str | None
    description: str | None
    upload_date: str | None
    view_count: int | None
    like_count: int | None
    comment_count: int | None
    duration: int | None
    channel: str | None
    subtitles: str = ""
    audio_url: str | None = None
    formats: tuple[FormatEntry, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "thumbnail": self.thumbnail,
            "description": self.description,
            "upload_date": self.upload_date,
            "view_count": self.view_count,
            "like_count": self.like_count,
            "comment_count": self.comment_count,
            "duration": self.duration,
            "channel": self.channel,
            "subtitles": self.subtitles,
            "audio_url": self.audio_url,
            "formats": [entry.to_dict() for entry in self.formats],
        }


# ---------------------------------------------------------------------------
# Cookies
# ---------------------------------------------------------------------------


class CookieKind(str, Enum):
    NONE = "none"
    FILE = "file"
    HEADER = "header"


@dataclass(frozen=True)
class CookieMaterial:
    kind: CookieKind = CookieKind.NONE
    path: Path | None = None
    header: str | None = None

    def args(self) -> list[str]:
        if self.kind is CookieKind.FILE and self.path is not None:
            return ["--cookies", str(self.path)]
        if self.kind is CookieKind.HEADER and self.header:
            return ["--add-header", self.header]
        return []


def is_netscape_cookies(text: str) -> bool:
    return "\t" in text or "# Netscape" in text


def cookie_header_value(text: str) -> str:
    return "Cookie:" + re.sub(r"[\r\n]+", "", text).strip()


def netscape_cookie_content(text: str) -> str:
    if "\t" in text and NETSCAPE_HEADER not in text:
        return f"{NETSCAPE_HEADER}\n{text}"
    return text


@contextmanager
def materialize_cookies(cookies: str | None, temp_dir: Path) -> Iterator[CookieMaterial]:
    """Turn pasted cookie text into something yt-dlp can consume.

    Netscape exports are written to ``<temp_dir>/<uuid>.txt``; a raw
    ``key=value; key=value`` string becomes an added ``Cookie`` header.
    Any file written here is gone once the block exits, however it exits.
    """
    if not cookies or not cookies.strip():
        yield CookieMaterial()
        return

    if not is_netscape_cookies(cookies) and "=" in cookies:
        yield CookieMaterial(kind=CookieKind.HEADER, header=cookie_header_value(cookies))
        return

    cookie_file = temp_dir / f"{uuid.uuid4().hex}.txt"
    try:
        cookie_file.write_text(netscape_cookie_content(cookies), encoding="utf-8")
        yield CookieMaterial(kind=CookieKind.FILE, path=cookie_file)
    finally:
        cookie_file.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Subtitles
# ---------------------------------------------------------------------------

_TAG_RE = re.compile(r"<[^>]*>")
_CUE_INDEX_RE = re.compile(r"[0-9]+")
_NOISE_PREFIXES = ("Style:", "::cue")
_HEADER_TEXT_PREFIXES = ("WEBVTT ", "WEBVTT\t")


def _is_noise(line: str) -> bool:
    return (
        "-->" in line
        or line in ("WEBVTT", "STYLE")
        or line.startswith(_NOISE_PREFIXES)
        or _CUE_INDEX_RE.fullmatch(line) is not None
    )


def _is_header_line(line: str, has_cues: bool) -> bool:
    # header text after the signature only counts when the track has cues,
    # so already cleaned text is never mistaken for a header
    return line == "WEBVTT" or (has_cues and line.startswith(_HEADER_TEXT_PREFIXES))


def clean_vtt(content: str) -> str:
    """Reduce a WebVTT caption track to its visible text, one line per row.

    Timing lines, cue numbers, header and style blocks and inline tags
    are removed. A line equal to the previously kept one is dropped, which
    folds the rolling duplication of auto-generated captions.
    """
    result: list[str] = []
    last = ""
    has_cues = "-->" in content
    in_header = False
    in_style = False
    seen_cue = False
    seen_text = False

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line:
            in_header = in_style = False
            continue
        if not seen_text and _is_header_line(line, has_cues):
            in_header = True
        seen_text = True
        if "-->" in line:
            in_header = in_style = False
            seen_cue = True
        if in_header or in_style:
            continue
        if line == "STYLE" and not seen_cue:
            in_style = True
            continue
        if _is_noise(line):
            continue

        text = _TAG_RE.sub("", line).strip()
        if not text or _is_noise(text):
            continue
        if text != last:
            result.append(text)
            last = text

    return "\n".join(result)


def _subtitle_sort_key(path: Path) -> tuple[int, str]:
    language = path.name.split(".")[-2] if path.name.count(".") >= 2 else ""
    try:
        rank = SUBTITLE_LANGUAGES.index(language)
    except ValueError:
        rank = len(SUBTITLE_LANGUAGES)
    return rank, path.name


def find_subtitle_file(temp_dir: Path, subtitle_id: str) -> Path | None:
    candidates = [
        path
        for path in temp_dir.iterdir()
        if path.name.startswith(subtitle_id) and path.name.endswith(".vtt")
    ]
    if not candidates:
        return None
    return sorted(candidates, key=_subtitle_sort_key)[0]


def cleanup_subtitle_files(temp_dir: Path, subtitle_id: str) -> None:
    try:
        paths = list(temp_dir.glob(f"{subtitle_id}*"))
    except OSError:
        logger.warning("Could not list subtitle files in %s", temp_dir)
        return
    for path in paths:
        try:
            path.unlink(missing_ok=True)
        except OSError:
            logger.warning("Could not remove subtitle file %s", path)


# ---------------------------------------------------------------------------
# Formats
# ---------------------------------------------------------------------------


def _has_codec(value: Any) -> bool:
    # yt-dlp reports a missing stream as the literal "none"
    return value != "none"


def resolution_label(raw: dict) -> str | None:
    label = None
    note = raw.get("format_note")
    height = raw.get("height")
    for target_height, target_label in TARGET_RESOLUTIONS.items():
        if note == target_label or height == target_height:
            label = target_label
    return label


def deduplicate_by_resolution(entries: Sequence[FormatEntry]) -> list[FormatEntry]:
    """Keep one entry per resolution, in first-seen order.

    A later entry only displaces the kept one when it brings audio and
    the kept one has none; otherwise the first one seen stays.
    """
    slots: dict[str, FormatEntry] = {}
    for entry in entries:
        current = slots.get(entry.resolution)
        if current is None or (not current.has_audio and entry.has_audio):
            slots[entry.resolution] = entry
    return list(slots.values())


def select_formats(raw_formats: Sequence[Any]) -> list[FormatEntry]:
    entries: list[FormatEntry] = []
    for item in raw_formats:
        if not isinstance(item, dict):
            continue
        if item.get("ext") != "mp4" or not _has_codec(item.get("vcodec")):
            continue
        label = resolution_label(item)
        if label is None:
            continue
        entries.append(
            FormatEntry(
                resolution=label,
                url=str(item.get("url") or ""),
                has_audio=_has_codec(item.get("acodec")),
            )
        )
    return deduplicate_by_resolution(entries)


def find_audio_url(raw_formats: Sequence[Any]) -> str | None:
    for item in raw_formats:
        if not isinstance(item, dict):
            continue
        if (
            _has_codec(item.get("acodec"))
            and item.get("vcodec") == "none"
            and item.get("ext") == "m4a"
        ):
            return item.get("url") or None
    return None


# ---------------------------------------------------------------------------
# yt-dlp invocation
# ---------------------------------------------------------------------------


class StepStatus(str, Enum):
    OK = "ok"
    SOFT_FAIL = "soft_fail"
    HARD_FAIL = "hard_fail"


@dataclass(frozen=True)
class StepOutcome:
    status: StepStatus
    value: Any = None
    error: ExtractionError | None = None

    @property
    def ok(self) -> bool:
        return self.status is StepStatus.OK


def classify_tool_error(message: str) -> ExtractionError:
    if any(marker in message for marker in VERIFICATION_MARKERS):
        return VerificationRequiredError()
    if any(marker in message for marker in MISSING_RUNTIME_MARKERS):
        return ConfigurationError(
            "SERVER_CONFIGURATION_ERROR: yt-dlp binary is missing Python dependency "
            "or is not the standalone executable."
        )
    return ExtractionFailure(message or DEFAULT_FAILURE_MESSAGE)


def _yt_dlp_cmd_base(settings: ExtractorSettings) -> list[str]:
    return [settings.binary, "--no-playlist", "--no-progress"]


def metadata_command(settings: ExtractorSettings, url: str, cookie_args: list[str]) -> list[str]:
    return (
        _yt_dlp_cmd_base(settings)
        + ["--dump-json", "--no-warnings", "--skip-download", "--force-ipv4"]
        + cookie_args
        + [url]
    )


def subtitle_command(
    settings: ExtractorSettings,
    url: str,
    cookie_args: list[str],
    output_template: str,
) -> list[str]:
    return (
        _yt_dlp_cmd_base(settings)
        + [
            "--no-warnings",
            "--skip-download",
            "--write-auto-subs",
            "--write-subs",
            "--sub-langs",
            ",".join(SUBTITLE_LANGUAGES),
        ]
        + cookie_args
        + ["-o", output_template, url]
    )


def _run_tool(cmd: list[str], settings: ExtractorSettings, runner: Runner) -> subprocess.CompletedProcess:
    try:
        return runner(
            cmd,
            check=True,
            capture_output=True,
            text=True,
            timeout=settings.timeout_seconds,
        )
    except FileNotFoundError as exc:
        raise ConfigurationError("yt-dlp is not installed or not available in PATH.") from exc
    except OSError as exc:
        raise ConfigurationError(f"yt-dlp could not be started: {exc}") from exc
    except subprocess.TimeoutExpired as exc:
        raise ExtractionFailure("yt-dlp timed out while fetching video info.") from exc
    except subprocess.CalledProcessError as exc:
        error_output = (exc.stderr or exc.stdout or "").strip()
        raise classify_tool_error(error_output) from exc


def _parse_metadata(stdout: str) -> dict:
    for line in (stdout or "").splitlines():
        if line.strip():
            try:
                payload = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ExtractionFailure("yt-dlp returned invalid video metadata.") from exc
            if not isinstance(payload, dict):
                raise ExtractionFailure("yt-dlp returned an unexpected metadata structure.")
            return payload
    raise ExtractionFailure("yt-dlp returned no metadata for the given URL.")


def fetch_metadata(
    url: str,
    cookie_args: list[str],
    *,
    settings: ExtractorSettings,
    runner: Runner = subprocess.run,
) -> StepOutcome:
    cmd = metadata_command(settings, url, cookie_args)
    try:
        result = _run_tool(cmd, settings, runner)
        return StepOutcome(StepStatus.OK, value=_parse_metadata(result.stdout))
    except ExtractionError as exc:
        return StepOutcome(StepStatus.HARD_FAIL, error=exc)


def fetch_subtitles(
    url: str,
    cookie_args: list[str],
    *,
    settings: ExtractorSettings,
    runner: Runner = subprocess.run,
) -> StepOutcome:
    """Download captions and return their cleaned text.

    Failures never propagate: they come back as a soft failure carrying
    the error, and the caller proceeds without subtitles.
    """
    subtitle_id = uuid.uuid4().hex
    output_template = str(settings.temp_dir / f"{subtitle_id}.%(ext)s")
    cmd = subtitle_command(settings, url, cookie_args, output_template)
    try:
        try:
            _run_tool(cmd, settings, runner)
        except ExtractionError as exc:
            return StepOutcome(StepStatus.SOFT_FAIL, value="", error=exc)

        try:
            subtitle_file = find_subtitle_file(settings.temp_dir, subtitle_id)
            if subtitle_file is None:
                return StepOutcome(StepStatus.OK, value="")
            content = subtitle_file.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            return StepOutcome(
                StepStatus.SOFT_FAIL,
                value="",
                error=ExtractionFailure(f"Could not read subtitles: {exc}"),
            )
        return StepOutcome(StepStatus.OK, value=clean_vtt(content))
    finally:
        cleanup_subtitle_files(settings.temp_dir, subtitle_id)


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def build_result(info: dict, subtitles: str) -> ExtractionResult:
    raw_formats = info.get("formats")
    if not isinstance(raw_formats, list):
        raw_formats = []
    return ExtractionResult(
        title=info.get("title"),
        thumbnail=info.get("thumbnail"),
        description=info.get("description"),
        upload_date=info.get("upload_date"),
        view_count=_optional_int(info.get("view_count")),
        like_count=_optional_int(info.get("like_count")),
        comment_count=_optional_int(info.get("comment_count")),
        duration=_optional_int(info.get("duration")),
        channel=info.get("channel"),
        subtitles=subtitles,
        audio_url=find_audio_url(raw_formats),
        formats=tuple(select_formats(raw_formats)),
    )


def extract_video_info(
    url: str,
    cookies: str | None = None,
    *,
    settings: ExtractorSettings,
    runner: Runner = subprocess.run,
) -> ExtractionResult:
    """Fetch metadata and subtitles for *url* and normalize them.

    Raises
    ------
    ValidationError
        If *url* is empty.
    VerificationRequiredError
        When the site asks for sign-in or bot verification.
    ConfigurationError
        When yt-dlp cannot run in this deployment.
    ExtractionFailure
        For any other metadata failure.
    """
    if not url or not url.strip():
        raise ValidationError("URL is required")
    url = url.strip()

    with materialize_cookies(cookies, settings.temp_dir) as material:
        cookie_args = material.args()

        outcome = fetch_metadata(url, cookie_args, settings=settings, runner=runner)
        if not outcome.ok and material.kind is CookieKind.HEADER:
            logger.warning(
                "Metadata extraction with cookies failed, retrying without cookies: %s",
                outcome.error,
            )
            outcome = fetch_metadata(url, [], settings=settings, runner=runner)
        if not outcome.ok:
            logger.error("yt-dlp metadata extraction failed: %s", outcome.error)
            raise outcome.error

        subtitle_outcome = fetch_subtitles(url, cookie_args, settings=settings, runner=runner)
        if subtitle_outcome.status is StepStatus.SOFT_FAIL:
            logger.warning("Subtitle download failed or no subtitles found: %s", subtitle_outcome.error)

        return build_result(outcome.value, subtitle_outcome.value or "")
