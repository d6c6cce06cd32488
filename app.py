from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from flask import Flask, current_app, jsonify, render_template, request

from extraction import (
    ExtractionError,
    ExtractionResult,
    ExtractorSettings,
    ValidationError,
    VerificationRequiredError,
    extract_video_info,
)

logger = logging.getLogger(__name__)

YTDLP_NAME = "yt-dlp"
USER_YTDLP_PATHS = (
    Path("Library/Python/3.12/bin") / YTDLP_NAME,
    Path(".local/bin") / YTDLP_NAME,
)
SYSTEM_YTDLP_PATH = Path("/Library/Frameworks/Python.framework/Versions/3.12/bin") / YTDLP_NAME

URL_REQUIRED_MESSAGE = "URL is required"
VERIFICATION_MESSAGE = "Verification required. Please provide fresh cookies."
VERIFICATION_HINT = (
    "YouTube asked for human verification. This usually happens when automated requests are blocked. "
    "Copy the latest cookies from a browser session that has passed verification and paste them below."
)
GENERIC_FAILURE_MESSAGE = "Failed to extract video info"


def _env_flag(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def ytdlp_binary_candidates(environ: Mapping[str, str], cwd: Path, home: Path) -> list[Path]:
    candidates: list[Path] = []
    if environ.get("VERCEL"):
        candidates.append(cwd / "bin" / YTDLP_NAME)
    candidates.extend(home / rel for rel in USER_YTDLP_PATHS)
    candidates.append(SYSTEM_YTDLP_PATH)
    return candidates


def resolve_ytdlp_binary(environ: Mapping[str, str], cwd: Path, home: Path) -> str:
    override = (environ.get("YTDLP_BINARY") or "").strip()
    if override:
        return override
    for candidate in ytdlp_binary_candidates(environ, cwd, home):
        if candidate.is_file():
            return str(candidate)
    if environ.get("VERCEL"):
        logger.error("Bundled yt-dlp binary not found at %s", cwd / "bin" / YTDLP_NAME)
    # Left to PATH lookup when the process is spawned.
    return YTDLP_NAME


def resolve_temp_dir(environ: Mapping[str, str], cwd: Path) -> Path:
    override = (environ.get("YTDLP_TEMP_DIR") or "").strip()
    if override:
        return Path(override).expanduser()
    if environ.get("VERCEL"):
        return Path("/tmp")
    return cwd / "temp"


def resolve_timeout(environ: Mapping[str, str]) -> int | None:
    raw = (environ.get("YTDLP_TIMEOUT_SECONDS") or "").strip()
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid YTDLP_TIMEOUT_SECONDS=%r", raw)
        return None
    return value if value > 0 else None


def load_settings(environ: Mapping[str, str] | None = None) -> ExtractorSettings:
    environ = os.environ if environ is None else environ
    cwd = Path.cwd()
    temp_dir = resolve_temp_dir(environ, cwd)
    temp_dir.mkdir(parents=True, exist_ok=True)
    settings = ExtractorSettings(
        binary=resolve_ytdlp_binary(environ, cwd, Path.home()),
        temp_dir=temp_dir,
        timeout_seconds=resolve_timeout(environ),
    )
    logger.info("Using yt-dlp binary %s with temp dir %s", settings.binary, settings.temp_dir)
    return settings


app = Flask(__name__)
app.config["EXTRACTOR_SETTINGS"] = load_settings()


@app.template_filter("upload_date")
def format_upload_date(value: str | None) -> str:
    if value and len(value) == 8:
        return f"{value[:4]}-{value[4:6]}-{value[6:]}"
    return value or ""


@app.template_filter("duration")
def format_duration(seconds: int | None) -> str:
    if not seconds:
        return ""
    hours, remainder = divmod(int(seconds), 3600)
    minutes, secs = divmod(remainder, 60)
    prefix = f"{hours}:" if hours > 0 else ""
    return f"{prefix}{minutes:02d}:{secs:02d}"


@app.template_filter("thousands")
def format_thousands(value: int | None) -> str:
    if value is None:
        return ""
    return f"{value:,}"


def _request_fields() -> tuple[object, str | None]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = request.form
    cookies = payload.get("cookies")
    return payload.get("url"), cookies if isinstance(cookies, str) else None


def _run_extraction(url: object, cookies: str | None) -> ExtractionResult:
    if not isinstance(url, str) or not url.strip():
        raise ValidationError(URL_REQUIRED_MESSAGE)
    return extract_video_info(url, cookies, settings=current_app.config["EXTRACTOR_SETTINGS"])


def _error_status(exc: Exception) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, VerificationRequiredError):
        return 403
    return 500


def _error_message(exc: Exception) -> str:
    if isinstance(exc, VerificationRequiredError):
        return VERIFICATION_MESSAGE
    return str(exc) or GENERIC_FAILURE_MESSAGE


def _render_index(
    *,
    url: str = "",
    cookies: str = "",
    result: ExtractionResult | None = None,
    error: str | None = None,
    verification_required: bool = False,
):
    return render_template(
        "index.html",
        url=url,
        cookies=cookies,
        result=result,
        error=error,
        verification_required=verification_required,
        verification_hint=VERIFICATION_HINT,
    )


@app.get("/")
def index():
    return _render_index()


@app.post("/extract")
def extract_page():
    url, cookies = _request_fields()
    try:
        result = _run_extraction(url, cookies)
    except ExtractionError as exc:
        logger.warning("Extraction error: %s", exc)
        return _render_index(
            url=url if isinstance(url, str) else "",
            cookies=cookies or "",
            error=_error_message(exc),
            verification_required=isinstance(exc, VerificationRequiredError),
        ), _error_status(exc)
    except Exception as exc:
        logger.exception("Unexpected extraction error")
        return _render_index(
            url=url if isinstance(url, str) else "",
            cookies=cookies or "",
            error=_error_message(exc),
        ), 500
    return _render_index(url=url, cookies=cookies or "", result=result)


@app.post("/api/video/extract")
def extract_api():
    url, cookies = _request_fields()
    try:
        result = _run_extraction(url, cookies)
    except VerificationRequiredError as exc:
        logger.warning("Extraction error: %s", exc)
        return jsonify({"error": VERIFICATION_MESSAGE, "code": exc.code}), 403
    except ExtractionError as exc:
        logger.warning("Extraction error: %s", exc)
        return jsonify({"error": _error_message(exc)}), _error_status(exc)
    except Exception as exc:
        logger.exception("Unexpected extraction error")
        return jsonify({"error": _error_message(exc)}), 500
    return jsonify(result.to_dict())


if __name__ == "__main__":
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    host = os.environ.get("HOST", "127.0.0.1")
    port = int(os.environ.get("PORT", "5000"))
    debug_enabled = _env_flag(os.environ.get("FLASK_DEBUG"))
    app.run(host=host, port=port, debug=debug_enabled)
