"""
Whisper speech-to-text for uploaded match/practice recordings.

Files above the Whisper API's 25MB request limit are split with FFmpeg, transcribed
chunk by chunk and stitched back together on a single timeline.

FFmpeg is only needed for the large-file path:
    macOS: brew install ffmpeg
    Ubuntu: apt install ffmpeg
"""
import json
import logging
import math
import os
import shutil
import subprocess
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path

import openai

from tennis_trainer.errors import TranscriptionError, is_connection_error, is_timeout, vendor_status
from tennis_trainer.retry import call_with_backoff

logger = logging.getLogger(__name__)

OPENAI_KEY = (os.environ.get("OPENAI_API_KEY") or "").strip()
OPENAI_API_TIMEOUT = float(os.environ.get("OPENAI_API_TIMEOUT") or 300)
WHISPER_MODEL = "whisper-1"

MB = 1024 * 1024
MAX_UPLOAD_MB = int(os.environ.get("MAX_UPLOAD_MB") or 25)
MAX_UPLOAD_BYTES = MAX_UPLOAD_MB * MB
WHISPER_MAX_BYTES = 25 * MB
# Re-encoded chunks aim below the API limit so container overhead never tips one over
CHUNK_TARGET_BYTES = int(WHISPER_MAX_BYTES * 0.9)

WHISPER_FORMATS = {".flac", ".m4a", ".mp3", ".mp4", ".mpeg", ".mpga", ".oga", ".ogg", ".wav", ".webm"}
SUPPORTED_FORMATS = WHISPER_FORMATS | {".opus"}


def get_openai_client(api_key: str = None):
    key = (api_key or OPENAI_KEY or "").strip()
    if not key:
        raise TranscriptionError("OPENAI_API_KEY not configured", status_code=503)
    # Retries are handled by call_with_backoff
    return openai.OpenAI(api_key=key, timeout=OPENAI_API_TIMEOUT, max_retries=0)


# ─────────────────────────────────────────
# VALIDATION
# ─────────────────────────────────────────

def validate_audio_file(file_path: str, original_name: str, file_size: int) -> bool:
    if file_size > MAX_UPLOAD_BYTES:
        raise TranscriptionError(
            f"File size exceeds {MAX_UPLOAD_MB}MB limit. Current size: {round(file_size / MB)}MB",
            status_code=413,
        )

    ext = Path(original_name or "").suffix.lower()
    if ext not in SUPPORTED_FORMATS:
        raise TranscriptionError(
            f"Unsupported audio format: {ext or 'none'}. Supported formats: {', '.join(sorted(SUPPORTED_FORMATS))}",
            status_code=400,
        )

    if not os.path.exists(file_path):
        raise TranscriptionError("Audio file not found", status_code=400)

    return True


def convert_opus_to_ogg(opus_path: str) -> tuple[str, bool]:
    """Whisper accepts Ogg Opus only under an Ogg extension. Returns (path, is_temporary)."""
    path = Path(opus_path)
    if path.suffix.lower() != ".opus":
        return str(path), False
    ogg_path = path.with_suffix(".ogg")
    try:
        shutil.copyfile(path, ogg_path)
    except OSError as e:
        logger.error("Failed to convert .opus file: %s", e)
        raise TranscriptionError("Could not convert .opus file. Please convert to MP3 or WAV format.")
    logger.info("Converted .opus to .ogg: %s", ogg_path.name)
    return str(ogg_path), True


def cleanup_file(file_path: str) -> bool:
    """Best-effort delete. Never raises."""
    try:
        if file_path and os.path.exists(file_path):
            os.unlink(file_path)
            logger.debug("Cleaned up file: %s", file_path)
            return True
    except OSError as e:
        logger.error("Error cleaning up file %s: %s", file_path, e)
    return False


# ─────────────────────────────────────────
# WHISPER CALL
# ─────────────────────────────────────────

def _as_dict(obj) -> dict:
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    return dict(vars(obj))


def translate_openai_error(error: Exception, file_size_mb: str = "unknown") -> TranscriptionError:
    status = vendor_status(error)
    message = str(error)
    if status == 401:
        return TranscriptionError("Invalid OpenAI API key")
    if status == 413:
        return TranscriptionError("Audio file too large for OpenAI API", status_code=413)
    if status == 400:
        if "file format" in message.lower():
            return TranscriptionError(
                "Audio file format not supported by Whisper API. Please convert to MP3, WAV, or another supported format.",
                status_code=400,
            )
        return TranscriptionError(f"Bad request: {message or 'Invalid file format or parameters'}", status_code=400)
    if status == 429:
        return TranscriptionError("OpenAI API rate limit exceeded. Please try again later.", status_code=429)
    if status is not None and status >= 500:
        return TranscriptionError("OpenAI API server error. Please try again later.", status_code=502)
    if is_timeout(error):
        return TranscriptionError(
            f"Request timeout. The audio file ({file_size_mb}MB) may be too large or the connection is slow. "
            "Try a smaller file or check your internet connection.",
            status_code=504,
        )
    if is_connection_error(error):
        return TranscriptionError(
            "Connection error: Unable to reach OpenAI API. Please check your internet connection, "
            "firewall settings, or VPN.",
            status_code=502,
        )
    return TranscriptionError(f"Transcription failed: {message}")


def transcribe_audio(file_path: str, client=None, language: str = None, prompt: str = None,
                     response_format: str = "verbose_json", temperature: float = 0) -> dict:
    """Send one file to Whisper. Returns {text, language, duration, segments, words}."""
    try:
        file_size_mb = f"{os.path.getsize(file_path) / MB:.2f}"
    except OSError:
        file_size_mb = "unknown"
    logger.info("Starting transcription for file: %s (%sMB)", file_path, file_size_mb)

    client = client or get_openai_client()
    params = {
        "model": WHISPER_MODEL,
        "response_format": response_format,
        "temperature": temperature,
    }
    if language:
        params["language"] = language
    if prompt and prompt.strip():
        params["prompt"] = prompt
    if response_format == "verbose_json":
        params["timestamp_granularities"] = ["segment", "word"]

    def _call():
        # Reopen per attempt: a failed upload leaves the handle at EOF
        with open(file_path, "rb") as f:
            started = time.monotonic()
            result = client.audio.transcriptions.create(file=f, **params)
            logger.info("OpenAI API call completed in %.2fs", time.monotonic() - started)
            return result

    try:
        result = call_with_backoff(_call, label="Transcription")
    except TranscriptionError:
        raise
    except Exception as e:
        logger.error("Transcription error: %s", e)
        raise translate_openai_error(e, file_size_mb) from e

    if isinstance(result, str):
        return {"text": result, "language": None, "duration": None, "segments": [], "words": []}

    data = _as_dict(result)
    return {
        "text": data.get("text") or "",
        "language": data.get("language"),
        "duration": data.get("duration"),
        "segments": [_as_dict(s) for s in (data.get("segments") or [])],
        "words": [_as_dict(w) for w in (data.get("words") or [])],
    }


# ─────────────────────────────────────────
# LARGE FILES: SPLIT + MERGE
# ─────────────────────────────────────────

def ffmpeg_available() -> bool:
    return shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None


def get_audio_duration(file_path: str) -> float:
    """Uses FFprobe to get duration in seconds."""
    cmd = ["ffprobe", "-v", "quiet", "-print_format", "json", "-show_format", file_path]
    result = subprocess.run(cmd, capture_output=True, text=True, timeout=60)
    if result.returncode != 0:
        raise TranscriptionError(f"FFprobe failed: {result.stderr.strip() or 'unknown error'}")
    try:
        return float(json.loads(result.stdout)["format"]["duration"])
    except (KeyError, TypeError, ValueError) as e:
        raise TranscriptionError(f"Could not read audio duration: {e}")


def plan_chunks(file_size: int, duration: float, target_bytes: int = CHUNK_TARGET_BYTES) -> list[tuple[float, float]]:
    """Evenly sized (start, length) windows in seconds covering the whole recording."""
    count = max(1, math.ceil(file_size / target_bytes))
    length = duration / count
    return [(i * length, length) for i in range(count)]


def split_audio(file_path: str, chunks: list[tuple[float, float]], workdir: str) -> list[str]:
    """Cut the recording into mono 64kbps mp3 pieces, one per planned window."""
    paths = []
    for i, (start, length) in enumerate(chunks):
        out = os.path.join(workdir, f"chunk_{i:03d}.mp3")
        cmd = [
            "ffmpeg",
            "-ss", f"{start:.3f}",
            "-t", f"{length:.3f}",
            "-i", file_path,
            "-vn",
            "-ac", "1",
            "-b:a", "64k",
            "-y",
            out,
        ]
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=600)
        if result.returncode != 0:
            raise TranscriptionError(f"FFmpeg failed: {result.stderr.strip()[-500:]}")
        paths.append(out)
    logger.info("Split %s into %d chunks", Path(file_path).name, len(paths))
    return paths


def _chunk_duration(chunk: dict) -> float:
    if chunk.get("duration") is not None:
        return float(chunk["duration"])
    segments = chunk.get("segments") or []
    return float(segments[-1].get("end") or 0) if segments else 0.0


def merge_transcription_chunks(chunks: list[dict]) -> dict:
    """Stitch per-chunk transcriptions onto one timeline.

    Each chunk's timestamps are shifted by the summed durations of the chunks before
    it, so merged segments stay in order and the merged duration is the total.
    """
    texts, segments, words = [], [], []
    language = None
    offset = 0.0
    for chunk in chunks:
        text = (chunk.get("text") or "").strip()
        if text:
            texts.append(text)
        language = language or chunk.get("language")
        for seg in chunk.get("segments") or []:
            segments.append({
                **seg,
                "id": len(segments),
                "start": (seg.get("start") or 0) + offset,
                "end": (seg.get("end") or 0) + offset,
            })
        for word in chunk.get("words") or []:
            words.append({
                **word,
                "start": (word.get("start") or 0) + offset,
                "end": (word.get("end") or 0) + offset,
            })
        offset += _chunk_duration(chunk)

    return {
        "text": " ".join(texts),
        "language": language,
        "duration": offset,
        "segments": segments,
        "words": words,
    }


def transcribe_large_file(file_path: str, file_size: int, client=None, **options) -> tuple[dict, int]:
    if not ffmpeg_available():
        raise TranscriptionError(
            f"Audio file is larger than the {WHISPER_MAX_BYTES // MB}MB Whisper limit and FFmpeg is not "
            "installed to split it. Please upload a shorter recording.",
            status_code=413,
        )
    duration = get_audio_duration(file_path)
    plan = plan_chunks(file_size, duration)
    logger.info("File is %.1fMB, transcribing in %d chunks", file_size / MB, len(plan))

    with tempfile.TemporaryDirectory() as workdir:
        pieces = split_audio(file_path, plan, workdir)
        results = []
        # One Whisper request in flight per upload
        for i, piece in enumerate(pieces):
            logger.info("Transcribing chunk %d/%d", i + 1, len(pieces))
            results.append(transcribe_audio(piece, client=client, **options))
    return merge_transcription_chunks(results), len(pieces)


# ─────────────────────────────────────────
# PIPELINE: what the /api/transcribe route calls
# ─────────────────────────────────────────

def process_audio_file(file_path: str, original_name: str, file_size: int, options: dict = None, client=None) -> dict:
    options = dict(options or {})
    temp_file = None
    try:
        validate_audio_file(file_path, original_name, file_size)

        ext = Path(original_name).suffix.lower()
        actual_path = file_path
        if ext == ".opus":
            actual_path, is_temp = convert_opus_to_ogg(file_path)
            if is_temp:
                temp_file = actual_path

        if file_size > WHISPER_MAX_BYTES:
            transcription, chunk_count = transcribe_large_file(actual_path, file_size, client=client, **options)
        else:
            transcription, chunk_count = transcribe_audio(actual_path, client=client, **options), 1

        return {
            "success": True,
            "transcription": transcription,
            "metadata": {
                "model": WHISPER_MODEL,
                "response_format": options.get("response_format", "verbose_json"),
                "processing_time": datetime.now(timezone.utc).isoformat(),
                "chunks": chunk_count,
            },
            "file_info": {
                "original_name": original_name,
                "file_size": file_size,
                "file_extension": ext,
            },
        }
    finally:
        if temp_file:
            cleanup_file(temp_file)


def get_transcription_stats(result: dict) -> dict | None:
    if not result.get("success") or not result.get("transcription"):
        return None
    t = result["transcription"]
    text = t.get("text") or ""
    return {
        "word_count": len(text.split()),
        "character_count": len(text),
        "duration_seconds": t.get("duration") or 0,
        "language": t.get("language") or "unknown",
        "segments_count": len(t.get("segments") or []),
        "words_with_timestamps": len(t.get("words") or []),
    }


def format_transcription_for_display(result: dict) -> dict | None:
    if not result.get("success"):
        return None
    t = result["transcription"]
    return {
        "text": t.get("text"),
        "language": t.get("language"),
        "duration": t.get("duration"),
        "statistics": get_transcription_stats(result),
        "segments": [
            {"id": s.get("id"), "start": s.get("start"), "end": s.get("end"), "text": s.get("text")}
            for s in t.get("segments") or []
        ],
        "words": [
            {"word": w.get("word"), "start": w.get("start"), "end": w.get("end"), "confidence": w.get("confidence")}
            for w in t.get("words") or []
        ],
    }
