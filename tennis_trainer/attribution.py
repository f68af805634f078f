"""
Attribution analysis: transcript → Claude → validated segment-by-segment analysis.

Long transcripts are split on sentence boundaries, analysed chunk by chunk and the
partial analyses merged into one result with a recomputed summary.
"""
import json
import logging
import math
import os
import re
import time
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path

import anthropic
from pydantic import ValidationError

from tennis_trainer.errors import AnalysisFormatError, AttributionError, is_timeout, vendor_status
from tennis_trainer.prompts import PATTERN_TYPES, build_analysis_prompt, build_reframe_prompt
from tennis_trainer.retry import call_with_backoff
from tennis_trainer.schemas import AttributionResult, ReframeScore, validation_message

logger = logging.getLogger(__name__)

CLAUDE_KEY = (os.environ.get("CLAUDE_API_KEY") or os.environ.get("ANTHROPIC_API_KEY") or "").strip()
CLAUDE_MODEL = os.environ.get("CLAUDE_MODEL") or "claude-sonnet-4-5-20250929"
CLAUDE_API_TIMEOUT = float(os.environ.get("CLAUDE_API_TIMEOUT") or 60)

MAX_TOKENS_PER_REQUEST = 8000
REFRAME_MAX_TOKENS = 1000
# Small enough that a chunk's analysis fits in MAX_TOKENS_PER_REQUEST
CHUNK_SIZE = 4000
# Upper bound on text accepted for analysis; about 125 chunks
MAX_TRANSCRIPTION_CHARS = 500_000
HELPFUL_THRESHOLD = 7

SAMPLE_ANALYSIS_PATH = Path(__file__).resolve().parent / "data" / "sample_analysis.json"


def get_claude_client(api_key: str = None):
    key = (api_key or CLAUDE_KEY or "").strip()
    if not key:
        raise AttributionError("CLAUDE_API_KEY not configured", status_code=503)
    return anthropic.Anthropic(api_key=key, timeout=CLAUDE_API_TIMEOUT, max_retries=0)


def estimate_token_count(text: str) -> int:
    """Rough approximation: 1 token ≈ 4 characters."""
    return math.ceil(len(text or "") / 4)


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _percent(part: int, whole: int) -> int:
    return _round_half_up(part / whole * 100) if whole else 0


# ─────────────────────────────────────────
# CHUNKING
# ─────────────────────────────────────────

def chunk_transcription(transcription: str, chunk_size: int = CHUNK_SIZE) -> list[str]:
    """Greedy sentence packing. A single sentence longer than chunk_size stays whole."""
    if len(transcription) <= chunk_size:
        return [transcription]

    chunks = []
    current = ""
    for sentence in re.split(r"(?<=[.!?])\s+", transcription.strip()):
        if current and len(current) + 1 + len(sentence) > chunk_size:
            chunks.append(current.strip())
            current = sentence
        else:
            current = f"{current} {sentence}" if current else sentence
    if current.strip():
        chunks.append(current.strip())
    return chunks


# ─────────────────────────────────────────
# JSON EXTRACTION + REPAIR
# ─────────────────────────────────────────

_CLOSERS = {"{": "}", "[": "]"}


def _last_complete_segment(text: str) -> tuple[int, list[str]] | None:
    """Position just after the last fully closed element of the top-level "segments"
    array, with the containers still open at that point. None if there is none."""
    stack = []
    in_string = escaped = False
    string_start = 0
    last_string = None
    segments_depth = None
    cut = None

    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
                last_string = text[string_start:i]
            continue

        if ch == '"':
            in_string = True
            string_start = i + 1
        elif ch in _CLOSERS:
            stack.append(ch)
            if ch == "[" and last_string == "segments" and len(stack) == 2:
                segments_depth = len(stack)
        elif ch in "}]":
            if not stack or _CLOSERS[stack.pop()] != ch:
                return cut
            if segments_depth is None:
                continue
            if ch == "}" and len(stack) == segments_depth:
                cut = (i + 1, list(stack))
            elif ch == "]" and len(stack) < segments_depth:
                segments_depth = None
    return cut


def repair_truncated_json(text: str):
    """Parse text, recovering from truncation inside the "segments" array.

    The incomplete trailing segment is dropped and the open containers closed. If that
    still doesn't parse, the ORIGINAL JSONDecodeError is raised.
    """
    try:
        return json.loads(text)
    except json.JSONDecodeError as original:
        cut = _last_complete_segment(text)
        if cut is None:
            raise
        end, still_open = cut
        candidate = text[:end] + "".join(_CLOSERS[c] for c in reversed(still_open))
        try:
            repaired = json.loads(candidate)
        except json.JSONDecodeError:
            raise original
        logger.warning("Repaired truncated JSON: kept %d of %d characters", end, len(text))
        return repaired


def extract_json_object(text: str):
    cleaned = (text or "").strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```(?:json)?\s*", "", cleaned, flags=re.IGNORECASE)
        cleaned = re.sub(r"\s*```\s*$", "", cleaned)

    start = cleaned.find("{")
    if start < 0:
        raise AnalysisFormatError("No valid JSON found in response", raw_response=text or "")
    end = cleaned.rfind("}") + 1
    if end > start:
        try:
            return json.loads(cleaned[start:end])
        except json.JSONDecodeError:
            pass
    try:
        return repair_truncated_json(cleaned[start:])
    except json.JSONDecodeError as e:
        raise AnalysisFormatError(f"Claude returned malformed JSON: {e}", raw_response=text) from e


# ─────────────────────────────────────────
# SUMMARY + MERGE
# ─────────────────────────────────────────

def empty_analysis() -> dict:
    return {
        "segments": [],
        "analysis_summary": {
            "total_segments": 0,
            "pattern_distribution": {},
            "helpful_thought_ratio": "0%",
            "average_intensity": "medium",
            "focus_direction_ratio": "0% forward",
            "attribution_count": 0,
            "average_attribution_quality": 0,
            "dominant_patterns": [],
            "key_insights": [],
        },
    }


def _unique(items, limit: int) -> list:
    seen = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen[:limit]


def summarize_segments(segments: list[dict], chunk_summaries: list[dict] = None) -> dict:
    """Summary metrics computed from the segments themselves.

    Pattern counts, insights and dominant patterns come from the per-chunk summaries
    when given, otherwise from the segments' own patterns.
    """
    total = len(segments)
    helpful = sum(1 for s in segments if (s.get("helpfulness_score") or 0) >= HELPFUL_THRESHOLD)
    forward = sum(1 for s in segments if s.get("focus_direction") == "forward")
    attributed = [s for s in segments if (s.get("attribution_analysis") or {}).get("has_attribution")]
    avg_quality = 0
    if attributed:
        scores = [s["attribution_analysis"].get("attribution_quality_score") or 0 for s in attributed]
        avg_quality = _round_half_up(sum(scores) / len(scores))

    patterns = [p for s in segments for p in (s.get("psychological_patterns") or [])]
    intensities = Counter(p.get("intensity") for p in patterns if p.get("intensity"))
    average_intensity = intensities.most_common(1)[0][0] if intensities else "medium"

    distribution = {key: 0 for key in PATTERN_TYPES}
    insights, dominant = [], []
    if chunk_summaries:
        for summary in chunk_summaries:
            for key in PATTERN_TYPES:
                distribution[key] += (summary.get("pattern_distribution") or {}).get(key) or 0
            insights.extend(summary.get("key_insights") or [])
            dominant.extend(summary.get("dominant_patterns") or [])
    else:
        for p in patterns:
            if p.get("type") in distribution:
                distribution[p["type"]] += 1
        dominant = [k for k, n in sorted(distribution.items(), key=lambda kv: -kv[1]) if n > 0]

    return {
        "total_segments": total,
        "helpful_thought_ratio": f"{_percent(helpful, total)}%",
        "average_intensity": average_intensity,
        "focus_direction_ratio": f"{_percent(forward, total)}% forward",
        "attribution_count": len(attributed),
        "average_attribution_quality": avg_quality,
        "pattern_distribution": distribution,
        "key_insights": _unique(insights, 5),
        "dominant_patterns": _unique(dominant, 3),
    }


def merge_chunk_results(chunk_results: list[dict]) -> dict:
    if not chunk_results:
        return empty_analysis()
    if len(chunk_results) == 1:
        return chunk_results[0]

    segments = []
    for result in chunk_results:
        for segment in result.get("segments") or []:
            segments.append({**segment, "segment_id": len(segments) + 1})

    summaries = [r.get("analysis_summary") or {} for r in chunk_results]
    return {"segments": segments, "analysis_summary": summarize_segments(segments, summaries)}


def validate_analysis(data, raw_response: str = "") -> dict:
    """Fail fast unless data has the segments/analysis_summary structure.

    A missing summary (what truncation usually costs) is rebuilt from the segments.
    """
    if not isinstance(data, dict):
        raise AnalysisFormatError("Expected a JSON object with segments", raw_response=raw_response)
    missing_summary = "analysis_summary" not in data
    candidate = {**data, "analysis_summary": {}} if missing_summary else data
    try:
        AttributionResult.model_validate(candidate)
    except ValidationError as e:
        raise AnalysisFormatError(
            f"Analysis did not match the expected structure: {validation_message(e)}",
            raw_response=raw_response,
        ) from e
    if missing_summary:
        candidate["analysis_summary"] = summarize_segments(candidate["segments"])
    return candidate


# ─────────────────────────────────────────
# CLAUDE CALLS
# ─────────────────────────────────────────

def _response_text(response) -> str:
    return "".join(
        getattr(block, "text", "") for block in (response.content or [])
        if getattr(block, "type", "text") == "text"
    )


def translate_claude_error(error: Exception) -> AttributionError:
    if isinstance(error, AttributionError):
        return error
    status = vendor_status(error)
    if status == 401:
        return AttributionError("Invalid Claude API key")
    if status == 429:
        return AttributionError("Claude API rate limit exceeded", status_code=429)
    if status is not None and status >= 500:
        return AttributionError("Claude API server error", status_code=502)
    if is_timeout(error):
        return AttributionError(
            "Request timeout. The transcription may be too long. Try breaking it into smaller segments.",
            status_code=504,
        )
    return AttributionError(f"Attribution analysis failed: {error}")


def analyze_chunk(chunk: str, chunk_index: int, total_chunks: int, client) -> dict:
    started = time.monotonic()
    response = call_with_backoff(
        client.messages.create,
        label=f"Attribution chunk {chunk_index + 1}/{total_chunks}",
        model=CLAUDE_MODEL,
        max_tokens=MAX_TOKENS_PER_REQUEST,
        temperature=0.3,
        messages=[{"role": "user", "content": build_analysis_prompt(chunk, chunk_index, total_chunks)}],
    )
    logger.info("Claude API call completed in %.2fs", time.monotonic() - started)
    if getattr(response, "stop_reason", None) == "max_tokens":
        logger.warning("Chunk %d/%d hit max_tokens, response is truncated", chunk_index + 1, total_chunks)

    text = _response_text(response)
    return validate_analysis(extract_json_object(text), raw_response=text)


def _analyze_chunks(chunks: list[str], client) -> tuple[list[dict], int]:
    results, failures = [], []
    # One Claude request in flight at a time
    for i, chunk in enumerate(chunks):
        logger.info("Processing chunk %d/%d...", i + 1, len(chunks))
        try:
            results.append(analyze_chunk(chunk, i, len(chunks), client))
        except Exception as e:
            logger.error("Failed to process chunk %d: %s", i + 1, e)
            failures.append(e)

    if not results:
        error = translate_claude_error(failures[0])
        if error is failures[0]:
            raise error
        raise error from failures[0]
    return results, len(failures)


def _run_analysis(transcription: str, client) -> tuple[dict, int, int]:
    """Returns (merged analysis, chunks processed, chunks failed)."""
    if not transcription or not transcription.strip():
        raise AttributionError("No transcription provided for analysis", status_code=400)
    client = client or get_claude_client()

    chunks = chunk_transcription(transcription)
    logger.info("Processing %d chunk(s) for analysis (transcription length: %d characters)",
                len(chunks), len(transcription))
    results, failed = _analyze_chunks(chunks, client)
    analysis = merge_chunk_results(results)
    logger.info("Segment-based analysis completed. Found %d segments.", len(analysis["segments"]))
    return analysis, len(chunks), failed


def analyze_attributions(transcription: str, client=None) -> dict:
    """Full analysis of a transcript. Chunks that fail are skipped unless all of them do."""
    return _run_analysis(transcription, client)[0]


def process_transcription(transcription: str, client=None) -> dict:
    analysis, processed, failed = _run_analysis(transcription, client)
    return {
        "success": True,
        "data": analysis,
        "metadata": {
            "transcription_length": len(transcription),
            "estimated_tokens": estimate_token_count(transcription),
            "analysis_timestamp": datetime.now(timezone.utc).isoformat(),
            "segments_found": len(analysis["segments"]),
            "chunks_processed": processed,
            "chunks_failed": failed,
            "model": CLAUDE_MODEL,
        },
    }


# ─────────────────────────────────────────
# REFRAME SCORING
# ─────────────────────────────────────────

def _clamp_score(value, default: float = 5):
    try:
        v = float(value)
    except (TypeError, ValueError):
        v = float(default)
    v = max(1.0, min(10.0, v))
    return int(v) if v.is_integer() else v


def _fallback_score(feedback: str, improvements: list[str]) -> dict:
    return {
        "helpfulness_score": 5,
        "attribution_analysis": {"has_attribution": False, "attribution_quality_score": None},
        "feedback": feedback,
        "improvements": improvements,
        "overall_score": 5,
        "fallback": True,
    }


def score_reframe(original_quote: str, player_reframe: str, context: str = "", client=None) -> dict:
    """Score a player's rewritten thought. Vendor or parsing failures give a neutral 5/10."""
    client = client or get_claude_client()
    try:
        response = call_with_backoff(
            client.messages.create,
            label="Reframe scoring",
            model=CLAUDE_MODEL,
            max_tokens=REFRAME_MAX_TOKENS,
            temperature=0.3,
            messages=[{"role": "user", "content": build_reframe_prompt(original_quote, player_reframe, context)}],
        )
    except Exception as e:
        logger.error("Reframe scoring error: %s", e)
        if is_timeout(e):
            return _fallback_score(
                "Request timeout. Please try again with a shorter reframe.",
                ["Keep your reframe concise", "Focus on one key improvement"],
            )
        return _fallback_score(
            "Unable to analyze reframe due to technical error. Try making your comment more specific and constructive.",
            ["Focus on specific improvements", "Use forward-looking language"],
        )

    text = _response_text(response)
    try:
        start, end = text.find("{"), text.rfind("}") + 1
        if start < 0 or end <= start:
            raise ValueError("No JSON found in response")
        parsed = ReframeScore.model_validate(json.loads(text[start:end]))
    except (ValueError, ValidationError) as e:
        logger.error("Error parsing score response: %s", e)
        return _fallback_score(
            "Unable to analyze reframe properly. Try making your reframe more specific and forward-focused.",
            ["Be more specific about what to do differently", "Focus on the next point rather than past mistakes"],
        )

    helpfulness = _clamp_score(parsed.helpfulness_score)
    attribution = dict(parsed.attribution_analysis or {})
    attribution["has_attribution"] = bool(attribution.get("has_attribution"))
    if attribution["has_attribution"]:
        attribution["attribution_quality_score"] = _clamp_score(attribution.get("attribution_quality_score"))
        overall = _round_half_up((helpfulness + attribution["attribution_quality_score"]) / 2)
    else:
        attribution["attribution_quality_score"] = None
        overall = helpfulness

    logger.info("Reframe scoring completed. Helpfulness: %s/10, Attribution: %s/10",
                helpfulness, attribution["attribution_quality_score"] or "N/A")
    return {
        "helpfulness_score": helpfulness,
        "attribution_analysis": attribution,
        "feedback": parsed.feedback,
        "improvements": parsed.improvements,
        "overall_score": overall,
        "fallback": False,
    }


def load_sample_analysis() -> dict:
    """Canned analysis for demo mode. No API calls."""
    with SAMPLE_ANALYSIS_PATH.open("r", encoding="utf-8") as handle:
        return json.load(handle)
