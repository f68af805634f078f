"""
Session, pattern and profile storage in Supabase.
Requires: SUPABASE_URL, SUPABASE_SERVICE_KEY (service role; bypasses RLS, so every
query here filters by player_id itself).
"""
import logging
import os
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError

from tennis_trainer.errors import StorageError
from tennis_trainer.schemas import AttributionResult, validation_message
from tennis_trainer.security import decrypt, encrypt

logger = logging.getLogger(__name__)

SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_KEY = os.environ.get("SUPABASE_SERVICE_KEY") or os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")

SESSION_TYPES = ("match", "practice", "training", "reflection")
# Role changes go through an admin in the Supabase dashboard
EDITABLE_PROFILE_FIELDS = ("full_name",)
SESSION_LIST_COLUMNS = "id, created_at, session_type, helpful_thought_ratio, average_attribution_quality, total_segments"

_client = None


def get_supabase():
    global _client
    if not SUPABASE_URL or not SUPABASE_KEY:
        return None
    if _client is None:
        from supabase import create_client
        _client = create_client(SUPABASE_URL, SUPABASE_KEY)
    return _client


def build_pattern_rows(session_id, player_id: str, analysis: dict) -> list[dict]:
    """One row per psychological pattern per segment, for trend queries."""
    rows = []
    for segment in analysis.get("segments") or []:
        attribution = segment.get("attribution_analysis") or {}
        for pattern in segment.get("psychological_patterns") or []:
            rows.append({
                "session_id": session_id,
                "player_id": player_id,
                "pattern_type": pattern.get("type"),
                "helpfulness_score": pattern.get("helpfulness_score"),
                "quote": segment.get("quote"),
                "explanation": pattern.get("explanation"),
                "intensity": pattern.get("intensity"),
                "focus_direction": segment.get("focus_direction"),
                "has_attribution": bool(attribution.get("has_attribution")),
                "attribution_quality_score": attribution.get("attribution_quality_score"),
            })
    return rows


def check_session_type(session_type) -> str:
    if session_type not in SESSION_TYPES:
        raise StorageError(f"session_type must be one of: {', '.join(SESSION_TYPES)}", status_code=400)
    return session_type


def check_analysis(analysis) -> dict:
    """Stored analyses need segments[] and analysis_summary{} in the shape Claude's output is held to."""
    if not isinstance(analysis, dict):
        raise StorageError("analysis must be an object with segments and analysis_summary", status_code=400)
    try:
        AttributionResult.model_validate(analysis)
    except ValidationError as e:
        raise StorageError(f"Invalid analysis: {validation_message(e)}", status_code=400) from e
    return analysis


def save_session(supabase, player_id: str, transcript: str, analysis: dict, session_type: str = "practice") -> dict:
    check_session_type(session_type)
    check_analysis(analysis)

    summary = analysis.get("analysis_summary") or {}
    row = {
        "player_id": player_id,
        "session_type": session_type,
        "raw_transcript": encrypt(transcript or ""),
        "analysis_json": analysis,
        "helpful_thought_ratio": summary.get("helpful_thought_ratio"),
        "average_attribution_quality": summary.get("average_attribution_quality"),
        "total_segments": summary.get("total_segments") or len(analysis["segments"]),
    }
    try:
        result = supabase.table("sessions").insert(row).execute()
    except Exception as e:
        logger.error("Error saving session: %s", e)
        raise StorageError(f"Failed to save session: {e}")
    if not result.data:
        raise StorageError("Failed to save session: no row returned")
    session = result.data[0]

    patterns = build_pattern_rows(session["id"], player_id, analysis)
    if patterns:
        try:
            supabase.table("patterns").insert(patterns).execute()
        except Exception as e:
            # The session itself is stored; trends just miss this one
            logger.error("Error saving patterns for session %s: %s", session["id"], e)

    logger.info("Session saved: %s with %d segments", session["id"], len(analysis["segments"]))
    session["raw_transcript"] = transcript or ""
    return session


def get_player_sessions(supabase, player_id: str, limit: int = 10) -> list[dict]:
    try:
        result = supabase.table("sessions").select(SESSION_LIST_COLUMNS).eq(
            "player_id", player_id
        ).order("created_at", desc=True).limit(limit).execute()
    except Exception as e:
        logger.error("Error fetching sessions: %s", e)
        raise StorageError(f"Failed to fetch sessions: {e}")
    return result.data or []


def get_session(supabase, session_id: str, player_id: str) -> dict | None:
    try:
        result = supabase.table("sessions").select("*").eq("id", session_id).eq(
            "player_id", player_id
        ).limit(1).execute()
    except Exception as e:
        logger.error("Error fetching session %s: %s", session_id, e)
        raise StorageError(f"Failed to fetch session: {e}")
    if not result.data:
        return None
    session = result.data[0]
    session["raw_transcript"] = decrypt(session.get("raw_transcript") or "")
    return session


def aggregate_pattern_trends(rows: list[dict]) -> dict:
    trends = {}
    for row in rows:
        entry = trends.setdefault(row.get("pattern_type") or "unknown", {"count": 0, "total_score": 0, "scores": []})
        entry["count"] += 1
        entry["total_score"] += row.get("helpfulness_score") or 0
        entry["scores"].append({"score": row.get("helpfulness_score"), "date": row.get("created_at")})
    for entry in trends.values():
        entry["average_score"] = round(entry["total_score"] / entry["count"], 1) if entry["count"] else 0
    return trends


def get_pattern_trends(supabase, player_id: str, days: int = 30) -> dict:
    since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
    try:
        result = supabase.table("patterns").select("pattern_type, helpfulness_score, created_at").eq(
            "player_id", player_id
        ).gte("created_at", since).order("created_at", desc=False).execute()
    except Exception as e:
        logger.error("Error fetching pattern trends: %s", e)
        raise StorageError(f"Failed to fetch trends: {e}")
    return aggregate_pattern_trends(result.data or [])


def get_profile(supabase, user_id: str) -> dict | None:
    try:
        result = supabase.table("profiles").select("*").eq("id", user_id).limit(1).execute()
    except Exception as e:
        logger.error("Error fetching profile: %s", e)
        raise StorageError(f"Failed to fetch profile: {e}")
    return result.data[0] if result.data else None


def update_profile(supabase, user_id: str, updates: dict) -> dict | None:
    changes = {k: v for k, v in (updates or {}).items() if k in EDITABLE_PROFILE_FIELDS}
    if not changes:
        raise StorageError(f"Nothing to update. Editable fields: {', '.join(EDITABLE_PROFILE_FIELDS)}", status_code=400)
    changes["updated_at"] = datetime.now(timezone.utc).isoformat()
    try:
        result = supabase.table("profiles").update(changes).eq("id", user_id).execute()
    except Exception as e:
        logger.error("Error updating profile: %s", e)
        raise StorageError(f"Failed to update profile: {e}")
    return result.data[0] if result.data else None
