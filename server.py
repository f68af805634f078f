"""
Tennis Attribution Trainer API server.
Set env: OPENAI_API_KEY, CLAUDE_API_KEY, SUPABASE_URL, SUPABASE_SERVICE_KEY (storage + auth),
optionally SUPABASE_JWT_SECRET, ENCRYPTION_KEY, ALLOWED_ORIGINS, MAX_UPLOAD_MB, UPLOAD_FOLDER, LOG_LEVEL.
Run: python server.py  →  http://127.0.0.1:3000/api/health
"""
import logging
import os
import pathlib
import tempfile
import time
import uuid
from datetime import datetime, timezone
from functools import wraps

from dotenv import load_dotenv

load_dotenv(dotenv_path=pathlib.Path(__file__).resolve().parent / ".env")

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

from flask import Flask, g, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename

from tennis_trainer import attribution, emotions, security, sessions, transcription
from tennis_trainer.errors import AnalysisFormatError, ServiceError
from tennis_trainer.security import clamp_int, sanitize_text, validate_uuid

logger = logging.getLogger("server")

SERVICE_NAME = "Tennis Attribution Trainer"
VERSION = "1.0.0"
MAX_TRAJECTORY_STATEMENTS = 500

ALLOWED_ORIGINS = [
    o.strip() for o in os.environ.get("ALLOWED_ORIGINS", "http://localhost:3000").split(",") if o.strip()
]
UPLOAD_FOLDER = pathlib.Path(os.environ.get("UPLOAD_FOLDER") or pathlib.Path(tempfile.gettempdir()) / "tennis_uploads")
UPLOAD_FOLDER.mkdir(parents=True, exist_ok=True)

app = Flask(__name__)
# Headroom for the multipart envelope; the file itself is checked against MAX_UPLOAD_BYTES
app.config["MAX_CONTENT_LENGTH"] = transcription.MAX_UPLOAD_BYTES + transcription.MB
CORS(app, resources={r"/api/*": {"origins": ALLOWED_ORIGINS}})


# ── Security headers + access log ──

@app.before_request
def start_timer():
    g.request_started = time.monotonic()


@app.after_request
def add_security_headers(response):
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-XSS-Protection"] = "1; mode=block"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Permissions-Policy"] = "camera=(), geolocation=(), payment=()"
    response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

    started = g.get("request_started")
    elapsed_ms = (time.monotonic() - started) * 1000 if started else 0
    logger.info("%s %s %d %.0fms", request.method, request.path, response.status_code, elapsed_ms)
    return response


# ── Rate limiting (simple in-memory) ──

_rate_limits: dict[str, list[float]] = {}
RATE_LIMIT_WINDOW = 60
RATE_LIMIT_MAX = 30
_last_sweep = 0.0


def _sweep_rate_limits(now: float):
    """Forget clients with no request inside the window, at most once per window."""
    global _last_sweep
    if now - _last_sweep < RATE_LIMIT_WINDOW:
        return
    _last_sweep = now
    stale = [k for k, times in _rate_limits.items() if not times or now - times[-1] >= RATE_LIMIT_WINDOW]
    for key in stale:
        del _rate_limits[key]


def check_rate_limit(key: str) -> bool:
    now = time.time()
    _sweep_rate_limits(now)
    recent = [t for t in _rate_limits.get(key, ()) if now - t < RATE_LIMIT_WINDOW]
    if len(recent) >= RATE_LIMIT_MAX:
        _rate_limits[key] = recent
        return False
    recent.append(now)
    _rate_limits[key] = recent
    return True


def _too_many_requests():
    return jsonify({"success": False, "error": "Too many requests. Try again shortly."}), 429


def rate_limited(f):
    """Per-client limit for routes that spend vendor credits without requiring a login."""
    @wraps(f)
    def decorated(*args, **kwargs):
        if not check_rate_limit(f"ip:{request.remote_addr}"):
            return _too_many_requests()
        return f(*args, **kwargs)
    return decorated


# ── Auth ──

def _authenticated_user_id():
    header = request.headers.get("Authorization", "")
    if not header:
        return None
    return security.get_user_id(header, supabase=sessions.get_supabase())


def require_auth(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        user_id = _authenticated_user_id()
        if not user_id:
            return jsonify({"success": False, "error": "Authentication required"}), 401
        request.authenticated_user_id = user_id
        if not check_rate_limit(user_id):
            return _too_many_requests()
        return f(*args, **kwargs)
    return decorated


def _transcript_text(value) -> str:
    """Sanitized transcript text; over-long input is refused rather than cut."""
    limit = attribution.MAX_TRANSCRIPTION_CHARS
    if isinstance(value, str) and len(value) > limit:
        raise ServiceError(f"Transcription too long. Maximum is {limit:,} characters.", status_code=413)
    return sanitize_text(value, max_length=limit)


def _require_storage():
    supabase = sessions.get_supabase()
    if not supabase:
        raise ServiceError("Session storage not configured", status_code=503)
    return supabase


# ── Error handlers ──

@app.errorhandler(ServiceError)
def service_error(e):
    logger.error("%s: %s", type(e).__name__, e.message)
    body = {"success": False, "error": e.message, "timestamp": datetime.now(timezone.utc).isoformat()}
    if isinstance(e, AnalysisFormatError) and e.raw_response:
        body["raw_response"] = e.raw_response[:500]
    return jsonify(body), e.status_code


@app.errorhandler(413)
def file_too_large(e):
    return jsonify({
        "success": False,
        "error": f"File too large. Maximum size is {transcription.MAX_UPLOAD_MB}MB.",
    }), 413


@app.errorhandler(404)
def not_found(e):
    return jsonify({"success": False, "error": "Route not found"}), 404


@app.errorhandler(405)
def method_not_allowed(e):
    return jsonify({"success": False, "error": "Method not allowed"}), 405


@app.errorhandler(500)
def internal_error(e):
    return jsonify({"success": False, "error": "Something went wrong!"}), 500


@app.errorhandler(Exception)
def unhandled_error(e):
    if isinstance(e, HTTPException):
        return jsonify({"success": False, "error": e.description}), e.code
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    return internal_error(e)


# --- API routes ---

@app.route("/api/health", methods=["GET"])
def health():
    return jsonify({
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": SERVICE_NAME,
        "version": VERSION,
        "openai_configured": bool(transcription.OPENAI_KEY),
        "claude_configured": bool(attribution.CLAUDE_KEY),
        "supabase_configured": bool(sessions.SUPABASE_URL and sessions.SUPABASE_KEY),
    })


@app.route("/api/transcribe", methods=["POST"])
@rate_limited
def transcribe():
    audio = request.files.get("audio")
    if not audio or not audio.filename:
        return jsonify({"success": False, "error": "No audio file uploaded. Please provide an audio file."}), 400

    if not transcription.OPENAI_KEY:
        return jsonify({
            "success": False,
            "error": "OpenAI API key not configured. Please set OPENAI_API_KEY in environment variables.",
        }), 503

    original_name = audio.filename
    filename = f"{uuid.uuid4().hex}_{secure_filename(original_name) or 'audio'}"
    # secure_filename can reduce a name like "???.opus" to just "opus"
    ext = pathlib.Path(original_name).suffix.lower()
    if ext in transcription.SUPPORTED_FORMATS and not filename.lower().endswith(ext):
        filename += ext
    upload_path = UPLOAD_FOLDER / filename
    try:
        audio.save(upload_path)
        size = upload_path.stat().st_size
        logger.info("Processing audio file: %s (%dMB)", original_name, round(size / transcription.MB))

        options = {
            "language": (request.form.get("language") or "").strip() or None,
            "response_format": "verbose_json",
            "temperature": 0,
        }
        result = transcription.process_audio_file(str(upload_path), original_name, size, options)
        return jsonify({
            "success": True,
            "message": "Audio transcribed successfully",
            "data": transcription.format_transcription_for_display(result),
            "metadata": result["metadata"],
            "file_info": result["file_info"],
        })
    finally:
        transcription.cleanup_file(str(upload_path))


@app.route("/api/analyze", methods=["POST"])
@rate_limited
def analyze():
    data = request.get_json(force=True, silent=True) or {}
    text = _transcript_text(data.get("transcription"))
    if not text:
        return jsonify({"success": False, "error": "No transcription provided for analysis."}), 400

    if not attribution.CLAUDE_KEY:
        return jsonify({
            "success": False,
            "error": "Claude API key not configured. Please set CLAUDE_API_KEY in environment variables.",
        }), 503

    # Everything a save needs is checked before Claude is called
    save = data.get("save") is True
    user_id = _authenticated_user_id() if save else None
    if save and not user_id:
        return jsonify({"success": False, "error": "Sign in to save sessions"}), 401
    supabase = _require_storage() if save else None
    session_type = sessions.check_session_type(data.get("session_type") or "practice") if save else None

    logger.info("Processing transcription for attribution analysis (%d characters)", len(text))
    result = attribution.process_transcription(text)
    body = {
        "success": True,
        "message": "Attribution analysis completed successfully",
        "data": result["data"],
        "metadata": result["metadata"],
    }

    if save:
        session = sessions.save_session(
            supabase, user_id, text, result["data"], session_type=session_type,
        )
        body["session_id"] = session["id"]

    return jsonify(body)


@app.route("/api/score-reframe", methods=["POST"])
@rate_limited
def score_reframe():
    data = request.get_json(force=True, silent=True) or {}
    original_quote = sanitize_text(data.get("original_quote"), max_length=2000)
    player_reframe = sanitize_text(data.get("player_reframe"), max_length=2000)
    if not original_quote or not player_reframe:
        return jsonify({"success": False, "error": "Original quote and player reframe are required."}), 400

    if not attribution.CLAUDE_KEY:
        return jsonify({"success": False, "error": "Claude API key not configured."}), 503

    context = sanitize_text(data.get("context"), max_length=2000)
    result = attribution.score_reframe(original_quote, player_reframe, context)
    return jsonify({
        "success": True,
        "score": result["overall_score"],
        "helpfulness_score": result["helpfulness_score"],
        "attribution_analysis": result["attribution_analysis"],
        "feedback": result["feedback"],
        "improvements": result["improvements"] or [],
        "fallback": result["fallback"],
    })


@app.route("/api/sample-analysis", methods=["GET"])
def sample_analysis():
    """Demo data. Same answer for everyone, no vendor calls."""
    return jsonify({
        "success": True,
        "message": "Sample analysis loaded",
        "data": attribution.load_sample_analysis(),
        "metadata": {"sample": True},
    })


@app.route("/api/sessions", methods=["POST"])
@require_auth
def create_session():
    data = request.get_json(force=True, silent=True) or {}
    session = sessions.save_session(
        _require_storage(),
        request.authenticated_user_id,
        _transcript_text(data.get("transcript")),
        data.get("analysis"),
        session_type=data.get("session_type") or "practice",
    )
    return jsonify({"success": True, "data": session}), 201


@app.route("/api/sessions", methods=["GET"])
@require_auth
def list_sessions():
    limit = clamp_int(request.args.get("limit", 10), 1, 50, default=10)
    rows = sessions.get_player_sessions(_require_storage(), request.authenticated_user_id, limit=limit)
    return jsonify({"success": True, "data": rows})


@app.route("/api/sessions/<session_id>", methods=["GET"])
@require_auth
def get_session(session_id):
    session_id = validate_uuid(session_id)
    if not session_id:
        return jsonify({"success": False, "error": "Invalid session ID"}), 400
    session = sessions.get_session(_require_storage(), session_id, request.authenticated_user_id)
    if not session:
        return jsonify({"success": False, "error": "Session not found"}), 404
    return jsonify({"success": True, "data": session})


@app.route("/api/trends", methods=["GET"])
@require_auth
def trends():
    days = clamp_int(request.args.get("days", 30), 1, 365, default=30)
    data = sessions.get_pattern_trends(_require_storage(), request.authenticated_user_id, days=days)
    return jsonify({"success": True, "days": days, "data": data})


@app.route("/api/profile", methods=["GET"])
@require_auth
def get_profile():
    profile = sessions.get_profile(_require_storage(), request.authenticated_user_id)
    if not profile:
        return jsonify({"success": False, "error": "Profile not found"}), 404
    return jsonify({"success": True, "data": profile})


@app.route("/api/profile", methods=["PUT"])
@require_auth
def update_profile():
    data = request.get_json(force=True, silent=True) or {}
    if "full_name" in data:
        data["full_name"] = sanitize_text(data["full_name"], max_length=200)
    profile = sessions.update_profile(_require_storage(), request.authenticated_user_id, data)
    if not profile:
        return jsonify({"success": False, "error": "Profile not found"}), 404
    return jsonify({"success": True, "data": profile})


@app.route("/api/emotions", methods=["GET"])
def emotion_framework():
    return jsonify({"success": True, "data": emotions.framework_config()})


@app.route("/api/detect-emotions", methods=["POST"])
def detect_emotions():
    data = request.get_json(force=True, silent=True) or {}
    text = sanitize_text(data.get("text"), max_length=5000)
    if not text:
        return jsonify({"success": False, "error": "No text provided for emotion detection."}), 400
    return jsonify({"success": True, "data": emotions.detect_emotions(text, data.get("language") or "es")})


@app.route("/api/analyze-emotional-trajectory", methods=["POST"])
def emotional_trajectory():
    data = request.get_json(force=True, silent=True) or {}
    statements = data.get("statements")
    if not isinstance(statements, list):
        return jsonify({"success": False, "error": "No statements array provided for trajectory analysis."}), 400
    if len(statements) > MAX_TRAJECTORY_STATEMENTS:
        return jsonify({
            "success": False,
            "error": f"Too many statements. Maximum is {MAX_TRAJECTORY_STATEMENTS}.",
        }), 400
    statements = [sanitize_text(emotions.statement_text(s), max_length=5000) for s in statements]
    result = emotions.analyze_emotional_trajectory(statements, data.get("language") or "es")
    return jsonify({"success": True, "data": result})


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 3000))
    logger.info("%s running at http://127.0.0.1:%d/", SERVICE_NAME, port)
    if not transcription.OPENAI_KEY:
        logger.warning("OPENAI_API_KEY not set. Audio transcription will fail.")
    if not attribution.CLAUDE_KEY:
        logger.warning("CLAUDE_API_KEY not set. Attribution analysis and reframe scoring will fail.")
    if not sessions.get_supabase():
        logger.warning("SUPABASE_URL / SUPABASE_SERVICE_KEY not set. Session storage is disabled.")
    app.run(host="0.0.0.0", port=port, debug=os.environ.get("FLASK_DEBUG", "false").lower() == "true")
