"""
Security utilities: bearer-token verification, field encryption, input sanitization.
"""
import logging
import os
import re
import uuid
from functools import lru_cache

import jwt
from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

SUPABASE_JWT_SECRET = os.environ.get("SUPABASE_JWT_SECRET", "")
ENCRYPTION_KEY = os.environ.get("ENCRYPTION_KEY", "")

# ── Token verification ──

def extract_bearer_token(auth_header: str) -> str | None:
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    token = auth_header[7:].strip()
    return token or None


def verify_token(auth_header: str, supabase=None) -> dict | None:
    """Verify a Supabase access token. Returns {"sub": user_id, ...} or None.

    With SUPABASE_JWT_SECRET set the signature is checked locally; otherwise the
    token is handed to Supabase Auth. Without either there is no way to trust it.
    """
    token = extract_bearer_token(auth_header)
    if not token:
        return None
    if SUPABASE_JWT_SECRET:
        try:
            return jwt.decode(
                token,
                SUPABASE_JWT_SECRET,
                algorithms=["HS256"],
                audience="authenticated",
            )
        except jwt.ExpiredSignatureError:
            return None
        except jwt.InvalidTokenError:
            return None
    if supabase is None:
        logger.warning("Cannot verify token: neither SUPABASE_JWT_SECRET nor Supabase client configured")
        return None
    try:
        response = supabase.auth.get_user(token)
    except Exception as e:
        logger.info("Supabase rejected access token: %s", e)
        return None
    user = getattr(response, "user", None)
    if not user or not getattr(user, "id", None):
        return None
    return {"sub": str(user.id), "email": getattr(user, "email", None)}


def get_user_id(auth_header: str, supabase=None) -> str | None:
    """Get verified user_id from Authorization header."""
    payload = verify_token(auth_header, supabase=supabase)
    if payload and payload.get("sub"):
        return payload["sub"]
    return None


# ── Transcript encryption ──

@lru_cache(maxsize=4)
def _cipher_for(key: str) -> Fernet:
    return Fernet(key.encode())


def _cipher() -> Fernet | None:
    return _cipher_for(ENCRYPTION_KEY) if ENCRYPTION_KEY else None


def encrypt(text: str) -> str:
    """Fernet-encrypt a transcript for storage. Without ENCRYPTION_KEY it is stored as is."""
    cipher = _cipher()
    if not text or cipher is None:
        return text
    return cipher.encrypt(text.encode("utf-8")).decode("ascii")


def decrypt(text: str) -> str:
    cipher = _cipher()
    if not text or cipher is None:
        return text
    try:
        return cipher.decrypt(text.encode("ascii")).decode("utf-8")
    except (InvalidToken, UnicodeEncodeError):
        # Rows written before ENCRYPTION_KEY was configured are plain text
        return text


# ── Request input ──

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")


def sanitize_text(text: str, max_length: int = 50000) -> str:
    """Drop control characters (newlines and tabs survive) and cap the length."""
    if not isinstance(text, str):
        return ""
    return _CONTROL_CHARS.sub("", text[:max_length]).strip()


def clamp_int(value, low: int, high: int, default: int = None) -> int:
    """Parse a query parameter as int and clamp it to [low, high]."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        return low if default is None else default
    return min(high, max(low, number))


def validate_uuid(uid: str) -> str | None:
    """Return the canonical lower-case form of a hyphenated UUID, or None."""
    if not isinstance(uid, str):
        return None
    candidate = uid.strip().lower()
    try:
        canonical = str(uuid.UUID(candidate))
    except ValueError:
        return None
    return canonical if canonical == candidate else None
