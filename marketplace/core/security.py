import hashlib
import hmac
import secrets
from typing import Any

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from marketplace.core.config import get_settings

SESSION_MAX_AGE = 7 * 24 * 3600  # 7 days


def get_session_serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.secret_key,
        salt="marketplace-session",
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def create_session_cookie(payload: dict[str, Any]) -> str:
    serializer = get_session_serializer()
    return serializer.dumps(payload)


def load_session_cookie(cookie_value: str) -> dict[str, Any] | None:
    serializer = get_session_serializer()
    try:
        return serializer.loads(cookie_value, max_age=SESSION_MAX_AGE)
    except (BadSignature, SignatureExpired):
        return None


def generate_otp(length: int = 6) -> str:
    """Uniform numeric code without a leading zero (100000-999999 for length 6)."""
    low = 10 ** (length - 1)
    return str(low + secrets.randbelow(9 * low))


def new_salt() -> str:
    return secrets.token_hex(16)


def hash_otp(code: str, salt: str) -> str:
    """HMAC-SHA256 of the code keyed by the app secret and a per-intent salt."""
    key = (get_settings().secret_key + salt).encode("utf-8")
    return hmac.new(key, code.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_otp(code: str, salt: str, expected_hash: str) -> bool:
    return hmac.compare_digest(hash_otp(code, salt), expected_hash)
