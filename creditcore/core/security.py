"""Signed identity sessions issued by the identity provider."""

import hashlib
from typing import Any

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from pydantic import BaseModel

from creditcore.core.config import get_settings

SESSION_MAX_AGE = 7 * 24 * 3600  # 7 days


class Identity(BaseModel):
    """Claims supplied by the identity provider. Trusted as-is."""
    uid: str
    email: str
    display_name: str | None = None
    avatar_ref: str | None = None
    email_verified: bool = False


def get_session_serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.secret_key,
        salt="creditcore-session",
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def create_session_cookie(identity: Identity) -> str:
    serializer = get_session_serializer()
    return serializer.dumps(identity.model_dump())


def load_session_cookie(cookie_value: str, max_age_seconds: int = SESSION_MAX_AGE) -> Identity | None:
    serializer = get_session_serializer()
    try:
        payload: dict[str, Any] = serializer.loads(cookie_value, max_age=max_age_seconds)
    except (BadSignature, SignatureExpired):
        return None
    if not payload.get("uid") or not payload.get("email"):
        return None
    return Identity.model_validate(payload)
