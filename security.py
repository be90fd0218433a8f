import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings
from models import utcnow

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"

# bcrypt only looks at the first 72 bytes of a password.
_BCRYPT_MAX_BYTES = 72


@dataclass(frozen=True)
class TokenPayload:
    user_id: int
    email: str
    type: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


def _serializer(kind: str) -> URLSafeTimedSerializer:
    settings = get_settings()
    secret = settings.jwt_secret if kind == ACCESS_TOKEN else settings.jwt_refresh_secret
    return URLSafeTimedSerializer(secret, salt=f"{kind}-token")


def _ttl_secs(kind: str) -> int:
    settings = get_settings()
    if kind == ACCESS_TOKEN:
        return settings.access_token_ttl_secs
    return settings.refresh_token_ttl_secs


def _issue(kind: str, user_id: int, email: str) -> str:
    timestamp = int(time.time())
    token_data = {
        "sub": user_id,
        "email": email,
        "type": kind,
        "jti": secrets.token_urlsafe(16),
        "exp": timestamp + _ttl_secs(kind),
    }
    return _serializer(kind).dumps(token_data)


def generate_tokens(user_id: int, email: str) -> TokenPair:
    return TokenPair(
        access_token=_issue(ACCESS_TOKEN, user_id, email),
        refresh_token=_issue(REFRESH_TOKEN, user_id, email),
    )


def _verify(token: Optional[str], kind: str) -> Optional[TokenPayload]:
    if not token:
        return None
    try:
        data = _serializer(kind).loads(token, max_age=_ttl_secs(kind))
    except BadSignature:
        return None
    if not isinstance(data, dict) or data.get("type") != kind:
        return None

    expiry = int(data.get("exp", 0))
    if int(time.time()) > expiry:
        return None

    try:
        user_id = int(data["sub"])
    except (KeyError, TypeError, ValueError):
        return None
    return TokenPayload(
        user_id=user_id,
        email=str(data.get("email", "")),
        type=kind,
        expires_at=datetime.fromtimestamp(expiry, timezone.utc).replace(tzinfo=None),
    )


def verify_access_token(token: Optional[str]) -> Optional[TokenPayload]:
    return _verify(token, ACCESS_TOKEN)


def verify_refresh_token(token: Optional[str]) -> Optional[TokenPayload]:
    return _verify(token, REFRESH_TOKEN)


def refresh_token_expiry(now: Optional[datetime] = None) -> datetime:
    now = now or utcnow()
    return now + timedelta(seconds=_ttl_secs(REFRESH_TOKEN))


def hash_password(password: str) -> str:
    hashed = bcrypt.hashpw(password.encode("utf-8")[:_BCRYPT_MAX_BYTES], bcrypt.gensalt())
    return hashed.decode("utf-8")


def verify_password(password: str, hashed_password: Optional[str]) -> bool:
    if not hashed_password:
        return False
    try:
        return bcrypt.checkpw(
            password.encode("utf-8")[:_BCRYPT_MAX_BYTES],
            hashed_password.encode("utf-8"),
        )
    except ValueError:
        return False
