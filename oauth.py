from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from config import get_settings

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"


class OAuthError(ValueError):
    pass


@dataclass(frozen=True)
class GoogleTokens:
    access_token: str
    refresh_token: Optional[str]
    expires_in: int


@dataclass(frozen=True)
class GoogleProfile:
    id: str
    email: str
    name: Optional[str]
    picture: Optional[str]


class GoogleOAuthClient:
    def __init__(self) -> None:
        self.settings = get_settings()

    @property
    def configured(self) -> bool:
        return bool(self.settings.google_client_id and self.settings.google_client_secret)

    def authorization_url(self) -> str:
        client_id = self.settings.google_client_id
        if not client_id:
            raise OAuthError(
                "Google OAuth is not configured: client id is missing"
            )
        query = urlencode(
            {
                "client_id": client_id,
                "redirect_uri": self.settings.google_callback_url,
                "response_type": "code",
                "scope": "email profile",
                "access_type": "offline",
                "prompt": "consent",
            }
        )
        return f"{GOOGLE_AUTH_URL}?{query}"

    def exchange_code(self, code: str) -> GoogleTokens:
        if not self.configured:
            raise OAuthError("Google OAuth is not configured properly")
        if not code:
            raise OAuthError("Missing authorization code")

        body = urlencode(
            {
                "code": code,
                "client_id": self.settings.google_client_id,
                "client_secret": self.settings.google_client_secret,
                "redirect_uri": self.settings.google_callback_url,
                "grant_type": "authorization_code",
            }
        ).encode("utf-8")
        req = Request(
            GOOGLE_TOKEN_URL,
            data=body,
            method="POST",
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
        )
        status, payload = _request_json(req, timeout=self.settings.http_timeout_secs)
        if status >= 400 or "access_token" not in payload:
            reason = (
                payload.get("error_description")
                or payload.get("error")
                or "Unknown error"
            )
            logger.warning(f"google_token_exchange_failed: status={status}")
            raise OAuthError(f"Failed to exchange code for tokens: {reason}")

        return GoogleTokens(
            access_token=str(payload["access_token"]),
            refresh_token=payload.get("refresh_token"),
            expires_in=int(payload.get("expires_in") or 0),
        )

    def fetch_profile(self, access_token: str) -> GoogleProfile:
        req = Request(
            GOOGLE_USERINFO_URL,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            },
        )
        status, payload = _request_json(req, timeout=self.settings.http_timeout_secs)
        if status >= 400 or not payload.get("email"):
            logger.warning(f"google_userinfo_failed: status={status}")
            raise OAuthError("Failed to get user info from Google")
        return GoogleProfile(
            id=str(payload.get("id") or payload["email"]),
            email=str(payload["email"]).lower(),
            name=payload.get("name"),
            picture=payload.get("picture"),
        )


def _request_json(req: Request, *, timeout: float) -> tuple[int, dict]:
    try:
        with urlopen(req, timeout=timeout) as resp:
            return resp.status, _decode(resp.read())
    except HTTPError as exc:
        return exc.code, _decode(exc.read())
    except (URLError, TimeoutError) as exc:
        raise OAuthError("Could not reach Google") from exc


def _decode(raw: bytes) -> dict:
    if not raw:
        return {}
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return {}
    return payload if isinstance(payload, dict) else {}
