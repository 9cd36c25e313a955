import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

import requests
from fastapi import HTTPException, Request
from jose import JWTError, jwt

logger = logging.getLogger(__name__)

KEYS_TTL_SECONDS = 300

# Demo accounts are minted with the site origin as the email domain
_DEFAULT_ANONYMOUS_MARKERS = ("@https://www.betterindex.io", "@http://localhost:3000")


@dataclass(frozen=True)
class SessionUser:
    user_id: str
    email: str
    is_anonymous: bool = False

    # Stable identity used for rate-limit keys
    @property
    def identity(self) -> str:
        return self.email or self.user_id


@dataclass(frozen=True)
class _AuthSettings:
    jwks_url: str
    audience: Optional[str]
    issuer: str


def _settings() -> _AuthSettings:
    jwks_url = os.getenv("AUTH_JWKS_URL")
    if not jwks_url:
        raise HTTPException(status_code=500, detail="AUTH_JWKS_URL is not configured.")
    # Issuer defaults to the origin that serves the key set
    issuer = os.getenv("AUTH_ISSUER") or jwks_url.split("/.well-known/")[0]
    return _AuthSettings(jwks_url=jwks_url, audience=os.getenv("AUTH_AUDIENCE") or None, issuer=issuer)


def _anonymous_markers() -> tuple[str, ...]:
    raw = os.getenv("ANONYMOUS_EMAIL_MARKERS")
    if not raw:
        return _DEFAULT_ANONYMOUS_MARKERS
    return tuple(m.strip() for m in raw.split(",") if m.strip())


def is_anonymous_email(email: Optional[str]) -> bool:
    if not email:
        return True
    return any(marker in email for marker in _anonymous_markers())


# Provider signing keys, refreshed at most every KEYS_TTL_SECONDS; a failed refresh serves the last good set
class _SigningKeys:
    def __init__(self):
        self._keys: Optional[list] = None
        self._fetched_at = 0.0

    def all(self, jwks_url: str) -> list:
        now = time.time()
        if self._keys is not None and now - self._fetched_at < KEYS_TTL_SECONDS:
            return self._keys
        try:
            response = requests.get(jwks_url, timeout=3.0)
            response.raise_for_status()
            keys = response.json().get("keys", [])
        except (requests.RequestException, ValueError) as e:
            if self._keys is not None:
                logger.warning("auth.jwks.refresh_failed: serving cached keys err=%s", e)
                return self._keys
            raise HTTPException(status_code=503, detail=f"Unable to fetch signing keys: {e}")
        self._keys, self._fetched_at = keys, now
        return keys

    def for_token(self, token: str, jwks_url: str) -> dict:
        kid = jwt.get_unverified_header(token).get("kid")
        for key in self.all(jwks_url):
            if key.get("kid") == kid:
                return key
        raise HTTPException(status_code=401, detail="Public key not found.")


_signing_keys = _SigningKeys()


def _bearer_token(request: Request) -> str:
    header = request.headers.get("Authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme != "Bearer" or not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    if token.count(".") != 2:
        raise HTTPException(status_code=401, detail="Token is not a valid JWT.")
    return token


# Decoded claims of the request's session token (RS256, checked against the provider's key set)
def verify_session_jwt(request: Request) -> dict:
    settings = _settings()
    token = _bearer_token(request)
    try:
        key = _signing_keys.for_token(token, settings.jwks_url)
        return jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            audience=settings.audience,
            issuer=settings.issuer,
            options={} if settings.audience else {"verify_aud": False},
        )
    except JWTError as e:
        raise HTTPException(status_code=401, detail=f"Token verification failed: {e}")


# FastAPI dependency: the authenticated caller, or 401
def get_current_user(request: Request) -> SessionUser:
    claims = verify_session_jwt(request)
    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    email = claims.get("email") or ""
    anonymous = bool(claims.get("is_anonymous")) or is_anonymous_email(email)
    return SessionUser(user_id=str(user_id), email=email, is_anonymous=anonymous)
