from __future__ import annotations

from dataclasses import dataclass, field
import hmac
import logging
import time
from typing import Any

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.config import settings

logger = logging.getLogger("regbrief.auth")

_bearer_scheme = HTTPBearer(auto_error=False)
_JWKS_CACHE_TTL_SECONDS = 300.0
LOCAL_USER_ID = "local-user"


@dataclass
class _JwksCache:
    issuer: str = ""
    expires_at: float = 0.0
    keys_by_kid: dict[str, dict[str, Any]] = field(default_factory=dict)

    def lookup(self, issuer: str) -> dict[str, dict[str, Any]] | None:
        if self.issuer == issuer and self.expires_at > time.time() and self.keys_by_kid:
            return self.keys_by_kid
        return None

    def store(self, issuer: str, keys_by_kid: dict[str, dict[str, Any]]) -> None:
        self.issuer = issuer
        self.expires_at = time.time() + _JWKS_CACHE_TTL_SECONDS
        self.keys_by_kid = keys_by_kid


_jwks_cache = _JwksCache()


def _auth_unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _auth_misconfigured(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


def _cognito_issuer() -> str:
    configured = str(settings.cognito_issuer or "").strip().rstrip("/")
    if configured:
        return configured

    region = str(settings.cognito_region or "").strip() or str(settings.aws_region or "").strip()
    user_pool_id = str(settings.cognito_user_pool_id or "").strip()
    if not region or not user_pool_id:
        raise _auth_misconfigured(
            "Cognito is enabled but issuer is not configured. Set COGNITO_ISSUER or "
            "set both COGNITO_REGION and COGNITO_USER_POOL_ID."
        )
    return f"https://cognito-idp.{region}.amazonaws.com/{user_pool_id}"


def _signing_keys(issuer: str) -> dict[str, dict[str, Any]]:
    cached = _jwks_cache.lookup(issuer)
    if cached is not None:
        return cached

    jwks_url = f"{issuer}/.well-known/jwks.json"
    try:
        response = httpx.get(jwks_url, timeout=5.0)
        response.raise_for_status()
        payload = response.json()
    except Exception as exc:
        raise _auth_misconfigured(f"Unable to fetch Cognito JWKS from '{jwks_url}': {exc}") from exc

    keys = payload.get("keys") if isinstance(payload, dict) else None
    if not isinstance(keys, list):
        raise _auth_misconfigured("Invalid Cognito JWKS payload: missing 'keys' list.")

    keys_by_kid = {
        str(key["kid"]): key
        for key in keys
        if isinstance(key, dict) and isinstance(key.get("kid"), str) and key["kid"].strip()
    }
    if not keys_by_kid:
        raise _auth_misconfigured("Cognito JWKS payload did not include any usable signing keys.")

    _jwks_cache.store(issuer, keys_by_kid)
    return keys_by_kid


def _check_token_audience(claims: dict[str, Any], app_client_id: str) -> None:
    token_use = claims.get("token_use")
    if token_use == "access":
        if claims.get("client_id") != app_client_id:
            raise _auth_unauthorized("Cognito access token client_id does not match configured app client.")
        return
    if token_use == "id":
        audience = claims.get("aud")
        audiences = audience if isinstance(audience, list) else [audience]
        if app_client_id not in audiences:
            raise _auth_unauthorized("Cognito ID token audience does not match configured app client.")
        return
    raise _auth_unauthorized("Unsupported Cognito token type. Use a Cognito access token or ID token.")


def decode_and_validate_cognito_token(token: str) -> dict[str, Any]:
    app_client_id = str(settings.cognito_app_client_id or "").strip()
    if not app_client_id:
        raise _auth_misconfigured("Cognito is enabled but COGNITO_APP_CLIENT_ID is not configured.")

    issuer = _cognito_issuer()
    try:
        header = jwt.get_unverified_header(token)
    except JWTError as exc:
        raise _auth_unauthorized("Malformed JWT header.") from exc

    kid = header.get("kid")
    if not isinstance(kid, str) or not kid.strip():
        raise _auth_unauthorized("JWT header does not include a valid key id (kid).")

    signing_key = _signing_keys(issuer).get(kid)
    if signing_key is None:
        raise _auth_unauthorized("JWT key id is not recognized by Cognito.")

    try:
        claims = jwt.decode(
            token,
            signing_key,
            algorithms=["RS256"],
            issuer=issuer,
            options={"verify_aud": False},
        )
    except JWTError as exc:
        raise _auth_unauthorized(f"Invalid or expired Cognito token: {exc}") from exc

    _check_token_audience(claims, app_client_id)
    return claims


def require_authenticated_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> dict[str, Any] | None:
    if not settings.auth_enabled:
        return None

    if credentials is None:
        raise _auth_unauthorized("Missing bearer token.")
    if credentials.scheme.lower() != "bearer":
        raise _auth_unauthorized("Unsupported authorization scheme.")

    token = credentials.credentials.strip()
    if not token:
        raise _auth_unauthorized("Missing bearer token.")

    return decode_and_validate_cognito_token(token)


def current_user_id(claims: dict[str, Any] | None) -> str:
    if not claims:
        return LOCAL_USER_ID
    return str(claims.get("sub") or claims.get("cognito:username") or claims.get("username") or LOCAL_USER_ID)


def require_admin_user(
    claims: dict[str, Any] | None = Depends(require_authenticated_user),
) -> dict[str, Any] | None:
    if not settings.auth_enabled:
        return claims

    groups = claims.get("cognito:groups") if claims else None
    if not isinstance(groups, list) or settings.auth_admin_group not in groups:
        logger.warning(
            "admin_access_denied",
            extra={"event": "admin_access_denied", "user_id": current_user_id(claims)},
        )
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Administrator access required.")
    return claims


def require_cron_secret(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    expected = str(settings.cron_secret or "")
    if not expected:
        raise _auth_misconfigured("CRON_SECRET is not configured; scheduled triggers are disabled.")
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise _auth_unauthorized("Missing cron bearer token.")
    if not hmac.compare_digest(credentials.credentials.strip().encode("utf-8"), expected.encode("utf-8")):
        logger.warning("cron_secret_rejected", extra={"event": "cron_secret_rejected"})
        raise _auth_unauthorized("Invalid cron bearer token.")
