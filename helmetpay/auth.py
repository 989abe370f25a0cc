from __future__ import annotations

import time
from typing import Any, Dict, Optional

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt

from .config import get_settings


_http = httpx.Client(timeout=5)
_bearer = HTTPBearer(auto_error=False)


class JWKSCache:
    def __init__(self, ttl_seconds: float = 600) -> None:
        self._jwks: Optional[Dict[str, Any]] = None
        self._exp_ts: float = 0.0
        self._ttl = ttl_seconds

    def get(self, url: str) -> Dict[str, Any]:
        now = time.time()
        if self._jwks is None or now >= self._exp_ts:
            resp = _http.get(url)
            resp.raise_for_status()
            self._jwks = resp.json()
            self._exp_ts = now + self._ttl
        return self._jwks  # type: ignore[return-value]


_jwks_cache = JWKSCache()


def _verify_jwt(token: str) -> Dict[str, Any]:
    settings = get_settings()
    if settings.auth_disable_verification:
        # Local development only; signatures are not checked.
        try:
            return jwt.get_unverified_claims(token)
        except Exception as e:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {e}")

    if not settings.clerk_issuer:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Auth issuer not configured")

    jwks_url = settings.clerk_jwks_url or settings.clerk_issuer.rstrip("/") + "/.well-known/jwks.json"
    jwks = _jwks_cache.get(jwks_url)

    try:
        kid = jwt.get_unverified_header(token).get("kid")
        key = next((k for k in jwks.get("keys", []) if k.get("kid") == kid), None)
        if not key:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Signing key not found")
        return jwt.decode(
            token,
            key,
            algorithms=[key.get("alg", "RS256")],
            audience=settings.clerk_audience,
            issuer=settings.clerk_issuer,
        )
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"JWT verification failed: {e}")


def get_current_principal(creds: Optional[HTTPAuthorizationCredentials] = Depends(_bearer)) -> Dict[str, Any]:
    if not creds or not creds.scheme.lower() == "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    claims = _verify_jwt(creds.credentials)
    principal = {
        "sub": claims.get("sub"),
        "email": claims.get("email") or claims.get("email_address"),
        "claims": claims,
    }
    if not principal["sub"]:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token: no sub")
    return principal


def advertiser_id_from_claims(claims: Dict[str, Any], claim_name: str) -> Optional[int]:
    """Find the advertiser id either as a top-level claim or inside Clerk public metadata."""
    raw = claims.get(claim_name)
    if raw is None:
        for container in ("metadata", "public_metadata"):
            nested = claims.get(container)
            if isinstance(nested, dict) and nested.get(claim_name) is not None:
                raw = nested[claim_name]
                break
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = int(str(raw).strip())
    except ValueError:
        return None
    return value if value > 0 else None


def get_current_advertiser(principal: Dict[str, Any] = Depends(get_current_principal)) -> int:
    advertiser_id = advertiser_id_from_claims(principal["claims"], get_settings().advertiser_claim)
    if advertiser_id is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Advertiser account required")
    return advertiser_id
