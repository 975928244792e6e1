"""
Clerk JWT verification.

Two modes:
- HS256 with CLERK_SECRET_KEY (development and tests)
- RS256 against the issuer's JWKS (production)

Tests can inject a JWKS provider so no network call is made.
"""
import json
import time
from typing import Any, Callable, Dict, Optional

import httpx
import jwt
from jwt.algorithms import RSAAlgorithm

from tilespace.core.config import settings


JWKS_TTL_SECONDS = 60 * 60 * 24

_jwks_provider_override: Optional[Callable[[str], Dict[str, Any]]] = None
_jwks_cache: Dict[str, tuple] = {}


def set_jwks_provider_for_tests(provider: Optional[Callable[[str], Dict[str, Any]]]) -> None:
    global _jwks_provider_override
    _jwks_provider_override = provider
    _jwks_cache.clear()


def _fetch_jwks(jwks_url: str) -> Dict[str, Any]:
    response = httpx.get(jwks_url, timeout=5.0)
    response.raise_for_status()
    return response.json()


def get_jwks(jwks_url: str) -> Dict[str, Any]:
    """Return the key set for jwks_url, cached for a day."""
    cached = _jwks_cache.get(jwks_url)
    if cached and (time.time() - cached[0]) < JWKS_TTL_SECONDS:
        return cached[1]

    fetch = _jwks_provider_override or _fetch_jwks
    jwks = fetch(jwks_url)
    _jwks_cache[jwks_url] = (time.time(), jwks)
    return jwks


def verify_jwt_token(token: str) -> Dict[str, Any]:
    """
    Verify a Clerk session token and return its claims.

    Raises jwt.PyJWTError on any verification failure.
    """
    secret = settings.CLERK_SECRET_KEY
    if secret:
        return jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True, "verify_aud": False},
        )

    issuer = settings.CLERK_ISSUER
    jwks_url = settings.CLERK_JWKS_URL
    if not jwks_url and issuer:
        jwks_url = f"{issuer.rstrip('/')}/.well-known/jwks.json"
    if not jwks_url:
        raise jwt.PyJWTError("CLERK_ISSUER or CLERK_JWKS_URL must be configured for RS256 verification")

    kid = jwt.get_unverified_header(token).get("kid")
    if not kid:
        raise jwt.PyJWTError("Token missing 'kid' in header")

    try:
        jwks = get_jwks(jwks_url)
    except httpx.HTTPError as exc:
        raise jwt.PyJWTError(f"JWKS unavailable: {exc}") from exc

    matching_key = next((key for key in jwks.get("keys", []) if key.get("kid") == kid), None)
    if not matching_key:
        raise jwt.PyJWTError(f"Key ID '{kid}' not found in JWKS")

    public_key = RSAAlgorithm.from_jwk(json.dumps(matching_key))
    options = {"verify_signature": True, "verify_exp": True, "verify_aud": bool(settings.CLERK_AUDIENCE)}
    return jwt.decode(
        token,
        public_key,
        algorithms=["RS256"],
        audience=settings.CLERK_AUDIENCE,
        issuer=issuer,
        options=options,
    )


def create_test_jwt(
    sub: str = "user_test_123",
    email: Optional[str] = "member@example.com",
    exp_minutes: int = 60,
    secret: str = "test-clerk-secret",
) -> str:
    """Sign an HS256 token for tests."""
    now = int(time.time())
    payload = {
        "sub": sub,
        "email": email,
        "iat": now,
        "exp": now + exp_minutes * 60,
    }
    return jwt.encode(payload, secret, algorithm="HS256")
