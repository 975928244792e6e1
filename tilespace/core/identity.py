"""
Request identity resolution.

Every request is either a member (verified Clerk session token) or a guest
(HMAC-signed `guest_token` cookie correlated with the client IP). Resolution
never fails: a missing, invalid or expired token falls through to the guest
path, and a missing or tampered cookie yields a fresh guest id.
"""
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from typing import Optional, Union

import jwt
from fastapi import Request, Response

from tilespace.core.clerk_auth import verify_jwt_token
from tilespace.core.config import settings
from tilespace.core.errors import UnauthorizedError

logger = logging.getLogger("tilespace")

GUEST_COOKIE_NAME = "guest_token"


@dataclass(frozen=True)
class MemberIdentity:
    member_id: str
    email: Optional[str] = None

    @property
    def tier(self) -> str:
        return "member"

    @property
    def subject(self) -> str:
        return self.member_id


@dataclass(frozen=True)
class GuestIdentity:
    guest_id: str
    ip: str
    # Set when the caller must attach a newly signed cookie to the response
    cookie_value: Optional[str] = None

    @property
    def tier(self) -> str:
        return "guest"

    @property
    def subject(self) -> str:
        return self.guest_id


Identity = Union[MemberIdentity, GuestIdentity]


def _signature(value: str, secret: Optional[str] = None) -> str:
    key = (secret or settings.GUEST_TOKEN_SECRET).encode("utf-8")
    return hmac.new(key, value.encode("utf-8"), hashlib.sha256).hexdigest()


def sign_guest_token(guest_id: str, secret: Optional[str] = None) -> str:
    return f"{guest_id}.{_signature(guest_id, secret)}"


def unsign_guest_token(signed: Optional[str], secret: Optional[str] = None) -> Optional[str]:
    """Return the guest id when the signature matches, otherwise None."""
    if not signed or "." not in signed:
        return None
    value, _, signature = signed.rpartition(".")
    if not value or not signature:
        return None
    if not hmac.compare_digest(signature, _signature(value, secret)):
        return None
    return value


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _member_from_request(request: Request) -> Optional[MemberIdentity]:
    auth_header = request.headers.get("authorization") or ""
    if auth_header.lower().startswith("bearer "):
        token = auth_header[7:].strip()
        if token:
            try:
                claims = verify_jwt_token(token)
            except jwt.PyJWTError as exc:
                logger.info("identity.token_rejected", extra={"error_code": type(exc).__name__})
                claims = None
            if claims and claims.get("sub"):
                return MemberIdentity(member_id=str(claims["sub"]), email=claims.get("email"))

    if str(settings.ENV).lower() == "test":
        header_user = request.headers.get("x-user-id")
        if header_user:
            return MemberIdentity(member_id=header_user)
    return None


def resolve_identity(request: Request) -> Identity:
    member = _member_from_request(request)
    if member:
        return member

    ip = client_ip(request)
    guest_id = unsign_guest_token(request.cookies.get(GUEST_COOKIE_NAME))
    if guest_id:
        return GuestIdentity(guest_id=guest_id, ip=ip)

    guest_id = secrets.token_hex(16)
    return GuestIdentity(guest_id=guest_id, ip=ip, cookie_value=sign_guest_token(guest_id))


def apply_identity_cookie(response: Response, identity: Identity) -> None:
    """Attach the signed guest cookie when resolution minted a new guest id."""
    if not isinstance(identity, GuestIdentity) or not identity.cookie_value:
        return
    response.set_cookie(
        GUEST_COOKIE_NAME,
        identity.cookie_value,
        max_age=settings.GUEST_LIMIT_WINDOW_SECONDS,
        path="/",
        httponly=True,
        secure=str(settings.ENV).lower() == "production",
        samesite="lax",
    )


# FastAPI dependencies

def current_identity(request: Request) -> Identity:
    """Resolve once per request; the cookie middleware reads request.state.identity."""
    identity = getattr(request.state, "identity", None)
    if identity is None:
        identity = resolve_identity(request)
        request.state.identity = identity
    return identity


def require_member(request: Request) -> MemberIdentity:
    identity = current_identity(request)
    if not isinstance(identity, MemberIdentity):
        raise UnauthorizedError("Unauthorized - user must be authenticated")
    return identity
