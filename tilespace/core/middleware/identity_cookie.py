from starlette.middleware.base import BaseHTTPMiddleware

from tilespace.core.identity import apply_identity_cookie


class GuestCookieMiddleware(BaseHTTPMiddleware):
    """Set the signed guest cookie on any response, including error responses."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        identity = getattr(request.state, "identity", None)
        if identity is not None:
            apply_identity_cookie(response, identity)
        return response
