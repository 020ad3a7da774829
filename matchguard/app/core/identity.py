"""Caller identity helpers.

The hosted auth provider authenticates upstream and forwards the user id in
the ``x-user-id`` header. Missing identity is treated as anonymous, never as
an error of the protection stack.
"""

from starlette.requests import Request

from matchguard.app.core.config import settings

USER_ID_HEADER = "x-user-id"
ANONYMOUS = "anonymous"


def get_user_id(request: Request) -> str:
    user_id = (request.headers.get(USER_ID_HEADER) or "").strip()
    return user_id or ANONYMOUS


def get_client_ip(request: Request) -> str:
    """Return the client IP.

    The first X-Forwarded-For hop is client-controlled unless a trusted
    proxy overwrites the header, so it is only used with
    ``settings.trust_forwarded_for``.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded and settings.trust_forwarded_for:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"
