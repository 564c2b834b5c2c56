import uuid

from fastapi import Request

from ..chat.orchestrator import Identity
from ..config import SESSION_COOKIE_MAX_AGE, SESSION_COOKIE_NAME, USER_ID_HEADER


def resolve_identity(request: Request) -> Identity:
    """Authenticated user id from the gateway header, anonymous session from the cookie."""
    user_id = request.headers.get(USER_ID_HEADER) or None
    session_id = request.cookies.get(SESSION_COOKIE_NAME) or getattr(
        request.state, "session_id", None
    )
    return Identity(user_id=user_id, session_id=session_id)


async def session_cookie_middleware(request: Request, call_next):
    """Issue a long-lived anonymous session cookie to callers that lack one."""
    new_session_id = None
    if not request.cookies.get(SESSION_COOKIE_NAME):
        new_session_id = str(uuid.uuid4())
        request.state.session_id = new_session_id

    response = await call_next(request)

    if new_session_id:
        response.set_cookie(
            SESSION_COOKIE_NAME,
            new_session_id,
            max_age=SESSION_COOKIE_MAX_AGE,
            httponly=False,
            samesite="lax",
            path="/",
        )
    return response
