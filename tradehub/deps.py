"""Shared FastAPI dependencies."""

from fastapi import Depends, Request

from tradehub.core.exceptions import BadRequestError, ForbiddenError, UnauthorizedError
from tradehub.core.security import load_session_cookie, parse_object_id
from tradehub.models.user import User, UserRole

SESSION_COOKIE_NAME = "tradehub_session"


async def get_current_user(request: Request) -> User:
    """Dependency: load session from cookie and return User."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_cookie(cookie)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    user_id = payload.get("user_id")
    if not user_id:
        raise UnauthorizedError("Invalid session")
    try:
        user = await User.get(parse_object_id(user_id, "session"))
    except BadRequestError:
        raise UnauthorizedError("Invalid session") from None
    if not user or not user.is_active:
        raise UnauthorizedError("User not found")
    if payload.get("session_version") != user.session_version:
        raise UnauthorizedError("Session invalidated")
    return user


async def require_tradesperson(user: User = Depends(get_current_user)) -> User:
    if user.role != UserRole.TRADESPERSON:
        raise ForbiddenError("Tradespeople only")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    """Dependency: require current user to have role admin."""
    if user.role != UserRole.ADMIN:
        raise ForbiddenError("Admin only")
    return user
