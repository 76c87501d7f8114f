"""Shared FastAPI dependencies."""

from fastapi import Depends, Request

from marketplace.core.exceptions import AuthorizationError, UnauthorizedError
from marketplace.core.security import load_session_cookie
from marketplace.models.user import User
from marketplace.services.container import Services

SESSION_COOKIE_NAME = "marketplace_session"


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_current_user(request: Request, services: Services = Depends(get_services)) -> User:
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
    user = await services.store.get_user(user_id)
    if not user:
        raise UnauthorizedError("User not found")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    """Dependency: require current user to have role admin."""
    if user.role != "admin":
        raise AuthorizationError("Admin only")
    return user
