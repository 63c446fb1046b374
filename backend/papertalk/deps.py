"""
FastAPI dependencies - get_services, get_current_user, get_grader_user.
"""

from datetime import datetime, timezone

from fastapi import Depends, HTTPException, Request

from papertalk.models.user import User
from papertalk.services import Services

GRADER_ROLES = {"super_admin", "org_admin", "teacher"}


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_current_user(request: Request, services: Services = Depends(get_services)) -> User:
    """Resolve the session token issued by the auth provider to a user."""
    session_token = request.cookies.get("session_token")

    if not session_token:
        auth_header = request.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            session_token = auth_header.split(" ", 1)[1]

    if not session_token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    db = services.db
    session = await db.user_sessions.find_one({"session_token": session_token}, {"_id": 0})
    if not session:
        raise HTTPException(status_code=401, detail="Invalid session")

    expires_at = session.get("expires_at")
    if expires_at:
        if isinstance(expires_at, str):
            expires_at = datetime.fromisoformat(expires_at)
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at < datetime.now(timezone.utc):
            raise HTTPException(status_code=401, detail="Session expired")

    user = await db.users.find_one({"user_id": session["user_id"]}, {"_id": 0})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    return User(**user)


async def get_grader_user(user: User = Depends(get_current_user)) -> User:
    """Dependency to ensure the user may grade submissions"""
    if user.role not in GRADER_ROLES:
        raise HTTPException(status_code=403, detail="Only teachers can grade submissions")
    return user
