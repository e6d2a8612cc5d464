"""
Bearer-session authentication for the API.

Sessions are issued by the sign-in service and stored hashed in
``user_sessions``; this module only resolves a token to its user.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .models import User, UserSession
from .services.date_ranges import as_utc, utcnow

router = APIRouter(prefix="/api/auth", tags=["auth"])
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    id: str
    email: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def hash_token(token: str) -> str:
    """Hash session token with SHA256."""
    return hashlib.sha256(token.encode()).hexdigest()


async def require_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    session: AsyncSession = Depends(get_session),
) -> CurrentUser:
    """Dependency that requires a valid, unexpired session."""
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    row = await session.execute(
        select(UserSession, User)
        .join(User, UserSession.user_id == User.id)
        .where(UserSession.token_sha256 == hash_token(credentials.credentials))
    )
    found = row.first()
    if found is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")
    user_session, user = found
    if as_utc(user_session.expires_at) <= utcnow():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")
    return CurrentUser(id=user.id, email=user.email, role=user.role)


async def require_admin(user: CurrentUser = Depends(require_user)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user


def get_container(request: Request):
    return request.app.state.container


@router.get("/me")
async def get_current_user(user: CurrentUser = Depends(require_user)):
    """Check if current token is valid."""
    return {"authenticated": True, "id": user.id, "email": user.email, "role": user.role}
