import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..models.models import Profile
from ..services.lifecycle import ActingUser, Role


http_bearer = HTTPBearer(auto_error=False)


def create_access_token(profile_id: str, ttl_seconds: Optional[int] = None) -> str:
    """Sessions belong to the identity provider; this mints equivalent tokens for scripts and tests."""
    now = datetime.now(tz=timezone.utc)
    payload = {
        "sub": str(profile_id),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds or settings.jwt_ttl_seconds)).timestamp()),
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def get_current_profile(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    db: Session = Depends(get_db),
) -> Profile:
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    payload = decode_token(creds.credentials)
    try:
        profile_id = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid subject")
    profile = db.get(Profile, profile_id)
    if profile is None or not profile.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Profile not active")
    return profile


def get_acting_user(profile: Profile = Depends(get_current_profile)) -> ActingUser:
    # Role comes from the stored profile only; display-mode headers are ignored
    return ActingUser.from_profile(profile)


def require_roles(*required_roles: Role):
    """Require one of the given roles (OR logic)."""
    def _dep(actor: ActingUser = Depends(get_acting_user)) -> ActingUser:
        if actor.role not in required_roles:
            raise HTTPException(status_code=403, detail="Forbidden")
        return actor

    return _dep
