import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..models.models import User, ConstructionSite, ROLE_ADMIN, ROLE_SUPERVISOR


pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
http_bearer = HTTPBearer(auto_error=False)

ROLE_HOME = {
    ROLE_ADMIN: "/admin",
    ROLE_SUPERVISOR: "/supervisor",
}


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: Optional[str]) -> bool:
    # OAuth-only accounts have no local password
    if not hashed:
        return False
    try:
        return pwd_context.verify(plain, hashed)
    except ValueError:
        return False


def _create_token(sub: str, ttl_seconds: int, extra: Optional[dict] = None) -> str:
    now = datetime.now(tz=timezone.utc)
    payload = {
        "sub": sub,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
        "jti": str(uuid.uuid4()),
    }
    if extra:
        payload.update(extra)
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_access_token(user_id: str, role: Optional[str] = None) -> str:
    return _create_token(user_id, settings.jwt_ttl_seconds, extra={"role": role, "type": "access"})


def create_refresh_token(user_id: str) -> str:
    return _create_token(user_id, settings.refresh_ttl_seconds, extra={"type": "refresh"})


def create_state_token(nonce: str, ttl_seconds: int = 600) -> str:
    """Signed OAuth `state`; `sub` holds the digest of the nonce cookie set on the same browser."""
    return _create_token(nonce, ttl_seconds, extra={"type": "oauth_state"})


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    db: Session = Depends(get_db),
) -> User:
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    payload = decode_token(creds.credentials)
    if payload.get("type") != "access":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token type")
    try:
        user_uuid = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid subject")
    user = db.query(User).filter(User.id == user_uuid).first()
    if user is None or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not active")
    return user


def require_roles(*allowed_roles: str):
    """Route guard: the signed-in user must hold one of `allowed_roles`."""
    def _dep(user: User = Depends(get_current_user)) -> User:
        if user.role not in allowed_roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return user

    return _dep


require_admin = require_roles(ROLE_ADMIN)
require_supervisor = require_roles(ROLE_SUPERVISOR)


def require_site(user: User, db: Session) -> ConstructionSite:
    """Return the site the user works at, or fail when none is assigned."""
    site = None
    if user.site_id:
        site = db.query(ConstructionSite).filter(ConstructionSite.id == user.site_id).first()
    if site is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="You are not assigned to a site. Please contact an administrator.",
        )
    return site


def is_admin(user: User) -> bool:
    return user.role == ROLE_ADMIN


def can_decide_transfer(user: User, to_site: ConstructionSite) -> bool:
    """Admins decide any transfer; a supervisor decides transfers into their own site."""
    if is_admin(user):
        return True
    return user.role == ROLE_SUPERVISOR and to_site is not None and (
        to_site.supervisor_id == user.id or user.site_id == to_site.id
    )
