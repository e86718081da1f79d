import hashlib
import secrets
import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import APIRouter, Cookie, Depends, HTTPException, Response
from slugify import slugify
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..models.models import ConstructionSite, User, ROLES, ROLE_ADMIN, ROLE_SUPERVISOR
from ..schemas.auth import (
    LoginRequest,
    MeResponse,
    OAuthAuthorizeResponse,
    OAuthCallbackRequest,
    ProfileUpdate,
    RefreshRequest,
    SignupRequest,
    TokenResponse,
)
from ..services.oauth import OAuthClient, OAuthNotConfigured, OAuthProviderError, OAuthTimeout
from .security import (
    ROLE_HOME,
    create_access_token,
    create_refresh_token,
    create_state_token,
    decode_token,
    get_current_user,
    get_password_hash,
    verify_password,
)


router = APIRouter(prefix="/auth", tags=["auth"])
log = structlog.get_logger(__name__)

# browser-bound half of the OAuth state
OAUTH_NONCE_COOKIE = "oauth_nonce"
OAUTH_COOKIE_PATH = "/auth/oauth"
OAUTH_STATE_TTL = 600


def find_available_username(db: Session, base: str) -> str:
    candidate = slugify(base, lowercase=True, separator="", regex_pattern=r"[^A-Za-z0-9_.-]") or "user"
    i = 0
    while True:
        name = f"{candidate}{i}" if i > 0 else candidate
        if not db.query(User).filter(User.username == name).first():
            return name
        i += 1


def _tokens_for(user: User) -> TokenResponse:
    return TokenResponse(
        access_token=create_access_token(str(user.id), role=user.role),
        refresh_token=create_refresh_token(str(user.id)),
    )


def _signup_role(requested: str) -> str:
    if requested not in ROLES:
        raise HTTPException(status_code=400, detail=f"Unknown role: {requested}")
    if requested == ROLE_ADMIN and not settings.allow_admin_signup:
        return settings.default_signup_role
    return requested


@router.post("/signup", response_model=TokenResponse, status_code=201)
def signup(req: SignupRequest, db: Session = Depends(get_db)):
    email = req.email.lower()
    if db.query(User).filter(User.email == email).first():
        raise HTTPException(status_code=409, detail="Email already registered")
    if req.username:
        if db.query(User).filter(User.username == req.username).first():
            raise HTTPException(status_code=409, detail="Username already taken")
        username = req.username
    else:
        username = find_available_username(db, email.split("@")[0])
    role = _signup_role(req.role)
    user = User(
        email=email,
        username=username,
        password_hash=get_password_hash(req.password),
        role=role,
        phone=req.phone,
        is_active=True,
        last_login_at=datetime.now(timezone.utc),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    log.info("user_signed_up", user_id=str(user.id), role=role)
    return _tokens_for(user)


@router.post("/login", response_model=TokenResponse)
def login(req: LoginRequest, db: Session = Depends(get_db)):
    identifier = req.identifier.strip()
    user = db.query(User).filter(
        (User.username == identifier) | (User.email == identifier.lower())
    ).first()
    if not user or not verify_password(req.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.is_active:
        raise HTTPException(status_code=401, detail="User not active")
    user.last_login_at = datetime.now(timezone.utc)
    db.commit()
    return _tokens_for(user)


@router.post("/refresh", response_model=TokenResponse)
def refresh(req: RefreshRequest, db: Session = Depends(get_db)):
    payload = decode_token(req.refresh_token)
    if payload.get("type") != "refresh":
        raise HTTPException(status_code=401, detail="Invalid refresh token")
    try:
        user_id = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid subject")
    user = db.query(User).filter(User.id == user_id).first()
    if user is None or not user.is_active:
        raise HTTPException(status_code=401, detail="User not active")
    return _tokens_for(user)


def _me(user: User, db: Session) -> MeResponse:
    site_name = None
    if user.site_id:
        site = db.query(ConstructionSite).filter(ConstructionSite.id == user.site_id).first()
        site_name = site.site_name if site else None
    return MeResponse(
        id=user.id,
        email=user.email,
        username=user.username,
        role=user.role,
        phone=user.phone,
        site_id=user.site_id,
        site_name=site_name,
        home=ROLE_HOME.get(user.role, "/"),
    )


@router.get("/me", response_model=MeResponse)
def me(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return _me(user, db)


@router.put("/me", response_model=MeResponse)
def update_me(req: ProfileUpdate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    if req.username is not None and req.username != user.username:
        taken = db.query(User).filter(User.username == req.username, User.id != user.id).first()
        if taken:
            raise HTTPException(status_code=409, detail="Username already taken")
        user.username = req.username
    if req.phone is not None:
        user.phone = req.phone or None
    db.commit()
    db.refresh(user)
    return _me(user, db)


# ---------- OAuth sign-in ----------
def _nonce_digest(nonce: str) -> str:
    return hashlib.sha256(nonce.encode("utf-8")).hexdigest()


def get_oauth_client() -> OAuthClient:
    try:
        return OAuthClient()
    except OAuthNotConfigured:
        raise HTTPException(status_code=503, detail="OAuth sign-in is not configured")


@router.get("/oauth/authorize", response_model=OAuthAuthorizeResponse)
def oauth_authorize(response: Response, client: OAuthClient = Depends(get_oauth_client)):
    nonce = secrets.token_urlsafe(16)
    state = create_state_token(_nonce_digest(nonce), ttl_seconds=OAUTH_STATE_TTL)
    response.set_cookie(
        OAUTH_NONCE_COOKIE,
        nonce,
        max_age=OAUTH_STATE_TTL,
        path=OAUTH_COOKIE_PATH,
        httponly=True,
        samesite="lax",
        secure=settings.public_base_url.startswith("https://"),
    )
    return OAuthAuthorizeResponse(authorization_url=client.authorization_url(state), state=state)


def _email_verified(info: dict) -> bool:
    verified = info.get("email_verified")
    # some providers send the flag as a string
    return verified is True or (isinstance(verified, str) and verified.lower() == "true")


def _link_or_create_oauth_user(db: Session, info: dict) -> User:
    provider = settings.oauth_provider_name
    subject = str(info["sub"])
    email = str(info["email"]).lower()

    user = db.query(User).filter(User.oauth_provider == provider, User.oauth_subject == subject).first()
    if user is not None:
        return user
    if not _email_verified(info):
        log.warning("oauth_unverified_email", email=email, provider=provider)
        raise HTTPException(status_code=403, detail="OAuth email address is not verified")
    user = db.query(User).filter(User.email == email).first()
    if user is not None:
        # existing password account signs in through the provider from now on as well
        user.oauth_provider = provider
        user.oauth_subject = subject
        return user
    user = User(
        email=email,
        username=find_available_username(db, email.split("@")[0]),
        password_hash=None,
        role=ROLE_SUPERVISOR,
        oauth_provider=provider,
        oauth_subject=subject,
        is_active=True,
    )
    db.add(user)
    log.info("oauth_user_created", email=email, provider=provider)
    return user


@router.post("/oauth/callback", response_model=TokenResponse)
def oauth_callback(
    req: OAuthCallbackRequest,
    response: Response,
    oauth_nonce: Optional[str] = Cookie(default=None),
    db: Session = Depends(get_db),
    client: OAuthClient = Depends(get_oauth_client),
):
    state = decode_token(req.state)
    if state.get("type") != "oauth_state":
        raise HTTPException(status_code=400, detail="Invalid OAuth state")
    # the state must come back to the browser it was issued to, once
    if not oauth_nonce or not secrets.compare_digest(_nonce_digest(oauth_nonce), str(state.get("sub", ""))):
        raise HTTPException(status_code=400, detail="OAuth state does not belong to this browser")
    response.delete_cookie(OAUTH_NONCE_COOKIE, path=OAUTH_COOKIE_PATH)
    try:
        access_token = client.exchange_code(req.code)
        info = client.userinfo(access_token)
    except OAuthTimeout as e:
        log.warning("oauth_timeout", error=str(e))
        raise HTTPException(status_code=504, detail="OAuth provider timed out")
    except OAuthProviderError as e:
        log.warning("oauth_failed", error=str(e))
        raise HTTPException(status_code=502, detail="OAuth provider error")

    user = _link_or_create_oauth_user(db, info)
    if not user.is_active:
        raise HTTPException(status_code=401, detail="User not active")
    user.last_login_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(user)
    return _tokens_for(user)
