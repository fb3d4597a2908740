import logging
import uuid
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.api.config import Settings
from src.api.db import get_db
from src.api.deps import get_current_token_payload, get_denylist, get_settings
from src.api.models.user import Account
from src.api.schemas.auth import IdentityPublic, LoginRequest, RegisterRequest, TokenResponse
from src.api.security import TokenDenylist, create_access_token, hash_password, verify_password

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)


def _token_response(account: Account, settings: Settings) -> TokenResponse:
    token = create_access_token(
        settings,
        subject=account.id,
        email=account.email,
        display_name=account.display_name,
        photo_url=account.photo_url,
    )
    return TokenResponse(
        access_token=token,
        user=IdentityPublic(
            id=account.id,
            email=account.email,
            display_name=account.display_name,
            photo_url=account.photo_url,
        ),
    )


@router.post(
    "/register",
    response_model=TokenResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a new account",
    description="Create a new account and return an access token. The role is chosen afterwards.",
    operation_id="auth_register",
)
def register(
    payload: RegisterRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> TokenResponse:
    """
    Register a new account and return a JWT access token.

    Errors:
    - 409 if email already exists
    """
    display_name = payload.display_name.strip() if payload.display_name else None
    account = Account(
        id=uuid.uuid4().hex,
        email=str(payload.email).lower().strip(),
        password_hash=hash_password(payload.password),
        display_name=display_name or None,
        photo_url=payload.photo_url,
    )

    db.add(account)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="An account with this email already exists.",
        )
    db.refresh(account)

    logger.info("Registered account %s", account.id)
    return _token_response(account, settings)


@router.post(
    "/login",
    response_model=TokenResponse,
    summary="Sign in",
    description="Authenticate by email/password and return an access token plus the signed-in identity.",
    operation_id="auth_login",
)
def login(
    payload: LoginRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> TokenResponse:
    """
    Sign in by verifying credentials and return a JWT access token.

    Errors:
    - 401 for invalid credentials
    """
    email = str(payload.email).lower().strip()
    account = db.scalar(select(Account).where(Account.email == email))
    if not account or not verify_password(payload.password, account.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return _token_response(account, settings)


@router.post(
    "/logout",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Sign out",
    description="Revoke the presented access token.",
    operation_id="auth_logout",
)
def logout(
    payload: Dict[str, Any] = Depends(get_current_token_payload),
    denylist: TokenDenylist = Depends(get_denylist),
) -> Response:
    """Sign out: the token stops working immediately."""
    denylist.revoke(payload["jti"], int(payload["exp"]))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
