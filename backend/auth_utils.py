# backend/auth_utils.py
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from pydantic import ValidationError # For token data validation
from fastapi import Depends, HTTPException, status, Request, Cookie

# Project imports
import schemas
from config import Settings

log = logging.getLogger(__name__)

AUTH_COOKIE_NAME = "agrimarket_session"
SESSION_TOKEN_TYPE = "session"


# --- Settings Dependency ---
def get_settings(request: Request) -> Settings:
    """Dependency: the Settings the running app was created with."""
    return request.app.state.settings


# --- JWT Token Creation ---
def create_access_token(data: dict, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    """Creates a session JWT. Expects 'sub' and 'type' in data."""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.access_token_expire_minutes)

    to_encode.update({"exp": expire})
    # Ensure required fields are present before encoding
    if "sub" not in to_encode or "type" not in to_encode:
        log.error("JWT creation failed: 'sub' or 'type' missing in payload data.")
        raise ValueError("Token data must include 'sub' and 'type'")

    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)
    log.debug(f"Created JWT for sub='{to_encode.get('sub')}', type='{to_encode.get('type')}'")
    return encoded_jwt


# --- Token Decoding Helpers ---
def _credentials_exception(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _decode_token_payload(token: str, settings: Settings) -> schemas.TokenData:
    """Decodes a session JWT, raises HTTPException on failure."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
        token_data = schemas.TokenData(**payload) # Use Pydantic for validation
    except JWTError as e:
        log.warning(f"JWT decoding/validation error: {e}")
        raise _credentials_exception() from e
    except ValidationError as e: # Pydantic validation error
        log.warning(f"Token payload structure error: {e}")
        raise _credentials_exception() from e

    if not token_data.sub or token_data.type != SESSION_TOKEN_TYPE:
        log.warning(f"Session token rejected: sub={token_data.sub!r}, type={token_data.type!r}")
        raise _credentials_exception()
    return token_data


def decode_identity_token(token: str, settings: Settings) -> schemas.IdentityClaims:
    """
    Verifies a token issued by the identity provider and returns its claims.

    The provider signs with IDP_SECRET_KEY; if IDP_AUDIENCE is configured the
    token's `aud` claim must match it.
    """
    try:
        payload = jwt.decode(
            token,
            settings.idp_secret_key,
            algorithms=[settings.idp_algorithm],
            audience=settings.idp_audience,
            options={"verify_aud": settings.idp_audience is not None},
        )
        return schemas.IdentityClaims(**payload)
    except JWTError as e:
        log.warning(f"Identity token rejected: {e}")
        raise _credentials_exception("Invalid identity token") from e
    except ValidationError as e:
        log.warning(f"Identity token claims invalid: {e}")
        raise _credentials_exception("Invalid identity token") from e


# --- Dependency: Get Current User Id ---
def get_current_user_id(
    settings: Settings = Depends(get_settings),
    token: Optional[str] = Cookie(None, alias=AUTH_COOKIE_NAME),
) -> str:
    """Dependency: resolves the caller's user id from the session cookie."""
    if token is None:
        log.debug("Auth cookie missing for request.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    token_data = _decode_token_payload(token, settings)
    log.debug(f"Authenticated user: {token_data.sub}")
    return token_data.sub


# --- Dependency: Require Administrator ---
def require_admin(
    user_id: str = Depends(get_current_user_id),
    settings: Settings = Depends(get_settings),
) -> str:
    """Dependency: caller must be on the ADMIN_USERS allow-list."""
    if not settings.is_admin(user_id):
        log.warning(f"Non-admin user {user_id} attempted an admin operation.")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized")
    return user_id
