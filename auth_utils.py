from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import OAuth2PasswordBearer, SecurityScopes
from jose import JWTError, jwt
import logging
from pydantic import ValidationError
from sqlalchemy.orm import Session

import models
from config import settings
from database import get_db

# Tokens are issued by the campus identity service; this module only verifies them.
# to get a secret like the default run:
# openssl rand -hex 32
SECRET_KEY = settings.secret_key
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = settings.access_token_expire_minutes

STAFF_ROLES = (models.UserRole.ADMIN.value, models.UserRole.LIBRARIAN.value)

oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl="auth/login",
    scopes={
        "admin": "Admin operations",
        "librarian": "Librarian operations",
        "member": "Member operations"
    },
    # Missing tokens are turned into our own 401 below.
    auto_error=False,
)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token with user data and expiration.

    Used by operator tooling and tests; ``data`` should carry ``sub`` (the email) and ``role``.
    """
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire, "scopes": [data.get("role", "member")]})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def _token_scopes(payload: dict) -> List[str]:
    scopes = payload.get("scopes", ["member"])
    if isinstance(scopes, str):
        scopes = [scopes]
    return [s.lower() for s in scopes if s]


async def get_current_user(
    security_scopes: SecurityScopes,
    token: Optional[str] = Depends(oauth2_scheme),
    db: Session = Depends(get_db)
) -> models.User:
    """Get the current user from the JWT token and validate scopes."""
    if security_scopes.scopes:
        authenticate_value = f'Bearer scope="{security_scopes.scope_str}"'
    else:
        authenticate_value = "Bearer"

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": authenticate_value},
    )

    try:
        if not token:
            raise credentials_exception
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        email: str = payload.get("sub")
        if email is None:
            raise credentials_exception
        token_scopes = _token_scopes(payload)
    except (JWTError, ValidationError):
        logging.warning("Rejected bearer token: could not decode")
        raise credentials_exception

    user = db.query(models.User).filter(models.User.email == email).first()
    if user is None:
        raise credentials_exception

    for scope in security_scopes.scopes:
        if scope not in token_scopes:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not enough permissions",
                headers={"WWW-Authenticate": authenticate_value},
            )

    return user


async def get_current_active_user(
    current_user: models.User = Security(get_current_user, scopes=[])
) -> models.User:
    """Get the current active user."""
    if not current_user.is_active:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Inactive user"
        )
    return current_user


def get_admin_user(
    current_user: models.User = Security(get_current_user, scopes=["admin"])
) -> models.User:
    """Get the current user if they are an active admin."""
    if current_user.is_active and (current_user.role or "").lower() == models.UserRole.ADMIN.value:
        return current_user
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Not enough permissions"
    )


def get_librarian_user(
    current_user: models.User = Depends(get_current_active_user),
) -> models.User:
    """Get the current user if they are a librarian or admin.

    The stored role decides; Security with several scopes would demand all of them,
    and staff tokens only carry the one role they were minted for.
    """
    if (current_user.role or "").lower() in STAFF_ROLES:
        return current_user
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not enough permissions")


def is_staff(user: models.User) -> bool:
    return (user.role or "").lower() in STAFF_ROLES
