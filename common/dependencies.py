"""Reusable FastAPI dependencies for auth, clocks and database access."""
from datetime import datetime
from typing import Callable

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from .auth import Principal, principal_from_token
from .models import RoleEnum, utcnow

oauth_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def get_current_principal(token: str = Depends(oauth_scheme)) -> Principal:
    return principal_from_token(token)


def allow_roles(*roles: RoleEnum) -> Callable[[Principal], Principal]:
    def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return principal

    return dependency


def get_now() -> datetime:
    """The request moment; overridden in tests to pin the clock."""

    return utcnow()
