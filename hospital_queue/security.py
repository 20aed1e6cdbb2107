import enum
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import settings

# Tokens are issued by the hospital's identity service; this service only checks them.
bearer_scheme = HTTPBearer(auto_error=False)


class Role(str, enum.Enum):
    ADMIN = "admin"
    DOCTOR = "doctor"
    RECEPTIONIST = "receptionist"
    LAB_TECH = "lab_tech"


# --- JWT ---

def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Signs a token carrying ``sub`` and ``role``. Used by tooling and tests."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Dict[str, str]:
    """Decodes the bearer token and returns the caller's username and role."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise credentials_exception
    user = decode_token(credentials.credentials)
    if user is None:
        raise credentials_exception
    return user


def decode_token(token: str) -> Optional[Dict[str, str]]:
    """``{"username", "role"}`` from a valid token, None when it is broken, expired or incomplete."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None

    username = payload.get("sub")
    role = payload.get("role")
    if username is None or role is None:
        return None
    return {"username": username, "role": role}


# --- ROLE AUTHORIZATION ---

def require_role(allowed_roles: Iterable[Role]):
    allowed = {Role(r).value for r in allowed_roles}

    def role_checker(user_info: dict = Depends(get_current_user)):
        if user_info["role"] not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"User role '{user_info['role']}' not authorized for this action.",
            )
        return user_info

    return role_checker
