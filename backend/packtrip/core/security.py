import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from packtrip.core.settings import Settings, get_settings
from packtrip.db.models import UserRole

# Set up logging
logger = logging.getLogger(__name__)

# Tokens are issued by the upstream auth service; this app only verifies them
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


@dataclass(frozen=True)
class Actor:
    """Who is calling: passed explicitly into every booking and payment operation"""
    user_id: UUID
    role: UserRole

    @property
    def is_staff(self) -> bool:
        return self.role in (UserRole.ADMIN, UserRole.OWNER)


def create_access_token(
    user_id: UUID,
    role: UserRole = UserRole.CUSTOMER,
    expires_delta: Optional[timedelta] = None,
    settings: Optional[Settings] = None,
) -> str:
    """Create a JWT access token"""
    settings = settings or get_settings()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": str(user_id),
        "role": UserRole(role).value,
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_actor(token: str, settings: Settings) -> Actor:
    credentials_exc = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        logger.warning(f"JWT decode error: {e}")
        raise credentials_exc

    subject = payload.get("sub")
    if not subject or payload.get("type") != "access":
        logger.warning("Invalid token payload")
        raise credentials_exc

    try:
        user_id = UUID(subject)
        role = UserRole(payload.get("role", UserRole.CUSTOMER.value))
    except ValueError:
        logger.warning("Token subject or role is malformed")
        raise credentials_exc
    return Actor(user_id=user_id, role=role)


async def get_current_actor(
    token: str = Depends(oauth2_scheme),
    settings: Settings = Depends(get_settings),
) -> Actor:
    """Resolve the calling actor from the bearer token"""
    return decode_actor(token, settings)
