from typing import Annotated, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel, Field, ValidationError

from .config import get_settings

security = HTTPBearer()

ADMIN_ROLE = "service_role"


class AuthUser(BaseModel):
    """Claims of a verified Supabase access token."""

    user_id: str = Field(..., alias="sub")
    email: Optional[str] = None
    role: str = "authenticated"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def get_current_user(
    token: Annotated[HTTPAuthorizationCredentials, Depends(security)]
) -> AuthUser:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(
            token.credentials,
            get_settings().SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_aud": False},
        )
        return AuthUser(**payload)
    except (JWTError, ValidationError):
        raise credentials_exception
