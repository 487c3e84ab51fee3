from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import APIKeyHeader
from jose import JWTError, jwt
from pydantic import ValidationError as PydanticValidationError

from .config import settings
from .models import UserRole
from .schemas import CurrentUser

api_key_header = APIKeyHeader(name="Authorization", auto_error=False)


async def get_key_by_user_id_or_ip(request: Request) -> str:
    """
    Tries to get the user ID from the JWT token.
    If it fails (no token, invalid token), it falls back to the client's IP.
    """
    try:
        token = request.headers.get("Authorization")
        scheme, jwt_token = token.split()
        if scheme.lower() != "bearer":
            return request.client.host

        payload = jwt.decode(jwt_token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        user_id = payload.get("sub")

        if user_id:
            return str(user_id)
    except (JWTError, ValueError, AttributeError, TypeError):
        # If token is invalid, missing, or malformed, limit by IP
        pass
    return request.client.host


def decode_user(token: str) -> CurrentUser:
    """
    Decodes 'Bearer <jwt>' into the caller's id and role.
    Raises ValueError for anything that is not a valid token.
    """
    scheme, jwt_token = token.split()
    if scheme.lower() != "bearer":
        raise ValueError("Unsupported authorization scheme")
    try:
        payload = jwt.decode(jwt_token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        return CurrentUser(id=int(payload.get("sub")), role=payload.get("role"), name=payload.get("name"))
    except (JWTError, PydanticValidationError, TypeError) as e:
        raise ValueError(str(e))


async def get_current_user(token: Annotated[Optional[str], Depends(api_key_header)]) -> CurrentUser:
    """
    Decodes the JWT from the 'Authorization: Bearer ...' header.
    """
    if not token:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authenticated")
    try:
        return decode_user(token)
    except (ValueError, AttributeError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_roles(*roles: UserRole):
    """Dependency factory rejecting callers whose role is not listed."""

    async def checker(user: Annotated[CurrentUser, Depends(get_current_user)]) -> CurrentUser:
        if user.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return user

    return checker


async def get_chat_caller(
        token: Annotated[Optional[str], Depends(api_key_header)],
        x_service_token: Annotated[Optional[str], Header(alias="X-Service-Token")] = None,
) -> Optional[CurrentUser]:
    """
    Room history is read and written both by users and by the relay.
    The relay authenticates with the shared service token and gets None back.
    """
    if x_service_token is not None:
        if x_service_token != settings.SERVICE_TOKEN:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid service token")
        return None
    return await get_current_user(token)
