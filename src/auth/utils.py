import jwt
from fastapi import HTTPException

from src.auth.schemas import Role, TokenData
from src.config import settings

def verify_token(token: str, credentials_exception: HTTPException) -> TokenData:
    """Decode an access token issued by the auth module"""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except jwt.PyJWTError:
        raise credentials_exception

    user_id = payload.get("sub")
    if user_id is None:
        raise credentials_exception

    role = str(payload.get("role") or Role.RIDER.value).upper()
    try:
        role = Role(role)
    except ValueError:
        raise credentials_exception

    return TokenData(user_id=str(user_id), role=role, email=payload.get("email"))
