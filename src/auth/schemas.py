from pydantic import BaseModel
from typing import Optional
from enum import Enum

class Role(str, Enum):
    """Roles carried in access tokens issued by the auth module"""
    RIDER = "RIDER"
    DRIVER = "DRIVER"
    ADMIN = "ADMIN"

class TokenData(BaseModel):
    user_id: str
    role: Role = Role.RIDER
    email: Optional[str] = None

class CurrentUser(BaseModel):
    """Identity of the caller as far as reservations and payments care"""
    id: str
    role: Role = Role.RIDER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN
