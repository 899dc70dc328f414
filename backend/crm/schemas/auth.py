from datetime import datetime
from typing import Optional

from pydantic import Field, field_validator

from crm.schemas.common import CamelModel, normalise_email


class RegisterRequest(CamelModel):
    name: str = Field(min_length=2, max_length=50)
    email: str
    password: str = Field(min_length=6, max_length=128)

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        return normalise_email(v)


class LoginRequest(CamelModel):
    email: str = Field(min_length=1)
    password: str = Field(min_length=1)

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.strip().lower()


class UserOut(CamelModel):
    id: int
    name: str
    email: str
    role: str
    is_active: bool
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None


class TokenResponse(CamelModel):
    user: UserOut
    access_token: str
    token_type: str = "bearer"
    expires_in: int
