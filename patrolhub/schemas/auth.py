from pydantic import BaseModel, EmailStr, Field
from typing import Optional


class LoginRequest(BaseModel):
    identifier: str  # username, email or badge number
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class MeResponse(BaseModel):
    id: str
    username: str
    email: EmailStr
    name: Optional[str] = None
    badge_number: Optional[str] = None
    role: str
    assigned_checkpoint_id: Optional[str] = None


class UserCreate(BaseModel):
    username: str = Field(min_length=3, max_length=100)
    email: EmailStr
    password: str = Field(min_length=8)
    name: Optional[str] = Field(default=None, max_length=255)
    badge_number: Optional[str] = Field(default=None, max_length=50)
    role: str = Field(default="guard", pattern=r"^(admin|guard)$")
