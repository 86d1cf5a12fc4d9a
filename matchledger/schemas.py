from typing import Literal

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=180)
    password: str = Field(min_length=1, max_length=240)


class ProfileCreate(BaseModel):
    email: str = Field(min_length=3, max_length=180)
    first_name: str = Field(min_length=1, max_length=80)
    last_name: str = Field(default="", max_length=80)
    company_name: str = Field(default="", max_length=120)
    bio: str = Field(default="", max_length=2000)
    user_type: Literal["founder", "investor"]
    password: str = Field(min_length=1, max_length=120)


class ProfileView(BaseModel):
    id: int
    email: str
    first_name: str
    last_name: str
    company_name: str
    bio: str = ""
    user_type: str
    is_admin: bool


class PriorityUpdate(BaseModel):
    # Validated by the priority service so bad levels map to InvalidPriority.
    priority: str | None = Field(default=None, max_length=16)


class MakeAdminRequest(BaseModel):
    email: str = Field(min_length=3, max_length=180)


class RegisterRequest(BaseModel):
    email: str = Field(min_length=3, max_length=180)
    first_name: str = Field(min_length=1, max_length=80)
    last_name: str = Field(default="", max_length=80)
    company_name: str = Field(default="", max_length=120)
    bio: str = Field(default="", max_length=2000)
    user_type: Literal["founder", "investor"]
    password: str = Field(min_length=1, max_length=120)


class ProfileUpdate(BaseModel):
    first_name: str | None = Field(default=None, min_length=1, max_length=80)
    last_name: str | None = Field(default=None, max_length=80)
    company_name: str | None = Field(default=None, max_length=120)
    bio: str | None = Field(default=None, max_length=2000)
