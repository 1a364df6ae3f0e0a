"""
HomeXpert - Auth & user models
Staff roles are permission presets. Vendors log in with their own role.
"""

from pydantic import BaseModel, validator
from typing import Optional, Dict


VALID_ROLES = ["super_admin", "admin", "support", "viewer"]
VENDOR_ROLE = "vendor"


class UserLogin(BaseModel):
    email: str
    password: str


class UserCreate(BaseModel):
    email: str
    password: str
    name: str
    phone: Optional[str] = None
    role: str = "viewer"
    permissions: Optional[Dict[str, bool]] = None
    custom_role_id: Optional[str] = None

    @validator("role")
    def validate_role(cls, v):
        if v not in VALID_ROLES:
            raise ValueError(f"Invalid role: {v}. Valid: {VALID_ROLES}")
        return v

    @validator("password")
    def validate_password(cls, v):
        if len(v) < 6:
            raise ValueError("Password must be at least 6 characters")
        return v


class UserUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[str] = None
    permissions: Optional[Dict[str, bool]] = None
    is_active: Optional[bool] = None
    custom_role_id: Optional[str] = None

    @validator("role")
    def validate_role(cls, v):
        if v is not None and v not in VALID_ROLES:
            raise ValueError(f"Invalid role: {v}")
        return v
