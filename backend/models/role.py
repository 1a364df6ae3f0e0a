"""
HomeXpert - Custom staff roles
A custom role is a named permission set on top of the built-in presets.
"""

import re
from typing import Optional, List
from pydantic import BaseModel, Field, validator

ROLE_NAME_REGEX = r"^[a-z][a-z0-9_]{1,39}$"


def _clean_name(v: str) -> str:
    v = v.strip().lower().replace(" ", "_")
    if not re.match(ROLE_NAME_REGEX, v):
        raise ValueError("Role name must be 2-40 characters: letters, digits, underscores")
    return v


class RoleCreate(BaseModel):
    name: str
    description: str = ""
    permissions: List[str] = Field(default_factory=list)

    @validator("name")
    def validate_name(cls, v):
        return _clean_name(v)


class RoleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    permissions: Optional[List[str]] = None

    @validator("name")
    def validate_name(cls, v):
        return _clean_name(v) if v is not None else v
