"""
HomeXpert - Notification models
"""

from typing import List
from pydantic import BaseModel


class MarkReadRequest(BaseModel):
    notification_ids: List[str] = []
    all: bool = False
