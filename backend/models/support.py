"""
HomeXpert - Support ticket models
"""

from typing import Optional, List
from pydantic import BaseModel, Field, validator
from enum import Enum


class TicketCategory(str, Enum):
    TECHNICAL_ISSUE = "technical_issue"
    BILLING_SUPPORT = "billing_support"
    ACCOUNT_ACCESS = "account_access"
    LEAD_MANAGEMENT = "lead_management"
    SUBSCRIPTION_ISSUE = "subscription_issue"
    PROFILE_VERIFICATION = "profile_verification"
    PAYMENT_ISSUE = "payment_issue"
    FEATURE_REQUEST = "feature_request"
    GENERAL_INQUIRY = "general_inquiry"
    URGENT_SUPPORT = "urgent_support"


class TicketPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TicketStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    WAITING_FOR_VENDOR = "waiting_for_vendor"
    WAITING_FOR_ADMIN = "waiting_for_admin"
    RESOLVED = "resolved"
    CLOSED = "closed"


VALID_TICKET_STATUSES = [s.value for s in TicketStatus]
VALID_TICKET_PRIORITIES = [p.value for p in TicketPriority]
MESSAGE_TYPES = ["text", "image", "document", "system_notification"]
VENDOR_ACTIONS = ["rate_satisfaction", "reopen"]
ADMIN_ACTIONS = [
    "assign", "update_status", "update_priority", "escalate",
    "resolve", "close", "reopen", "update_tags", "link_tickets",
]


class Attachment(BaseModel):
    file_name: str
    file_url: str
    file_type: Optional[str] = None
    file_size: Optional[int] = None


class TicketCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=5000)
    category: TicketCategory
    priority: TicketPriority = TicketPriority.MEDIUM
    related_lead_id: Optional[str] = None
    attachments: List[Attachment] = []


class AdminTicketCreate(TicketCreate):
    vendor_id: str


class MessageCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=5000)
    message_type: str = "text"
    attachments: List[Attachment] = []
    is_internal: bool = False

    @validator("message_type")
    def validate_type(cls, v):
        if v not in MESSAGE_TYPES or v == "system_notification":
            raise ValueError(f"Invalid message type: {v}")
        return v


class VendorTicketAction(BaseModel):
    action: str
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    feedback: Optional[str] = None
    reason: Optional[str] = None

    @validator("action")
    def validate_action(cls, v):
        if v not in VENDOR_ACTIONS:
            raise ValueError(f"Invalid action: {v}. Valid: {VENDOR_ACTIONS}")
        return v


class AdminTicketAction(BaseModel):
    action: str
    assigned_to: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    level: Optional[str] = None
    reason: Optional[str] = None
    note: Optional[str] = None
    tags: Optional[List[str]] = None
    ticket_ids: Optional[List[str]] = None

    @validator("action")
    def validate_action(cls, v):
        if v not in ADMIN_ACTIONS:
            raise ValueError(f"Invalid action: {v}. Valid: {ADMIN_ACTIONS}")
        return v

    @validator("status")
    def validate_status(cls, v):
        if v is not None and v not in VALID_TICKET_STATUSES:
            raise ValueError(f"Invalid status: {v}")
        return v

    @validator("priority")
    def validate_priority(cls, v):
        if v is not None and v not in VALID_TICKET_PRIORITIES:
            raise ValueError(f"Invalid priority: {v}")
        return v
