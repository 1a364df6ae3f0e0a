"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  HomeXpert - Lead models                                                     ║
║                                                                              ║
║  Pipeline: pending → available/assigned → taken → contacted →                ║
║            interested/not_interested → scheduled → in_progress →             ║
║            completed/converted/cancelled                                     ║
║  Refund is a parallel branch stored in refund_request.status                 ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, validator
from enum import Enum

from config import parse_iso


class LeadStatus(str, Enum):
    PENDING = "pending"
    AVAILABLE = "available"
    ASSIGNED = "assigned"
    TAKEN = "taken"
    CONTACTED = "contacted"
    INTERESTED = "interested"
    NOT_INTERESTED = "not_interested"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CONVERTED = "converted"
    CANCELLED = "cancelled"


class RefundStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


VALID_LEAD_STATUSES = [s.value for s in LeadStatus]
VALID_REFUND_STATUSES = [s.value for s in RefundStatus]
VALID_PRIORITIES = ["low", "medium", "high"]
VALID_URGENCIES = ["normal", "urgent"]
NOTE_TYPES = ["general", "call", "meeting", "email"]
FOLLOW_UP_TYPES = ["call", "visit", "email", "other"]

BULK_ACTIONS = ["updateStatus", "assignVendors", "unassignVendors", "setPriority", "addNote"]
SINGLE_ACTIONS = [
    "updateBasicInfo", "updateStatus", "assignVendors", "unassignVendors",
    "addNote", "addFollowUp", "markTaken", "requestRefund", "processRefund",
]
ASSIGNMENT_TYPES = ["manual", "auto", "round-robin"]


class LeadAddress(BaseModel):
    house_room_number: Optional[str] = ""
    landmark: Optional[str] = ""
    current_location: Optional[str] = ""
    city: Optional[str] = ""
    state: Optional[str] = ""
    country: Optional[str] = "India"
    pincode: Optional[str] = ""


class LeadSubmit(BaseModel):
    """Lead submitted from the public website form"""
    customer_name: str = Field(..., min_length=1)
    customer_phone: str
    service: str = Field(..., min_length=1)
    customer_email: Optional[str] = None
    address: Optional[LeadAddress] = None
    description: Optional[str] = ""
    urgency: str = "normal"
    price: Optional[float] = Field(default=0, ge=0)

    @validator("urgency")
    def validate_urgency(cls, v):
        if v not in VALID_URGENCIES:
            raise ValueError(f"Invalid urgency: {v}")
        return v


class LeadCreate(LeadSubmit):
    """Lead created by an admin. Address is mandatory."""
    address: LeadAddress
    priority: str = "medium"

    @validator("priority")
    def validate_priority(cls, v):
        if v not in VALID_PRIORITIES:
            raise ValueError(f"Invalid priority: {v}")
        return v


class BulkLeadAction(BaseModel):
    lead_ids: List[str] = Field(..., min_length=1)
    action: str
    data: Dict[str, Any] = {}

    @validator("action")
    def validate_action(cls, v):
        if v not in BULK_ACTIONS:
            raise ValueError(f"Invalid action: {v}. Valid: {BULK_ACTIONS}")
        return v


class BulkLeadDelete(BaseModel):
    lead_ids: List[str] = Field(..., min_length=1)
    reason: Optional[str] = "Deleted by admin"


class LeadAction(BaseModel):
    action: str
    data: Dict[str, Any] = {}

    @validator("action")
    def validate_action(cls, v):
        if v not in SINGLE_ACTIONS:
            raise ValueError(f"Invalid action: {v}. Valid: {SINGLE_ACTIONS}")
        return v


class AssignRequest(BaseModel):
    lead_ids: List[str] = Field(..., min_length=1)
    assignment_type: str = "manual"
    vendor_ids: List[str] = []
    max_vendors_per_lead: int = Field(default=3, ge=1, le=20)

    @validator("assignment_type")
    def validate_type(cls, v):
        if v not in ASSIGNMENT_TYPES:
            raise ValueError(f"Invalid assignment type: {v}")
        return v


class TakeLeadRequest(BaseModel):
    lead_id: str


class VendorLeadUpdate(BaseModel):
    status: Optional[str] = None
    scheduled_date: Optional[str] = None
    scheduled_time: Optional[str] = None
    conversion_value: Optional[float] = Field(default=None, ge=0)
    actual_service_cost: Optional[float] = Field(default=None, ge=0)
    reason: Optional[str] = None
    customer_feedback: Optional[str] = None
    note: Optional[str] = Field(default=None, max_length=1000)

    @validator("status")
    def validate_status(cls, v):
        if v is not None and v not in VALID_LEAD_STATUSES:
            raise ValueError(f"Invalid status: {v}")
        return v


class RefundRequestCreate(BaseModel):
    reason: str = Field(..., min_length=1)


class NoteCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=1000)
    type: str = "general"

    @validator("type")
    def validate_type(cls, v):
        if v not in NOTE_TYPES:
            raise ValueError(f"Invalid note type: {v}")
        return v


class FollowUpCreate(BaseModel):
    follow_up: str = Field(..., min_length=1, max_length=500)
    scheduled_date: str
    priority: str = "medium"
    type: str = "call"

    @validator("scheduled_date")
    def validate_date(cls, v):
        if parse_iso(v) is None:
            raise ValueError("Invalid scheduled date")
        return v

    @validator("priority")
    def validate_priority(cls, v):
        if v not in VALID_PRIORITIES:
            raise ValueError(f"Invalid priority: {v}")
        return v

    @validator("type")
    def validate_type(cls, v):
        if v not in FOLLOW_UP_TYPES:
            raise ValueError(f"Invalid follow-up type: {v}")
        return v


class FollowUpUpdate(BaseModel):
    follow_up_id: str
    completed: bool = True
    completion_note: Optional[str] = None
