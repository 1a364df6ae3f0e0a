"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  HomeXpert - Subscription models                                             ║
║                                                                              ║
║  Plan = catalogue entry (leads quota over a duration, price in INR)          ║
║  Vendor subscription = one purchase of a plan (snapshot + usage + payment)   ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from typing import Optional, List
from pydantic import BaseModel, Field, validator
from enum import Enum


class PlanDuration(str, Enum):
    ONE_MONTH = "1-month"
    THREE_MONTH = "3-month"
    SIX_MONTH = "6-month"
    TWELVE_MONTH = "12-month"


DURATION_DAYS = {
    "1-month": 30,
    "3-month": 90,
    "6-month": 180,
    "12-month": 365,
}


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


VALID_SUBSCRIPTION_STATUSES = [s.value for s in SubscriptionStatus]
VALID_PAYMENT_STATUSES = [s.value for s in PaymentStatus]
PAYMENT_METHODS = ["online", "bank_transfer"]


class PlanLimitations(BaseModel):
    max_leads_per_day: Optional[int] = Field(default=None, ge=1)
    priority_support: bool = False


class PlanCreate(BaseModel):
    plan_name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = ""
    duration: PlanDuration
    total_leads: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    discounted_price: Optional[float] = Field(default=None, ge=0)
    currency: str = "INR"
    is_active: bool = True
    is_custom: bool = False
    assigned_to_vendors: List[str] = []
    features: List[str] = []
    limitations: PlanLimitations = PlanLimitations()


class PlanUpdate(BaseModel):
    plan_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    duration: Optional[PlanDuration] = None
    total_leads: Optional[int] = Field(default=None, ge=1)
    price: Optional[float] = Field(default=None, ge=0)
    discounted_price: Optional[float] = Field(default=None, ge=0)
    is_active: Optional[bool] = None
    is_custom: Optional[bool] = None
    assigned_to_vendors: Optional[List[str]] = None
    features: Optional[List[str]] = None
    limitations: Optional[PlanLimitations] = None


class PurchaseRequest(BaseModel):
    plan_id: str
    payment_method: str = "online"

    @validator("payment_method")
    def validate_method(cls, v):
        if v not in PAYMENT_METHODS:
            raise ValueError(f"Invalid payment method: {v}. Valid: {PAYMENT_METHODS}")
        return v


class PaymentSubmission(BaseModel):
    transaction_id: str = Field(..., min_length=4, max_length=100)
    notes: Optional[str] = None


class ChangePlanRequest(BaseModel):
    plan_id: str


class RejectPaymentRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class AdjustLeadsRequest(BaseModel):
    subscription_id: str
    type: str
    amount: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1)

    @validator("type")
    def validate_type(cls, v):
        if v not in ("increase", "decrease"):
            raise ValueError("Type must be 'increase' or 'decrease'")
        return v
