"""
HomeXpert - Vendor models
"""

import re
from typing import Optional, List, Dict
from pydantic import BaseModel, Field, validator
from enum import Enum


class VendorStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


VALID_VENDOR_STATUSES = [s.value for s in VendorStatus]


class ServiceArea(BaseModel):
    city: str
    areas: List[str] = []


class VendorAddress(BaseModel):
    street: str = ""
    area: Optional[str] = ""
    city: str
    state: str = ""
    pincode: str = ""


class VendorRegister(BaseModel):
    """Vendor self-registration (creates the vendor user too)"""
    email: str
    password: str = Field(..., min_length=6)
    owner_name: str = Field(..., min_length=1)
    business_name: str = Field(..., min_length=1)
    phone: str
    services: List[str] = Field(..., min_length=1)
    address: VendorAddress
    service_areas: List[ServiceArea] = []


class VendorCreate(VendorRegister):
    status: str = "active"

    @validator("status")
    def validate_status(cls, v):
        if v not in VALID_VENDOR_STATUSES:
            raise ValueError(f"Invalid vendor status: {v}")
        return v


class VendorUpdate(BaseModel):
    business_name: Optional[str] = None
    owner_name: Optional[str] = None
    phone: Optional[str] = None
    services: Optional[List[str]] = None
    address: Optional[VendorAddress] = None
    service_areas: Optional[List[ServiceArea]] = None
    status: Optional[str] = None
    is_verified: Optional[bool] = None
    verification_notes: Optional[str] = None

    @validator("status")
    def validate_status(cls, v):
        if v is not None and v not in VALID_VENDOR_STATUSES:
            raise ValueError(f"Invalid vendor status: {v}")
        return v


# ==================== ONBOARDING / VERIFICATION ====================

DOCUMENT_TYPES = ["aadhar_card", "pan_card", "business_license"]
IFSC_REGEX = r"^[A-Z]{4}0[A-Z0-9]{6}$"


class VendorDocument(BaseModel):
    number: str = ""
    image_url: str = ""


class BankDetails(BaseModel):
    account_holder_name: str = Field(..., min_length=1)
    account_number: str
    ifsc_code: str
    bank_name: Optional[str] = ""

    @validator("account_number")
    def validate_account_number(cls, v):
        v = v.replace(" ", "")
        if not v.isdigit() or not 9 <= len(v) <= 18:
            raise ValueError("Account number must be 9 to 18 digits")
        return v

    @validator("ifsc_code")
    def validate_ifsc(cls, v):
        v = v.strip().upper()
        if not re.match(IFSC_REGEX, v):
            raise ValueError(f"Invalid IFSC code: {v}")
        return v


class VendorOnboard(VendorRegister):
    """Full onboarding form: registration plus documents and payout account"""
    business_description: str = ""
    documents: Dict[str, VendorDocument] = {}
    bank_details: Optional[BankDetails] = None

    @validator("documents")
    def validate_documents(cls, v):
        unknown = sorted(set(v) - set(DOCUMENT_TYPES))
        if unknown:
            raise ValueError(f"Unknown document type(s): {unknown}")
        return v


class VerificationRequestCreate(BaseModel):
    reason: Optional[str] = None


class DocumentReview(BaseModel):
    verified: bool
    notes: Optional[str] = None
