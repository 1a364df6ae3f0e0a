"""
Configuration and shared helpers
"""

import os
import re
import hashlib
import secrets
from datetime import datetime, timezone
from typing import Optional
from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
from pathlib import Path

# Load .env
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB
MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DB_NAME = os.environ.get('DB_NAME', 'homexpert')

client = AsyncIOMotorClient(MONGO_URL)
db = client[DB_NAME]

print(f"[CONFIG] Using database: {DB_NAME}")

CORS_ORIGINS = [o.strip() for o in os.environ.get('CORS_ORIGINS', '*').split(',') if o.strip()]
SESSION_DAYS = int(os.environ.get('SESSION_DAYS', '7'))
SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE', 'Asia/Kolkata')

# Account vendors pay subscriptions into by bank transfer
PAYMENT_ACCOUNT = {
    "account_name": os.environ.get('PAYMENT_ACCOUNT_NAME', 'HOMEXPERT SERVICES PVT LTD'),
    "account_number": os.environ.get('PAYMENT_ACCOUNT_NUMBER', ''),
    "ifsc_code": os.environ.get('PAYMENT_IFSC', ''),
    "bank_name": os.environ.get('PAYMENT_BANK_NAME', ''),
    "upi_id": os.environ.get('PAYMENT_UPI_ID', ''),
}


# ==================== HELPERS ====================

PHONE_IN_REGEX = re.compile(r"^[6-9]\d{9}$")
EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def hash_password(password: str) -> str:
    """Hash a password with SHA256"""
    return hashlib.sha256(password.encode()).hexdigest()

def generate_token() -> str:
    """Generate a secure session token"""
    return secrets.token_urlsafe(32)

def now_iso() -> str:
    """Current UTC time as ISO string"""
    return datetime.now(timezone.utc).isoformat()

def timestamp() -> int:
    """Current timestamp in seconds"""
    return int(datetime.now(timezone.utc).timestamp())

def timestamp_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)

def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO string stored in Mongo back into an aware datetime.
    Date-only values ("2026-03-01") are read as midnight UTC.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed

def month_key(dt: Optional[datetime] = None) -> str:
    """YYYY-MM key used for monthly usage buckets"""
    dt = dt or datetime.now(timezone.utc)
    return f"{dt.year}-{dt.month:02d}"


def normalize_phone_in(phone: str) -> tuple[bool, str]:
    """
    Normalise an Indian mobile number.
    Stored format: 10 digits starting with 6-9.

    Accepts +91 / 91 / 0 prefixes and strips spaces or dashes.
    Returns: (is_valid, normalized_or_error)
    """
    if not phone or not phone.strip():
        return False, "Phone number is required"

    digits = ''.join(filter(str.isdigit, phone))

    if len(digits) == 12 and digits.startswith("91"):
        digits = digits[2:]
    elif len(digits) == 11 and digits.startswith("0"):
        digits = digits[1:]

    if not PHONE_IN_REGEX.match(digits):
        return False, "Invalid phone number. Must be a 10-digit Indian mobile number"

    return True, digits


def validate_email(email: Optional[str]) -> bool:
    if not email:
        return False
    return bool(EMAIL_REGEX.match(email.strip()))
