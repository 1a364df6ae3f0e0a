"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  HomeXpert - Models Package                                                  ║
║                                                                              ║
║  from models import LeadStatus, PlanCreate, TicketCreate, etc.               ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

# Auth
from .auth import (
    VALID_ROLES,
    VENDOR_ROLE,
    UserLogin,
    UserCreate,
    UserUpdate,
)

# Leads
from .lead import (
    LeadStatus,
    RefundStatus,
    VALID_LEAD_STATUSES,
    VALID_REFUND_STATUSES,
    VALID_PRIORITIES,
    LeadAddress,
    LeadSubmit,
    LeadCreate,
    BulkLeadAction,
    BulkLeadDelete,
    LeadAction,
    AssignRequest,
    TakeLeadRequest,
    VendorLeadUpdate,
    RefundRequestCreate,
    NoteCreate,
    FollowUpCreate,
    FollowUpUpdate,
)

# Vendors
from .vendor import (
    VendorStatus,
    VALID_VENDOR_STATUSES,
    VendorRegister,
    VendorCreate,
    VendorUpdate,
    DOCUMENT_TYPES,
    VendorDocument,
    BankDetails,
    VendorOnboard,
    VerificationRequestCreate,
    DocumentReview,
)

# Custom roles
from .role import (
    RoleCreate,
    RoleUpdate,
)

# Subscriptions
from .subscription import (
    PlanDuration,
    DURATION_DAYS,
    SubscriptionStatus,
    PaymentStatus,
    VALID_SUBSCRIPTION_STATUSES,
    VALID_PAYMENT_STATUSES,
    PlanCreate,
    PlanUpdate,
    PurchaseRequest,
    PaymentSubmission,
    ChangePlanRequest,
    RejectPaymentRequest,
    AdjustLeadsRequest,
)

# Support
from .support import (
    TicketCategory,
    TicketPriority,
    TicketStatus,
    TicketCreate,
    AdminTicketCreate,
    MessageCreate,
    VendorTicketAction,
    AdminTicketAction,
)

# Notifications
from .notification import (
    MarkReadRequest,
)
