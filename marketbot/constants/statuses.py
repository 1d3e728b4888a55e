"""
Status and phase constants - centralized to avoid circular imports.
"""

# Product moderation lifecycle
STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"

PRODUCT_STATUSES = (STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED)

# Listing wizard phases (in order)
PHASE_AWAITING_IMAGE = "awaiting_image"
PHASE_AWAITING_TITLE = "awaiting_title"
PHASE_AWAITING_PRICE = "awaiting_price"
PHASE_AWAITING_DESCRIPTION = "awaiting_description"
PHASE_AWAITING_CATEGORY = "awaiting_category"

WIZARD_PHASES = (
    PHASE_AWAITING_IMAGE,
    PHASE_AWAITING_TITLE,
    PHASE_AWAITING_PRICE,
    PHASE_AWAITING_DESCRIPTION,
    PHASE_AWAITING_CATEGORY,
)

# Single-text prompts (next free text is captured by the owning component)
PHASE_ADMIN_BROADCAST_TEXT = "admin_broadcast_text"
PHASE_ADMIN_DIRECT_MESSAGE = "admin_direct_message"
PHASE_ADMIN_SET_CHANNEL = "admin_set_channel"
PHASE_ADMIN_SET_BOT_USERNAME = "admin_set_bot_username"
PHASE_ADMIN_SET_WELCOME = "admin_set_welcome"
PHASE_CONTACT_ADMIN_MESSAGE = "contact_admin_message"
PHASE_REPORT_REASON = "report_reason"

ADMIN_TEXT_PHASES = (
    PHASE_ADMIN_BROADCAST_TEXT,
    PHASE_ADMIN_DIRECT_MESSAGE,
    PHASE_ADMIN_SET_CHANNEL,
    PHASE_ADMIN_SET_BOT_USERNAME,
    PHASE_ADMIN_SET_WELCOME,
)

# Broadcast job lifecycle
BROADCAST_COMPOSING = "composing"
BROADCAST_AWAITING_CONFIRMATION = "awaiting_confirmation"
BROADCAST_SENDING = "sending"
BROADCAST_COMPLETED = "completed"
BROADCAST_CANCELLED = "cancelled"

# Broadcast recipient scopes
SCOPE_ALL = "all"
SCOPE_ADMINS = "admins"  # Test pass

# Relay roles
ROLE_BUYER = "buyer"
ROLE_SELLER = "seller"
