"""
Event type constants for SystemEvent and ProcessedUpdate.

Use these instead of string literals to ensure consistency.
"""

# ---- Store ----
EVENT_STORE_DEGRADED = "store.degraded"
EVENT_ATOMIC_UPDATE_CONFLICT = "atomic_update.conflict"

# ---- Telegram ----
EVENT_TELEGRAM_UPDATE = "telegram.update"
EVENT_TELEGRAM_SECRET_VERIFICATION_FAILURE = "telegram.secret_verification_failure"
EVENT_TELEGRAM_SEND_FAILURE = "telegram.send_failure"
EVENT_DISPATCH_FAILURE = "dispatch.failure"

# ---- Listing wizard ----
EVENT_LISTING_SUBMITTED = "listing.submitted"
EVENT_LISTING_ABORTED = "listing.aborted"

# ---- Moderation ----
EVENT_PRODUCT_APPROVED = "moderation.approved"
EVENT_PRODUCT_REJECTED = "moderation.rejected"
EVENT_CHANNEL_PUBLISH_FAILURE = "moderation.publish_failure"
EVENT_PRODUCT_REPORTED = "product.reported"

# ---- Chat relay ----
EVENT_CHAT_OPENED = "chat.opened"
EVENT_CHAT_ENDED = "chat.ended"

# ---- Broadcast ----
EVENT_BROADCAST_COMPLETED = "broadcast.completed"
EVENT_BROADCAST_CANCELLED = "broadcast.cancelled"
EVENT_BROADCAST_FAILED = "broadcast.failed"

# ---- Users / admin ----
EVENT_USER_BANNED = "user.banned"
EVENT_USER_UNBANNED = "user.unbanned"
EVENT_SETTING_CHANGED = "settings.changed"

# ---- Media ----
EVENT_MEDIA_UPLOAD_FAILURE = "media_upload.failure"
