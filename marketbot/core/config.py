from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        validate_assignment=True,
    )

    app_env: str = "dev"
    database_url: str

    # Telegram Bot API
    telegram_bot_token: str
    telegram_api_base: str = "https://api.telegram.org"
    telegram_webhook_secret: str | None = None  # Compared with X-Telegram-Bot-Api-Secret-Token
    telegram_dry_run: bool = True  # Set to False in production to enable real sending

    # Marketplace identity
    admin_ids: str = ""  # Comma-separated Telegram user ids
    channel_id: str = "@jumarket"  # Public channel approved listings are posted to
    bot_username: str = ""  # Resolved from getMe at startup when empty
    marketplace_name: str = "JU Marketplace"
    currency: str = "ETB"

    # Listing wizard
    description_placeholder: str = "No description"

    # Browsing / admin panels
    browse_limit: int = 10
    admin_page_size: int = 10
    moderation_browse_delay_seconds: float = 0.3  # Pause between pending cards

    # Broadcast fan-out
    broadcast_progress_every: int = 10  # Edit the progress message every N sends
    broadcast_send_delay_seconds: float = 0.1  # Transport throughput guard

    # Supabase Storage (durable product images)
    supabase_url: str | None = None
    supabase_service_role_key: str | None = None  # Server-only, never exposed
    supabase_storage_bucket: str = "product-images"

    # Admin HTTP API
    admin_api_key: str | None = (
        None  # Optional - if not set, admin endpoints are unprotected (dev mode)
    )

    # Rate limiting
    rate_limit_enabled: bool = True  # Enable rate limiting for admin endpoints
    rate_limit_requests: int = 30  # Number of requests allowed per window
    rate_limit_window_seconds: int = 60  # Time window in seconds


def parse_admin_ids(raw: str) -> list[int]:
    """Parse the comma-separated ADMIN_IDS value, skipping blanks and junk."""
    ids: list[int] = []
    for part in (raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        try:
            ids.append(int(part))
        except ValueError:
            continue
    return ids


# Settings will load from environment variables or .env file
# Required fields will raise ValidationError if missing (fail-fast)
settings = Settings()
