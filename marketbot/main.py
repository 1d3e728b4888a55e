import logging

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketbot.api.admin import router as admin_router
from marketbot.api.webhooks import router as webhooks_router
from marketbot.core.config import Settings, parse_admin_ids, settings
from marketbot.core.errors import ConfigurationError
from marketbot.db.deps import get_db
from marketbot.middleware.correlation_id import CorrelationIdMiddleware
from marketbot.middleware.rate_limit import RateLimitMiddleware
from marketbot.services.bot import get_bot, set_bot

logger = logging.getLogger(__name__)

app = FastAPI(title="Campus Marketplace Bot")

app.add_middleware(RateLimitMiddleware, rate_limited_paths=["/admin"])
app.add_middleware(CorrelationIdMiddleware)

app.include_router(webhooks_router, prefix="/webhooks")
app.include_router(admin_router, prefix="/admin")


def validate_settings(config: Settings) -> None:
    """Fail fast on missing credentials; production adds stricter requirements."""
    required_settings = ["database_url", "telegram_bot_token"]
    missing = [key for key in required_settings if not getattr(config, key, None)]
    if missing:
        raise ConfigurationError(
            f"Missing required environment variables: {', '.join(k.upper() for k in missing)}. "
            "Please check your .env file or environment configuration."
        )

    if config.app_env == "production":
        production_errors = []
        if not config.admin_api_key:
            production_errors.append("ADMIN_API_KEY is required in production.")
        if not config.telegram_webhook_secret:
            production_errors.append(
                "TELEGRAM_WEBHOOK_SECRET is required in production to authenticate webhook calls."
            )
        if config.telegram_dry_run:
            production_errors.append("TELEGRAM_DRY_RUN must be false in production.")
        if not parse_admin_ids(config.admin_ids):
            production_errors.append("ADMIN_IDS must list at least one administrator in production.")

        if production_errors:
            error_message = "Production environment validation failed:\n" + "\n".join(
                f"  - {error}" for error in production_errors
            )
            logger.error(error_message)
            raise ConfigurationError(error_message)


@app.on_event("startup")
async def startup_event():
    """Validate configuration, build the bot and hydrate it from the database."""
    validate_settings(settings)

    # Reuse a bot installed before startup (tests); otherwise build from settings
    bot = get_bot()
    await bot.startup()

    logger.info(
        "Startup: Configuration loaded - "
        f"Environment: {settings.app_env}, "
        f"Admins: {len(bot.admin_ids)}, "
        f"Telegram dry-run: {bot.gateway.dry_run}, "
        f"Media storage: {'supabase' if bot.media.configured else 'telegram file ids'}"
    )
    if not bot.admin_ids:
        logger.warning("ADMIN_IDS is empty - listings cannot be moderated")


@app.on_event("shutdown")
async def shutdown_event():
    await get_bot().shutdown()
    set_bot(None)


@app.get("/health")
def health():
    """Liveness; reports whether the bot is serving from cache only."""
    bot = get_bot()
    return {
        "ok": True,
        "store_degraded": bot.store.degraded,
        "dry_run": bot.gateway.dry_run,
    }


@app.get("/ready")
def ready(db: Session = Depends(get_db)):
    """Readiness: 200 if the database answers, 503 otherwise."""
    try:
        db.execute(text("SELECT 1"))
        return {"ok": True, "database": "connected"}
    except SQLAlchemyError as e:
        logger.error(f"Readiness check failed - database error: {e}")
        return JSONResponse(status_code=503, content={"ok": False, "database": "disconnected"})
