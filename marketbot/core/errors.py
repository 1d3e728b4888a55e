"""
Domain error taxonomy.

Every error carries a user-facing message; the dispatcher converts them into a
reply or a callback toast so none of them reaches the webhook boundary.
"""


class MarketBotError(Exception):
    """Base class for recoverable bot errors."""

    default_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None, *, user_message: str | None = None):
        super().__init__(message or self.default_message)
        self.user_message = user_message or message or self.default_message


class ValidationError(MarketBotError):
    """Bad user input; re-prompt without changing state."""

    default_message = "That input is not valid. Please try again."


class NotFoundError(MarketBotError):
    """Referenced product, user or session does not exist."""

    default_message = "Not found."


class PermissionDeniedError(MarketBotError):
    """A non-administrator invoked an administrator-only action."""

    default_message = "You are not authorized to do that."


class ConcurrencyConflict(MarketBotError):
    """The entity was already transitioned by a concurrent request."""

    default_message = "This was already handled."


class StoreUnavailableError(MarketBotError):
    """The database is needed to complete the action and cannot be reached."""

    default_message = "This is temporarily unavailable. Please try again in a few minutes."


class TransportError(MarketBotError):
    """A send/edit call to the messaging gateway failed."""

    default_message = "Message delivery failed."

    def __init__(self, message: str | None = None, *, method: str | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.method = method


class ConfigurationError(MarketBotError):
    """A required startup setting is missing or invalid. Fatal."""

    default_message = "Bot is misconfigured."
