"""
Pydantic schemas for API response validation.
"""

from marketbot.schemas.admin import (
    ChatSessionResponse,
    ProductResponse,
    StatsResponse,
    SystemEventResponse,
)

__all__ = [
    "ChatSessionResponse",
    "ProductResponse",
    "StatsResponse",
    "SystemEventResponse",
]
