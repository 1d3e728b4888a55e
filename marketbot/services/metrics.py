"""
Metrics and monitoring for system health and safety.

Tracks:
- Duplicate Telegram updates
- Lost compare-and-set races (moderation, broadcast, conversation state)
- Transport send/edit failures
- Persistent store degradation
"""
import logging
from collections import defaultdict
from datetime import UTC, datetime
from threading import Lock

logger = logging.getLogger(__name__)

# In-memory metrics (single process owns the bot state)
_metrics_lock = Lock()
_metrics: dict[str, int] = defaultdict(int)
_metrics_timestamps: dict[str, datetime] = {}


def _increment(key: str) -> None:
    with _metrics_lock:
        _metrics[key] += 1
        _metrics_timestamps[f"{key}.last"] = datetime.now(UTC)


def record_duplicate_update(update_id: int) -> None:
    """Record a redelivered Telegram update that was acknowledged but not dispatched."""
    _increment("duplicate.telegram_update")
    logger.info(f"Duplicate update detected: {update_id}")


def record_failed_atomic_update(
    operation: str,
    entity_id: int | str,
    expected_status: str,
    actual_status: str | None,
) -> None:
    """
    Record a failed compare-and-set (status mismatch).

    Args:
        operation: Operation name (e.g., "approve_product")
        entity_id: Product id, broadcast token or user id
        expected_status: Status the caller expected
        actual_status: Status actually found
    """
    _increment(f"atomic_update_failed.{operation}")
    logger.warning(
        f"Atomic update failed: {operation} for {entity_id}. "
        f"Expected status '{expected_status}', got '{actual_status}'"
    )


def record_transport_failure(method: str) -> None:
    _increment(f"transport_failure.{method}")


def record_store_degraded(operation: str) -> None:
    _increment(f"store_degraded.{operation}")


def get_metrics() -> dict:
    """
    Get current metrics snapshot.

    Returns:
        Dict with counters and last-seen timestamps (ISO strings)
    """
    with _metrics_lock:
        return {
            "counters": dict(_metrics),
            "timestamps": {k: v.isoformat() for k, v in _metrics_timestamps.items()},
        }


def reset_metrics() -> None:
    """Reset all metrics (useful for testing)."""
    with _metrics_lock:
        _metrics.clear()
        _metrics_timestamps.clear()
