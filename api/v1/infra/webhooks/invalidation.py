"""
Billing event to cache key invalidation.

Event types are classified into a closed set of categories, and every
category has an explicit entry in ``INVALIDATION_PATTERNS``. Event types
that are not classified invalidate nothing.
"""

import logging
from collections.abc import Callable
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession

from api.v1.infra.cache.billing import (
    PRICES_KEY,
    PRODUCTS_KEY,
    BillingCache,
    customer_key,
    price_key,
    product_key,
    subscription_key,
)

logger = logging.getLogger(__name__)


class BillingEventCategory(str, Enum):
    PRODUCT = "product"
    PRICE = "price"
    SUBSCRIPTION = "subscription"
    CUSTOMER = "customer"


EVENT_CATEGORIES: dict[str, BillingEventCategory] = {
    "product.created": BillingEventCategory.PRODUCT,
    "product.updated": BillingEventCategory.PRODUCT,
    "product.deleted": BillingEventCategory.PRODUCT,
    "price.created": BillingEventCategory.PRICE,
    "price.updated": BillingEventCategory.PRICE,
    "price.deleted": BillingEventCategory.PRICE,
    "customer.subscription.created": BillingEventCategory.SUBSCRIPTION,
    "customer.subscription.updated": BillingEventCategory.SUBSCRIPTION,
    "customer.subscription.deleted": BillingEventCategory.SUBSCRIPTION,
    "customer.updated": BillingEventCategory.CUSTOMER,
    "customer.deleted": BillingEventCategory.CUSTOMER,
}


def _object_pattern(key_fn: Callable[[str], str], object_id: str | None) -> str:
    # Without an object id every key of that kind goes
    return key_fn(object_id) if object_id else key_fn("*")


INVALIDATION_PATTERNS: dict[
    BillingEventCategory, Callable[[str | None], list[str]]
] = {
    BillingEventCategory.PRODUCT: lambda object_id: [
        PRODUCTS_KEY,
        _object_pattern(product_key, object_id),
    ],
    BillingEventCategory.PRICE: lambda object_id: [
        PRICES_KEY,
        _object_pattern(price_key, object_id),
    ],
    BillingEventCategory.SUBSCRIPTION: lambda object_id: [
        _object_pattern(subscription_key, object_id)
    ],
    BillingEventCategory.CUSTOMER: lambda object_id: [
        _object_pattern(customer_key, object_id)
    ],
}

_missing = set(BillingEventCategory) - set(INVALIDATION_PATTERNS)
if _missing:
    raise RuntimeError(
        f"Billing event categories without invalidation patterns: {sorted(_missing)}"
    )


def classify_event(event_type: str) -> BillingEventCategory | None:
    return EVENT_CATEGORIES.get(event_type)


def patterns_for_event(event_type: str, object_id: str | None = None) -> list[str]:
    """Cache key patterns made stale by an event; empty for other types."""
    category = classify_event(event_type)
    if category is None:
        return []
    return INVALIDATION_PATTERNS[category](object_id)


async def invalidate_on_event(
    session: AsyncSession,
    billing_cache: BillingCache,
    event_type: str,
    object_id: str | None = None,
) -> int:
    """Drop cached billing data affected by an event; returns rows removed."""
    patterns = patterns_for_event(event_type, object_id)
    if not patterns:
        logger.debug(
            "No cache invalidation for event type", extra={"event_type": event_type}
        )
        return 0

    removed = 0
    completed: list[str] = []
    for pattern in patterns:
        try:
            removed += await billing_cache.invalidate_billing_cache(session, pattern)
        except Exception:
            # Earlier patterns are already committed
            logger.warning(
                "Cache invalidation interrupted",
                extra={
                    "event_type": event_type,
                    "failed_pattern": pattern,
                    "completed_patterns": completed,
                    "removed": removed,
                },
            )
            raise
        completed.append(pattern)
    return removed
