"""
Cache helpers for responses from the external billing provider.
"""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from api.v1.infra.cache.service import TTLCache

BILLING_CATEGORY = "billing"
BILLING_TTL_S = 3600

PRODUCTS_KEY = "billing:products"
PRICES_KEY = "billing:prices"


def product_key(product_id: str) -> str:
    return f"billing:product:{product_id}"


def price_key(price_id: str) -> str:
    return f"billing:price:{price_id}"


def subscription_key(subscription_id: str) -> str:
    return f"billing:subscription:{subscription_id}"


def customer_key(customer_id: str) -> str:
    return f"billing:customer:{customer_id}"


class BillingCache:
    def __init__(self, cache: TTLCache):
        self.cache = cache

    async def cache_billing_data(
        self,
        session: AsyncSession,
        key: str,
        data: Any,
        ttl_s: int = BILLING_TTL_S,
    ) -> None:
        await self.cache.set(session, key, data, BILLING_CATEGORY, ttl_s)

    async def get_cached_billing_data(
        self, session: AsyncSession, key: str
    ) -> Any | None:
        return await self.cache.get(session, key, BILLING_CATEGORY)

    async def invalidate_billing_cache(
        self, session: AsyncSession, pattern: str = "*"
    ) -> int:
        return await self.cache.invalidate_pattern(session, BILLING_CATEGORY, pattern)
