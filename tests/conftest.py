"""
Pytest Configuration and Centralized Fixtures.

Provides reusable store fixtures for testing:
- Catalog entries for a small subscription app
- Local store backend seeded with that catalog
- Store gateway over the local store
- Coordinator factory
"""

import asyncio
import os
from collections.abc import Callable
from decimal import Decimal
from typing import Any

import pytest

# Set environment BEFORE importing purchase_helper modules
os.environ.setdefault("PURCHASE_HELPER_LOG_FORMAT", "console")
os.environ.setdefault("PURCHASE_HELPER_TRACING_ENABLED", "false")

from purchase_helper.models.domain import CatalogEntry, ProductType
from purchase_helper.services.local_store import LocalStoreBackend
from purchase_helper.services.purchase_coordinator import PurchaseCoordinator
from purchase_helper.services.store_gateway import StoreGateway

# ============================================================================
# Helpers
# ============================================================================


async def drain_loop(iterations: int = 20) -> None:
    """Let background tasks (the external update listener) run."""
    for _ in range(iterations):
        await asyncio.sleep(0)


@pytest.fixture
def drain() -> Callable[..., Any]:
    """Coroutine function that yields to the loop a few times."""
    return drain_loop


class AppProduct:
    """Product reference the way an app would declare one."""

    def __init__(self, product_id: str) -> None:
        self.product_id = product_id

    def get_id(self) -> str:
        return self.product_id


# ============================================================================
# Catalog Fixtures
# ============================================================================


@pytest.fixture
def pro_monthly() -> CatalogEntry:
    return CatalogEntry(
        id="pro_monthly",
        display_name="Pro Monthly",
        description="All features, billed monthly",
        display_price="$4.99",
        price=Decimal("4.99"),
        currency_code="USD",
        type=ProductType.AUTO_RENEWABLE,
    )


@pytest.fixture
def pro_yearly() -> CatalogEntry:
    return CatalogEntry(
        id="pro_yearly",
        display_name="Pro Yearly",
        description="All features, billed yearly",
        display_price="$39.99",
        price=Decimal("39.99"),
        currency_code="USD",
        type=ProductType.AUTO_RENEWABLE,
    )


@pytest.fixture
def coin_pack() -> CatalogEntry:
    return CatalogEntry(
        id="coins_100",
        display_name="100 Coins",
        description="A pouch of coins",
        display_price="$0.99",
        price=Decimal("0.99"),
        currency_code="USD",
        type=ProductType.CONSUMABLE,
    )


@pytest.fixture
def app_products() -> list[AppProduct]:
    """The products the app supports."""
    return [AppProduct("pro_monthly"), AppProduct("pro_yearly")]


# ============================================================================
# Store Fixtures
# ============================================================================


@pytest.fixture
def local_store(pro_monthly: CatalogEntry, pro_yearly: CatalogEntry) -> LocalStoreBackend:
    """Local store selling both subscriptions."""
    return LocalStoreBackend(catalog=[pro_monthly, pro_yearly])


@pytest.fixture
def gateway(local_store: LocalStoreBackend) -> StoreGateway:
    return StoreGateway(local_store, auto_finish_transactions=True)


@pytest.fixture
def make_coordinator(
    app_products: list[AppProduct], local_store: LocalStoreBackend
) -> Callable[..., PurchaseCoordinator]:
    """Factory for coordinators over the local store.

    Use as `async with make_coordinator() as coordinator:` so the update
    listener is stopped when the test ends.
    """

    def _create(**kwargs: Any) -> PurchaseCoordinator:
        kwargs.setdefault("backend", local_store)
        return PurchaseCoordinator(app_products, **kwargs)

    return _create
