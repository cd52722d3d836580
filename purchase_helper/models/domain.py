"""
Domain Models - Coordinator-facing models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Protocol, runtime_checkable
from uuid import UUID

from purchase_helper.models.storekit import PurchaseResolution


@runtime_checkable
class ProductRepresentable(Protocol):
    """Anything the app uses to name one of its products."""

    def get_id(self) -> str:
        """Identifier for a product."""
        ...


def product_id_of(product: "ProductRepresentable | str") -> str:
    """Resolve a product reference to its identifier."""
    if isinstance(product, str):
        return product
    return product.get_id()


class ProductType(str, Enum):
    """Store product types."""

    CONSUMABLE = "consumable"
    NON_CONSUMABLE = "non_consumable"
    AUTO_RENEWABLE = "auto_renewable"
    NON_RENEWABLE = "non_renewable"


@dataclass(frozen=True)
class CatalogEntry:
    """A product as described by the store."""

    id: str
    display_name: str
    description: str
    display_price: str  # Already formatted by the store, e.g. "$4.99"
    price: Decimal
    currency_code: str
    type: ProductType = ProductType.NON_CONSUMABLE

    def __post_init__(self) -> None:
        """Validate catalog entry fields."""
        if not self.id:
            raise ValueError("Catalog entry id cannot be empty")
        if self.price < 0:
            raise ValueError(f"Price cannot be negative: {self.price}")
        if len(self.currency_code) != 3:
            raise ValueError(f"Invalid currency code: {self.currency_code}")


@dataclass(frozen=True)
class PurchaseOption:
    """A single option passed along with a purchase request."""

    name: str
    value: str | int | bool

    @classmethod
    def app_account_token(cls, token: UUID) -> "PurchaseOption":
        """Link the transaction to an account in the app's own backend."""
        return cls("app_account_token", str(token))

    @classmethod
    def quantity(cls, quantity: int) -> "PurchaseOption":
        if quantity < 1:
            raise ValueError(f"Quantity must be positive: {quantity}")
        return cls("quantity", quantity)

    @classmethod
    def simulates_ask_to_buy(cls, enabled: bool = True) -> "PurchaseOption":
        """Sandbox only: hold the purchase for parental approval."""
        return cls("simulates_ask_to_buy_in_sandbox", enabled)

    @classmethod
    def promotional_offer(cls, offer_id: str, signature: str) -> "PurchaseOption":
        if not offer_id:
            raise ValueError("offer_id cannot be empty")
        return cls("promotional_offer", f"{offer_id}:{signature}")


class OperationStatus(str, Enum):
    """How a foreground coordinator operation ended."""

    COMPLETED = "completed"
    BUSY = "busy"  # Another operation was in flight, nothing happened
    FAILED = "failed"  # The store call failed, dependent state unchanged
    REJECTED = "rejected"  # A precondition did not hold, store not contacted


@dataclass(frozen=True)
class PurchaseAttempt:
    """Outcome of PurchaseCoordinator.purchase()."""

    status: OperationStatus
    product_id: str | None = None  # Set only when an entitlement was granted
    resolution: PurchaseResolution | None = None

    @property
    def granted(self) -> bool:
        return self.product_id is not None


@dataclass(frozen=True)
class CoordinatorSnapshot:
    """Immutable view of coordinator state at a point in time."""

    products_fetched: bool = False
    purchases_synced: bool = False
    loading_in_progress: bool = False
    catalog: Mapping[str, CatalogEntry] = field(
        default_factory=lambda: MappingProxyType({})
    )
    entitlements: frozenset[str] = frozenset()

    @property
    def purchases_ready(self) -> bool:
        """Products fetched and purchases synced, so every query is answerable."""
        return self.products_fetched and self.purchases_synced
