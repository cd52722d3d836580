"""
Store Backend Protocol - Platform-agnostic interface to a purchase store.

NO DICTIONARIES - All data uses strongly typed models.
"""

from collections.abc import AsyncIterator, Sequence
from typing import Protocol

from purchase_helper.models.domain import CatalogEntry, PurchaseOption
from purchase_helper.models.storekit import PurchaseResult, StoreTransaction, VerificationResult


class StoreBackend(Protocol):
    """
    Store backend protocol.

    Any platform store (StoreKit bridge, local emulator, test double) must
    implement this interface. Backends may raise on failure; the gateway
    turns every failure into a typed result.
    """

    async def products(self, product_ids: Sequence[str]) -> list[CatalogEntry]:
        """
        Look up products in the store catalog.

        Args:
            product_ids: Identifiers to look up

        Returns:
            Catalog entries for the identifiers the store knows about

        Raises:
            StoreBackendError: If the catalog lookup fails
        """
        ...

    def current_entitlements(self) -> AsyncIterator[VerificationResult]:
        """
        Enumerate the transactions that currently entitle the user.

        Each call re-queries the store. The sequence is finite.
        """
        ...

    async def purchase(
        self, product: CatalogEntry, options: frozenset[PurchaseOption]
    ) -> PurchaseResult:
        """
        Present the store's purchase flow for a product.

        Returns:
            Raw purchase result (success with verification, cancelled, pending, ...)

        Raises:
            StoreBackendError: If the store could not run the purchase
        """
        ...

    def transaction_updates(self) -> AsyncIterator[VerificationResult]:
        """
        Stream transactions created or changed outside an in-app purchase call.

        The stream never ends while the store is alive.
        """
        ...

    async def finish(self, transaction: StoreTransaction) -> None:
        """Tell the store the transaction has been delivered."""
        ...
