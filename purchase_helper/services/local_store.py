"""
Local Store Backend - in-memory purchase store for development and tests.

Keeps a catalog, an owned-transaction ledger and a queue of transaction
updates. Purchase results can be scripted so every store outcome can be
exercised without a device or a sandbox account.
"""

import asyncio
import itertools
import secrets
from collections import deque
from collections.abc import AsyncIterator, Iterable, Sequence
from datetime import UTC, datetime

import jwt
from structlog import get_logger

from purchase_helper.exceptions import StoreBackendError
from purchase_helper.models.domain import CatalogEntry, ProductType, PurchaseOption
from purchase_helper.models.storekit import PurchaseResult, StoreTransaction, VerificationResult

logger = get_logger(__name__)

_TYPE_NAMES = {
    ProductType.CONSUMABLE: "Consumable",
    ProductType.NON_CONSUMABLE: "Non-Consumable",
    ProductType.AUTO_RENEWABLE: "Auto-Renewable Subscription",
    ProductType.NON_RENEWABLE: "Non-Renewing Subscription",
}


class LocalStoreBackend:
    """
    In-memory StoreBackend.

    Purchases succeed with a verified transaction unless a result has been
    queued with queue_purchase_result(). Consumables are never listed as
    current entitlements.
    """

    def __init__(
        self,
        catalog: Iterable[CatalogEntry] = (),
        environment: str = "Sandbox",
        latency: float = 0.0,
    ) -> None:
        """
        Initialize the local store.

        Args:
            catalog: Products the store sells
            environment: Environment stamped on issued transactions
            latency: Seconds every store call waits before answering
        """
        self.catalog: dict[str, CatalogEntry] = {entry.id: entry for entry in catalog}
        self.environment = environment
        self.latency = latency

        # Failure injection
        self.products_error: Exception | None = None
        self.entitlements_error: Exception | None = None

        self.finished_transaction_ids: list[str] = []
        self.calls: list[str] = []

        self._ledger: dict[str, StoreTransaction] = {}  # transaction_id -> transaction
        self._purchase_results: deque[PurchaseResult | Exception] = deque()
        self._updates: asyncio.Queue[VerificationResult] = asyncio.Queue()
        self._transaction_ids = itertools.count(2_000_000_000)
        self._signing_key = secrets.token_hex(32)

    # ========================================================================
    # Store setup
    # ========================================================================

    def add_product(self, entry: CatalogEntry) -> None:
        self.catalog[entry.id] = entry

    def grant(self, product_id: str, expires_date: datetime | None = None) -> StoreTransaction:
        """Record that the user already owns a product."""
        transaction = self._new_transaction(product_id, expires_date=expires_date)
        self._ledger[transaction.transaction_id] = transaction
        return transaction

    def revoke(self, product_id: str) -> int:
        """Refund every transaction for a product. Returns how many were revoked."""
        revoked = 0
        for transaction_id, transaction in list(self._ledger.items()):
            if transaction.product_id == product_id and not transaction.is_revoked():
                self._ledger[transaction_id] = StoreTransaction(
                    transaction_id=transaction.transaction_id,
                    original_transaction_id=transaction.original_transaction_id,
                    product_id=transaction.product_id,
                    purchase_date=transaction.purchase_date,
                    type=transaction.type,
                    environment=transaction.environment,
                    quantity=transaction.quantity,
                    app_account_token=transaction.app_account_token,
                    expires_date=transaction.expires_date,
                    revocation_date=datetime.now(UTC),
                )
                revoked += 1
        logger.info("local_store_product_revoked", product_id=product_id, count=revoked)
        return revoked

    def queue_purchase_result(self, result: PurchaseResult | Exception) -> None:
        """Script the outcome of the next purchase() call."""
        self._purchase_results.append(result)

    def push_external_transaction(
        self, product_id: str, verified: bool = True
    ) -> StoreTransaction:
        """
        Simulate a transaction made outside the app (renewal, another device).

        Verified transactions are added to the ledger as well as delivered on
        transaction_updates().
        """
        transaction = self._new_transaction(product_id)
        if verified:
            self._ledger[transaction.transaction_id] = transaction
            result = VerificationResult.verified_transaction(transaction, self.sign(transaction))
        else:
            result = VerificationResult.unverified_transaction(
                transaction, "signature does not match"
            )
        self._updates.put_nowait(result)
        logger.info(
            "local_store_external_transaction",
            product_id=product_id,
            transaction_id=transaction.transaction_id,
            verified=verified,
        )
        return transaction

    def sign(self, transaction: StoreTransaction) -> str:
        """Encode a transaction as a JWS payload in App Store field names."""
        payload: dict[str, object] = {
            "transactionId": transaction.transaction_id,
            "originalTransactionId": transaction.original_transaction_id,
            "productId": transaction.product_id,
            "purchaseDate": int(transaction.purchase_date.timestamp() * 1000),
            "type": transaction.type,
            "environment": transaction.environment,
            "quantity": transaction.quantity,
        }
        if transaction.app_account_token:
            payload["appAccountToken"] = transaction.app_account_token
        if transaction.expires_date:
            payload["expiresDate"] = int(transaction.expires_date.timestamp() * 1000)
        return jwt.encode(payload, self._signing_key, algorithm="HS256")

    @property
    def owned_product_ids(self) -> list[str]:
        return [
            transaction.product_id
            for transaction in self._ledger.values()
            if transaction.grants_entitlement()
        ]

    # ========================================================================
    # StoreBackend
    # ========================================================================

    async def products(self, product_ids: Sequence[str]) -> list[CatalogEntry]:
        self.calls.append("products")
        await self._wait()
        if self.products_error is not None:
            raise self.products_error
        return [self.catalog[product_id] for product_id in product_ids if product_id in self.catalog]

    async def current_entitlements(self) -> AsyncIterator[VerificationResult]:
        self.calls.append("current_entitlements")
        await self._wait()
        if self.entitlements_error is not None:
            raise self.entitlements_error
        for transaction in list(self._ledger.values()):
            if self.entitlements_error is not None:
                raise self.entitlements_error
            yield VerificationResult.verified_transaction(transaction, self.sign(transaction))

    async def purchase(
        self, product: CatalogEntry, options: frozenset[PurchaseOption]
    ) -> PurchaseResult:
        self.calls.append("purchase")
        await self._wait()

        if self._purchase_results:
            scripted = self._purchase_results.popleft()
            if isinstance(scripted, Exception):
                raise scripted
            if scripted.verification is not None and scripted.verification.verified:
                self._record(scripted.verification.transaction)
            return scripted

        if product.id not in self.catalog:
            raise StoreBackendError(f"Unknown product: {product.id}")

        option_values = {option.name: option.value for option in options}
        if option_values.get("simulates_ask_to_buy_in_sandbox"):
            return PurchaseResult.pending()

        quantity = option_values.get("quantity", 1)
        token = option_values.get("app_account_token")
        transaction = self._new_transaction(
            product.id,
            quantity=int(quantity),
            app_account_token=str(token) if token else None,
        )
        self._record(transaction)
        return PurchaseResult.success(
            VerificationResult.verified_transaction(transaction, self.sign(transaction))
        )

    async def transaction_updates(self) -> AsyncIterator[VerificationResult]:
        self.calls.append("transaction_updates")
        while True:
            yield await self._updates.get()

    async def finish(self, transaction: StoreTransaction) -> None:
        self.finished_transaction_ids.append(transaction.transaction_id)

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _wait(self) -> None:
        # Always yields to the loop so callers observe a real suspension point.
        await asyncio.sleep(self.latency)

    def _record(self, transaction: StoreTransaction) -> None:
        entry = self.catalog.get(transaction.product_id)
        if entry is not None and entry.type is ProductType.CONSUMABLE:
            return
        self._ledger[transaction.transaction_id] = transaction

    def _new_transaction(
        self,
        product_id: str,
        quantity: int = 1,
        app_account_token: str | None = None,
        expires_date: datetime | None = None,
    ) -> StoreTransaction:
        transaction_id = str(next(self._transaction_ids))
        entry = self.catalog.get(product_id)
        product_type = entry.type if entry is not None else ProductType.NON_CONSUMABLE
        return StoreTransaction(
            transaction_id=transaction_id,
            original_transaction_id=transaction_id,
            product_id=product_id,
            purchase_date=datetime.now(UTC),
            type=_TYPE_NAMES[product_type],
            environment=self.environment,
            quantity=quantity,
            app_account_token=app_account_token,
            expires_date=expires_date,
        )
