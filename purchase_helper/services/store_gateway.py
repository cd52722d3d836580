"""
Store Gateway - the single point of contact with a store backend.

Translates the backend's success, cancellation, pending and error variants
into uniform typed results. Nothing raised by the backend escapes this module.
"""

from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field

from structlog import get_logger

from purchase_helper.exceptions import FetchFailedError, PurchaseFailedError, SyncFailedError
from purchase_helper.models.domain import CatalogEntry, PurchaseOption
from purchase_helper.models.storekit import (
    PurchaseResolution,
    PurchaseResult,
    StoreTransaction,
    VerificationResult,
)
from purchase_helper.observability.metrics import metrics
from purchase_helper.observability.tracing import set_span_error, trace_operation
from purchase_helper.services.store_backend import StoreBackend

logger = get_logger(__name__)


@dataclass(frozen=True)
class FetchProductsResult:
    """Result of a catalog lookup."""

    products: list[CatalogEntry] = field(default_factory=list)
    error: FetchFailedError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class SyncEntitlementsResult:
    """Result of enumerating current entitlements."""

    product_ids: list[str] = field(default_factory=list)
    error: SyncFailedError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class PurchaseOutcome:
    """Result of a purchase attempt.

    product_id is set only for a verified, successful purchase.
    """

    resolution: PurchaseResolution
    product_id: str | None = None
    error: PurchaseFailedError | None = None


class StoreGateway:
    """
    Adapter between the purchase coordinator and a store backend.

    Stateless apart from its configuration; safe to call concurrently.
    """

    def __init__(self, backend: StoreBackend, auto_finish_transactions: bool = True) -> None:
        """
        Initialize the gateway.

        Args:
            backend: Platform store implementation
            auto_finish_transactions: Finish verified transactions so the store
                stops redelivering them. Leave on unless a server of your own
                verifies and finishes transactions.
        """
        self.backend = backend
        self.auto_finish_transactions = auto_finish_transactions

    async def list_fetchable_products(self, product_ids: Iterable[str]) -> FetchProductsResult:
        """
        Fetch catalog entries for the given identifiers.

        Never retries; a failure is returned, not raised.
        """
        ids = list(dict.fromkeys(product_ids))
        if not ids:
            logger.warning("fetch_products_no_identifiers")
            return FetchProductsResult(error=FetchFailedError("no product identifiers given"))

        with trace_operation("store.products", product_count=len(ids)) as span:
            try:
                products = await self.backend.products(ids)
            except Exception as exc:
                set_span_error(span, exc)
                logger.error(
                    "fetch_products_failed",
                    product_ids=ids,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                metrics.record_gateway_call("products", success=False)
                metrics.record_error(type(exc).__name__, "fetch_products")
                return FetchProductsResult(error=FetchFailedError(exc))

            span.set_attribute("fetched_count", len(products))

        metrics.record_gateway_call("products", success=True)
        logger.info(
            "products_fetched",
            product_ids=[product.id for product in products],
        )
        return FetchProductsResult(products=list(products))

    async def current_entitlements(self) -> SyncEntitlementsResult:
        """
        Enumerate the product identifiers the user currently owns.

        Consumes the backend's sequence to completion. Unverified, revoked and
        expired transactions are skipped. An empty result is valid.
        """
        product_ids: dict[str, None] = {}

        with trace_operation("store.current_entitlements") as span:
            try:
                async for result in self.backend.current_entitlements():
                    transaction = result.transaction
                    if not result.verified:
                        logger.warning(
                            "entitlement_unverified",
                            transaction_id=transaction.transaction_id,
                            product_id=transaction.product_id,
                            error=result.verification_error,
                        )
                        continue
                    if not transaction.grants_entitlement():
                        logger.info(
                            "entitlement_inactive",
                            transaction_id=transaction.transaction_id,
                            product_id=transaction.product_id,
                            revoked=transaction.is_revoked(),
                        )
                        continue
                    await self._finish_if_configured(transaction)
                    product_ids[transaction.product_id] = None
            except Exception as exc:
                set_span_error(span, exc)
                logger.error(
                    "sync_purchases_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    seen_before_failure=len(product_ids),
                )
                metrics.record_gateway_call("current_entitlements", success=False)
                metrics.record_error(type(exc).__name__, "sync_purchases")
                return SyncEntitlementsResult(error=SyncFailedError(exc))

            span.set_attribute("entitlement_count", len(product_ids))

        metrics.record_gateway_call("current_entitlements", success=True)
        logger.info("purchases_synced", purchased_product_ids=list(product_ids))
        return SyncEntitlementsResult(product_ids=list(product_ids))

    async def initiate_purchase(
        self,
        product: CatalogEntry,
        options: frozenset[PurchaseOption] = frozenset(),
    ) -> PurchaseOutcome:
        """
        Run a purchase for a catalog entry.

        Cancellation, pending approval, unverified transactions, unknown
        results and backend errors all come back without a product_id.
        """
        with trace_operation(
            "store.purchase", product_id=product.id, option_count=len(options)
        ) as span:
            try:
                result = await self.backend.purchase(product, frozenset(options))
            except Exception as exc:
                set_span_error(span, exc)
                logger.error(
                    "purchase_failed",
                    product_id=product.id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                metrics.record_gateway_call("purchase", success=False)
                metrics.record_error(type(exc).__name__, "purchase")
                metrics.record_purchase_outcome(PurchaseResolution.FAILED.value)
                return PurchaseOutcome(
                    resolution=PurchaseResolution.FAILED,
                    error=PurchaseFailedError(exc),
                )

            outcome = await self._resolve_purchase(product, result)
            span.set_attribute("resolution", outcome.resolution.value)

        metrics.record_gateway_call("purchase", success=True)
        metrics.record_purchase_outcome(outcome.resolution.value)
        return outcome

    async def _resolve_purchase(
        self, product: CatalogEntry, result: PurchaseResult
    ) -> PurchaseOutcome:
        if result.status == "success" and result.verification is not None:
            verification = result.verification
            transaction = verification.transaction
            if not verification.verified:
                logger.warning(
                    "purchase_transaction_unverified",
                    product_id=product.id,
                    transaction_id=transaction.transaction_id,
                    error=verification.verification_error,
                )
                return PurchaseOutcome(resolution=PurchaseResolution.UNVERIFIED)

            logger.info(
                "purchase_transaction_verified",
                product_id=transaction.product_id,
                transaction_id=transaction.transaction_id,
            )
            await self._finish_if_configured(transaction)
            return PurchaseOutcome(
                resolution=PurchaseResolution.VERIFIED,
                product_id=transaction.product_id,
            )

        if result.status == "user_cancelled":
            logger.info("purchase_cancelled_by_user", product_id=product.id)
            return PurchaseOutcome(resolution=PurchaseResolution.USER_CANCELLED)

        if result.status == "pending":
            logger.info("purchase_pending", product_id=product.id)
            return PurchaseOutcome(resolution=PurchaseResolution.PENDING)

        logger.warning("purchase_result_unknown", product_id=product.id, status=result.status)
        return PurchaseOutcome(resolution=PurchaseResolution.UNKNOWN)

    async def subscribe_to_external_transaction_updates(self) -> AsyncIterator[str]:
        """
        Yield the product id of every verified transaction update.

        Runs for as long as the backend keeps delivering. A backend failure
        is logged and ends the stream.
        """
        try:
            async for result in self.backend.transaction_updates():
                transaction = result.transaction
                if not result.verified:
                    logger.warning(
                        "transaction_update_unverified",
                        transaction_id=transaction.transaction_id,
                        product_id=transaction.product_id,
                        error=result.verification_error,
                    )
                    continue

                logger.info(
                    "transaction_updated_outside_app",
                    transaction_id=transaction.transaction_id,
                    product_id=transaction.product_id,
                )
                await self._finish_if_configured(transaction)
                yield transaction.product_id
        except Exception as exc:
            logger.error(
                "transaction_updates_stream_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            metrics.record_error(type(exc).__name__, "transaction_updates")

    async def _finish_if_configured(self, transaction: StoreTransaction) -> None:
        if not self.auto_finish_transactions:
            return
        try:
            await self.backend.finish(transaction)
        except Exception as exc:
            # The entitlement stands; the store will redeliver the transaction.
            logger.warning(
                "transaction_finish_failed",
                transaction_id=transaction.transaction_id,
                error=str(exc),
            )
            metrics.record_error(type(exc).__name__, "finish")
            return
        metrics.record_transaction_finished()
