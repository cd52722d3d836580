"""
Purchase Coordinator - the purchase state machine.

Owns the observable purchase state, runs at most one foreground store
operation at a time and merges transaction updates that happen outside the
app into the same state.

All methods must be called from the event loop that owns the coordinator.
State is written only by _apply(), which never suspends, so every batch of
changes is atomic with respect to other coroutines on that loop.
"""

import asyncio
import contextlib
import dataclasses
import functools
import weakref
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from types import MappingProxyType
from typing import Any, TypeVar

from structlog import get_logger

from purchase_helper.config import Settings, settings as default_settings
from purchase_helper.models.domain import (
    CatalogEntry,
    CoordinatorSnapshot,
    OperationStatus,
    ProductRepresentable,
    PurchaseAttempt,
    PurchaseOption,
    product_id_of,
)
from purchase_helper.observability.metrics import metrics, track_operation
from purchase_helper.services.store_backend import StoreBackend
from purchase_helper.services.store_gateway import StoreGateway

logger = get_logger(__name__)

T = TypeVar("T", OperationStatus, PurchaseAttempt)

StateListener = Callable[[CoordinatorSnapshot], None]


def _catalog_of(products: Iterable[CatalogEntry]) -> Mapping[str, CatalogEntry]:
    return MappingProxyType({product.id: product for product in products})


async def _listen_for_external_updates(
    coordinator_ref: "weakref.ref[PurchaseCoordinator]",
    updates: AsyncIterator[str],
) -> None:
    """Feed out-of-app transaction updates into a coordinator while it lives."""
    async for product_id in updates:
        coordinator = coordinator_ref()
        if coordinator is None:
            logger.debug("external_update_dropped", product_id=product_id)
            return
        coordinator._merge_external_entitlement(product_id)
        # Only a weak reference may survive the next suspension.
        del coordinator
    logger.info("external_updates_stream_ended")


def _log_operation_failure(operation: str, task: "asyncio.Task[Any]") -> None:
    """Retrieve a foreground task's exception, even when its caller was cancelled."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "operation_failed",
            operation=operation,
            error=str(exc),
            error_type=type(exc).__name__,
        )


class PurchaseCoordinator:
    """
    Coordinates product fetching, purchase syncing and purchasing.

    Foreground operations (fetch_products, sync_purchases, fetch_and_sync,
    purchase) are single-flight: while one is running, the others return
    OperationStatus.BUSY without touching state. Once started they cannot be
    cancelled; cancelling the awaiting caller leaves the operation running to
    completion. No timeout is imposed on store calls.
    """

    def __init__(
        self,
        products: Iterable[ProductRepresentable | str],
        backend: StoreBackend | None = None,
        *,
        gateway: StoreGateway | None = None,
        auto_finish_transactions: bool | None = None,
        grant_external_entitlements: bool | None = None,
        config: Settings | None = None,
    ) -> None:
        """
        Initialize the coordinator.

        Args:
            products: Every product the app supports, in display order
            backend: Store backend to talk to (ignored when gateway is given)
            gateway: Pre-built store gateway
            auto_finish_transactions: Finish verified transactions with the store.
                Defaults to settings; leave on unless your own server verifies them.
            grant_external_entitlements: Mark products purchased when a verified
                transaction arrives from outside the app. Defaults to settings.
            config: Settings to read the two store flags above from. Logging,
                metrics and tracing are process-wide and follow the global
                settings (see purchase_helper.observability).
        """
        config = config or default_settings

        if auto_finish_transactions is None:
            auto_finish_transactions = config.auto_finish_transactions
        if grant_external_entitlements is None:
            grant_external_entitlements = config.grant_external_entitlements

        if gateway is None:
            if backend is None:
                raise ValueError("A store backend or a store gateway is required")
            gateway = StoreGateway(backend, auto_finish_transactions=auto_finish_transactions)

        self._all_product_ids: tuple[str, ...] = tuple(
            dict.fromkeys(product_id_of(product) for product in products)
        )
        if not self._all_product_ids:
            raise ValueError("At least one product is required")

        self._gateway = gateway
        self._grant_external_entitlements = grant_external_entitlements
        self._state = CoordinatorSnapshot()
        self._listeners: list[StateListener] = []
        self._updates_task: asyncio.Task[None] | None = None
        self._closed = False

        logger.info(
            "purchase_coordinator_initialized",
            product_ids=list(self._all_product_ids),
            auto_finish_transactions=gateway.auto_finish_transactions,
            grant_external_entitlements=grant_external_entitlements,
        )

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Started by start(), async with, or the first foreground call.
            pass
        else:
            self.start()

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self) -> None:
        """Start listening for transaction updates from outside the app.

        Runs once per coordinator; later calls do nothing.
        """
        if self._updates_task is not None or self._closed:
            return

        updates = self._gateway.subscribe_to_external_transaction_updates()
        task = asyncio.get_running_loop().create_task(
            _listen_for_external_updates(weakref.ref(self), updates),
            name="purchase-helper-external-updates",
        )
        self._updates_task = task
        # Stop listening when the coordinator is garbage collected.
        weakref.finalize(self, task.cancel)
        logger.debug("external_updates_listener_started")

    async def aclose(self) -> None:
        """Stop the update listener. Updates delivered afterwards are dropped."""
        self._closed = True
        task, self._updates_task = self._updates_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.debug("external_updates_listener_stopped")

    async def __aenter__(self) -> "PurchaseCoordinator":
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ========================================================================
    # Observable state
    # ========================================================================

    @property
    def products_fetched(self) -> bool:
        """True once a product fetch has succeeded."""
        return self._state.products_fetched

    @property
    def purchases_synced(self) -> bool:
        """True once purchases have been synced with the store."""
        return self._state.purchases_synced

    @property
    def loading_in_progress(self) -> bool:
        """True while a foreground operation is running."""
        return self._state.loading_in_progress

    @property
    def purchases_ready(self) -> bool:
        """True when products are fetched and purchases synced."""
        return self._state.purchases_ready

    @property
    def purchased_product_ids(self) -> frozenset[str]:
        return self._state.entitlements

    @property
    def products(self) -> list[CatalogEntry]:
        """Fetched catalog entries, in the order the app listed its products."""
        catalog = self._state.catalog
        return [catalog[pid] for pid in self._all_product_ids if pid in catalog]

    @property
    def product_ids(self) -> tuple[str, ...]:
        return self._all_product_ids

    def snapshot(self) -> CoordinatorSnapshot:
        return self._state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """
        Call listener with a snapshot after every state change.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return unsubscribe

    # ========================================================================
    # Queries
    # ========================================================================

    def is_purchased(self, product: ProductRepresentable | str) -> bool:
        """
        Determine if a product has been purchased.

        Returns False until purchases have been synced; an early False is not
        a confirmed non-purchase.
        """
        product_id = product_id_of(product)
        if not self._state.purchases_synced:
            logger.warning(
                "purchases_not_synced",
                product_id=product_id,
                hint="call sync_purchases() or fetch_and_sync() first",
            )
            return False
        return product_id in self._state.entitlements

    def get_product(self, product: ProductRepresentable | str) -> CatalogEntry | None:
        """Get the store's catalog entry for a product, once products are fetched."""
        product_id = product_id_of(product)
        if not self._state.products_fetched:
            logger.warning(
                "products_not_fetched",
                product_id=product_id,
                hint="call fetch_products() or fetch_and_sync() first",
            )
            return None
        return self._state.catalog.get(product_id)

    # ========================================================================
    # Foreground operations
    # ========================================================================

    async def fetch_products(self) -> OperationStatus:
        """Fetch every configured product from the store."""
        if not self._begin("fetch_products"):
            return OperationStatus.BUSY
        return await self._run_exclusive("fetch_products", self._fetch_products)

    async def sync_purchases(self) -> OperationStatus:
        """Replace the owned products with what the store currently reports."""
        if not self._begin("sync_purchases"):
            return OperationStatus.BUSY
        return await self._run_exclusive("sync_purchases", self._sync_purchases)

    async def fetch_and_sync(self) -> OperationStatus:
        """
        Fetch products (unless already fetched) and sync purchases.

        Both store calls run concurrently; state is updated once, after both
        have finished. Call this when a purchase screen appears.
        """
        if not self._begin("fetch_and_sync"):
            return OperationStatus.BUSY
        return await self._run_exclusive("fetch_and_sync", self._fetch_and_sync)

    async def purchase(
        self,
        product: ProductRepresentable | str,
        options: Iterable[PurchaseOption] = (),
    ) -> PurchaseAttempt:
        """
        Purchase a product, with optional store purchase options.

        The product must be in the fetched catalog; otherwise the store is
        not contacted and the attempt is REJECTED.
        """
        product_id = product_id_of(product)
        if not self._begin("purchase", product_id=product_id):
            return PurchaseAttempt(status=OperationStatus.BUSY)

        entry: CatalogEntry | None = None
        if not self._state.products_fetched:
            logger.warning("purchase_rejected_products_not_fetched", product_id=product_id)
        else:
            entry = self._state.catalog.get(product_id)
            if entry is None:
                logger.warning("purchase_rejected_product_unknown", product_id=product_id)

        if entry is None:
            self._apply(loading_in_progress=False)
            metrics.record_operation("purchase", OperationStatus.REJECTED.value, 0.0)
            return PurchaseAttempt(status=OperationStatus.REJECTED)

        purchase_options = frozenset(options)
        return await self._run_exclusive(
            "purchase", lambda: self._purchase(entry, purchase_options)
        )

    # ========================================================================
    # Operation bodies
    # ========================================================================

    async def _fetch_products(self) -> OperationStatus:
        result = await self._gateway.list_fetchable_products(self._all_product_ids)
        if not result.ok:
            self._apply(loading_in_progress=False)
            return OperationStatus.FAILED

        self._warn_missing_products(result.products)
        self._apply(
            catalog=_catalog_of(result.products),
            products_fetched=True,
            loading_in_progress=False,
        )
        return OperationStatus.COMPLETED

    async def _sync_purchases(self) -> OperationStatus:
        result = await self._gateway.current_entitlements()
        if not result.ok:
            self._apply(loading_in_progress=False)
            return OperationStatus.FAILED

        self._apply(
            entitlements=frozenset(result.product_ids),
            purchases_synced=True,
            loading_in_progress=False,
        )
        return OperationStatus.COMPLETED

    async def _fetch_and_sync(self) -> OperationStatus:
        will_fetch_products = not self._state.products_fetched
        logger.debug("fetch_and_sync_plan", will_fetch_products=will_fetch_products)

        calls: list[Awaitable[Any]] = [self._gateway.current_entitlements()]
        if will_fetch_products:
            calls.append(self._gateway.list_fetchable_products(self._all_product_ids))

        # Wait for both halves even if one of them raises.
        results = await asyncio.gather(*calls, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result

        synced = results[0]
        fetched = results[1] if will_fetch_products else None

        changes: dict[str, Any] = {"loading_in_progress": False}
        failed = False
        if fetched is not None:
            if fetched.ok:
                self._warn_missing_products(fetched.products)
                changes.update(catalog=_catalog_of(fetched.products), products_fetched=True)
            else:
                failed = True
        if synced.ok:
            changes.update(entitlements=frozenset(synced.product_ids), purchases_synced=True)
        else:
            failed = True

        self._apply(**changes)
        return OperationStatus.FAILED if failed else OperationStatus.COMPLETED

    async def _purchase(
        self, entry: CatalogEntry, options: frozenset[PurchaseOption]
    ) -> PurchaseAttempt:
        outcome = await self._gateway.initiate_purchase(entry, options)

        # Read entitlements only now so updates merged meanwhile are kept.
        entitlements = self._state.entitlements
        if outcome.product_id is not None and outcome.product_id not in entitlements:
            self._apply(
                entitlements=entitlements | {outcome.product_id},
                loading_in_progress=False,
            )
        else:
            self._apply(loading_in_progress=False)

        status = OperationStatus.FAILED if outcome.error is not None else OperationStatus.COMPLETED
        logger.info(
            "purchase_finished",
            product_id=entry.id,
            resolution=outcome.resolution.value,
            granted=outcome.product_id is not None,
        )
        return PurchaseAttempt(
            status=status,
            product_id=outcome.product_id,
            resolution=outcome.resolution,
        )

    # ========================================================================
    # Single-flight machinery
    # ========================================================================

    def _begin(self, operation: str, **log_fields: Any) -> bool:
        """Enter Loading, or report busy. Must run before the caller's first await."""
        if self._state.loading_in_progress:
            logger.info("operation_ignored_loading_in_progress", operation=operation, **log_fields)
            metrics.record_operation(operation, OperationStatus.BUSY.value, 0.0)
            return False

        self.start()
        logger.info("operation_started", operation=operation, **log_fields)
        self._apply(loading_in_progress=True)
        return True

    async def _run_exclusive(self, operation: str, body: Callable[[], Awaitable[T]]) -> T:
        task = asyncio.get_running_loop().create_task(
            self._run_guarded(operation, body),
            name=f"purchase-helper-{operation}",
        )
        task.add_done_callback(functools.partial(_log_operation_failure, operation))
        # Cancelling the caller must not abort the store call or strand Loading.
        return await asyncio.shield(task)

    async def _run_guarded(self, operation: str, body: Callable[[], Awaitable[T]]) -> T:
        with track_operation(operation) as tracker:
            try:
                result = await body()
            finally:
                if self._state.loading_in_progress:
                    self._apply(loading_in_progress=False)
            status = result.status if isinstance(result, PurchaseAttempt) else result
            tracker.set_status(status.value)

        logger.info("operation_finished", operation=operation, status=status.value)
        return result

    # ========================================================================
    # State mutation
    # ========================================================================

    def _merge_external_entitlement(self, product_id: str) -> None:
        if not self._grant_external_entitlements:
            logger.info("external_entitlement_not_granted", product_id=product_id)
            metrics.record_external_update(granted=False)
            return

        entitlements = self._state.entitlements
        if product_id in entitlements:
            metrics.record_external_update(granted=False)
            return

        metrics.record_external_update(granted=True)
        logger.info("external_entitlement_granted", product_id=product_id)
        self._apply(entitlements=entitlements | {product_id})

    def _apply(self, **changes: Any) -> None:
        """The only writer of coordinator state. Notifies listeners afterwards."""
        current = self._state
        # products_fetched and purchases_synced never go back to False.
        changes["products_fetched"] = current.products_fetched or changes.get(
            "products_fetched", False
        )
        changes["purchases_synced"] = current.purchases_synced or changes.get(
            "purchases_synced", False
        )
        self._state = dataclasses.replace(current, **changes)

        state = self._state
        metrics.set_state(
            loading=state.loading_in_progress,
            catalog_size=len(state.catalog),
            entitlements=len(state.entitlements),
        )
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("state_listener_failed")

    def _warn_missing_products(self, products: Iterable[CatalogEntry]) -> None:
        fetched_ids = {product.id for product in products}
        missing = [pid for pid in self._all_product_ids if pid not in fetched_ids]
        if missing:
            logger.warning("products_missing_from_store", product_ids=missing)
