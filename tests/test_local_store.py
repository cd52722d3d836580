"""
Tests for LocalStoreBackend.
"""

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from purchase_helper.exceptions import StoreBackendError
from purchase_helper.models.domain import PurchaseOption
from purchase_helper.models.storekit import PurchaseResult, StoreTransaction
from purchase_helper.services.local_store import LocalStoreBackend


async def _collect(iterator):
    return [item async for item in iterator]


class TestProducts:
    """Tests for catalog lookup."""

    @pytest.mark.asyncio
    async def test_returns_known_products_only(self, local_store, pro_monthly):
        products = await local_store.products(["pro_monthly", "lifetime_unlock"])
        assert products == [pro_monthly]

    @pytest.mark.asyncio
    async def test_injected_failure(self, local_store):
        local_store.products_error = StoreBackendError("offline")
        with pytest.raises(StoreBackendError):
            await local_store.products(["pro_monthly"])


class TestEntitlements:
    """Tests for the owned-transaction ledger."""

    @pytest.mark.asyncio
    async def test_granted_products_are_listed(self, local_store):
        transaction = local_store.grant("pro_monthly")

        results = await _collect(local_store.current_entitlements())

        assert [r.transaction for r in results] == [transaction]
        assert results[0].verified is True
        decoded = StoreTransaction.from_jws(results[0].jws_representation)
        assert decoded.transaction_id == transaction.transaction_id
        assert decoded.product_id == "pro_monthly"
        assert decoded.environment == "Sandbox"

    @pytest.mark.asyncio
    async def test_injected_failure_with_empty_ledger(self, local_store):
        local_store.entitlements_error = StoreBackendError("offline")

        with pytest.raises(StoreBackendError):
            await _collect(local_store.current_entitlements())

    @pytest.mark.asyncio
    async def test_revoke_marks_transactions(self, local_store):
        local_store.grant("pro_monthly")

        assert local_store.revoke("pro_monthly") == 1
        assert local_store.owned_product_ids == []

    def test_expired_grant_not_owned(self, local_store):
        local_store.grant("pro_monthly", expires_date=datetime.now(UTC) - timedelta(days=1))
        assert local_store.owned_product_ids == []


class TestPurchase:
    """Tests for purchase()."""

    @pytest.mark.asyncio
    async def test_default_purchase_succeeds(self, local_store, pro_yearly):
        token = uuid4()

        result = await local_store.purchase(
            pro_yearly, frozenset({PurchaseOption.app_account_token(token)})
        )

        assert result.status == "success"
        assert result.verification.transaction.app_account_token == str(token)
        assert local_store.owned_product_ids == ["pro_yearly"]

    @pytest.mark.asyncio
    async def test_consumables_are_not_owned(self, local_store, coin_pack):
        local_store.add_product(coin_pack)

        result = await local_store.purchase(coin_pack, frozenset({PurchaseOption.quantity(3)}))

        assert result.verification.transaction.quantity == 3
        assert local_store.owned_product_ids == []

    @pytest.mark.asyncio
    async def test_ask_to_buy_is_pending(self, local_store, pro_yearly):
        result = await local_store.purchase(
            pro_yearly, frozenset({PurchaseOption.simulates_ask_to_buy()})
        )
        assert result.status == "pending"

    @pytest.mark.asyncio
    async def test_scripted_results_in_order(self, local_store, pro_yearly):
        local_store.queue_purchase_result(PurchaseResult.user_cancelled())
        local_store.queue_purchase_result(StoreBackendError("declined"))

        assert (await local_store.purchase(pro_yearly, frozenset())).status == "user_cancelled"
        with pytest.raises(StoreBackendError):
            await local_store.purchase(pro_yearly, frozenset())
        assert (await local_store.purchase(pro_yearly, frozenset())).status == "success"

    @pytest.mark.asyncio
    async def test_unknown_product_raises(self, local_store, coin_pack):
        with pytest.raises(StoreBackendError, match="Unknown product"):
            await local_store.purchase(coin_pack, frozenset())


class TestTransactionUpdates:
    """Tests for external transactions."""

    @pytest.mark.asyncio
    async def test_external_transaction_delivered_and_owned(self, local_store):
        transaction = local_store.push_external_transaction("pro_yearly")

        updates = local_store.transaction_updates()
        result = await updates.__anext__()
        await updates.aclose()

        assert result.transaction == transaction
        assert result.verified is True
        assert local_store.owned_product_ids == ["pro_yearly"]

    @pytest.mark.asyncio
    async def test_unverified_external_transaction_not_owned(self, local_store):
        local_store.push_external_transaction("pro_yearly", verified=False)

        updates = local_store.transaction_updates()
        result = await updates.__anext__()
        await updates.aclose()

        assert result.verified is False
        assert local_store.owned_product_ids == []

    @pytest.mark.asyncio
    async def test_finish_is_recorded(self):
        store = LocalStoreBackend()
        transaction = store.grant("pro_monthly")

        await store.finish(transaction)

        assert store.finished_transaction_ids == [transaction.transaction_id]
