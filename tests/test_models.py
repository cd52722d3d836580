"""
Tests for domain and StoreKit models.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import jwt
import pytest

from purchase_helper.models.domain import (
    CatalogEntry,
    CoordinatorSnapshot,
    OperationStatus,
    ProductRepresentable,
    PurchaseAttempt,
    PurchaseOption,
    product_id_of,
)
from purchase_helper.models.storekit import (
    PurchaseResolution,
    PurchaseResult,
    StoreTransaction,
    VerificationResult,
)


class TestCatalogEntry:
    """Tests for CatalogEntry validation."""

    def test_valid_entry(self, pro_monthly):
        assert pro_monthly.id == "pro_monthly"
        assert pro_monthly.price == Decimal("4.99")

    def test_empty_id_rejected(self):
        with pytest.raises(ValueError, match="id cannot be empty"):
            CatalogEntry(
                id="",
                display_name="Pro",
                description="",
                display_price="$1",
                price=Decimal("1"),
                currency_code="USD",
            )

    def test_negative_price_rejected(self):
        with pytest.raises(ValueError, match="Price cannot be negative"):
            CatalogEntry(
                id="pro",
                display_name="Pro",
                description="",
                display_price="-$1",
                price=Decimal("-1"),
                currency_code="USD",
            )

    def test_invalid_currency_rejected(self):
        with pytest.raises(ValueError, match="Invalid currency code"):
            CatalogEntry(
                id="pro",
                display_name="Pro",
                description="",
                display_price="$1",
                price=Decimal("1"),
                currency_code="DOLLARS",
            )


class TestProductReferences:
    """Tests for ProductRepresentable and product_id_of."""

    def test_string_is_its_own_id(self):
        assert product_id_of("pro_monthly") == "pro_monthly"

    def test_representable_uses_get_id(self, app_products):
        assert isinstance(app_products[0], ProductRepresentable)
        assert product_id_of(app_products[0]) == "pro_monthly"


class TestPurchaseOption:
    """Tests for PurchaseOption factories."""

    def test_app_account_token(self):
        token = uuid4()
        option = PurchaseOption.app_account_token(token)
        assert option == PurchaseOption("app_account_token", str(token))

    def test_quantity_must_be_positive(self):
        with pytest.raises(ValueError, match="Quantity must be positive"):
            PurchaseOption.quantity(0)

    def test_options_are_hashable(self):
        options = frozenset({PurchaseOption.quantity(2), PurchaseOption.quantity(2)})
        assert len(options) == 1

    def test_promotional_offer_requires_id(self):
        with pytest.raises(ValueError, match="offer_id"):
            PurchaseOption.promotional_offer("", "sig")


class TestCoordinatorSnapshot:
    """Tests for the derived readiness view."""

    @pytest.mark.parametrize(
        ("fetched", "synced", "ready"),
        [(False, False, False), (True, False, False), (False, True, False), (True, True, True)],
    )
    def test_purchases_ready(self, fetched, synced, ready):
        snapshot = CoordinatorSnapshot(products_fetched=fetched, purchases_synced=synced)
        assert snapshot.purchases_ready is ready

    def test_purchase_attempt_granted(self):
        assert PurchaseAttempt(OperationStatus.COMPLETED, "pro_monthly").granted is True
        assert PurchaseAttempt(OperationStatus.BUSY).granted is False


class TestStoreTransaction:
    """Tests for StoreTransaction."""

    def _transaction(self, **kwargs) -> StoreTransaction:
        defaults = {
            "transaction_id": "2000000001",
            "original_transaction_id": "2000000001",
            "product_id": "pro_monthly",
            "purchase_date": datetime.now(UTC),
        }
        defaults.update(kwargs)
        return StoreTransaction(**defaults)

    def test_empty_product_id_rejected(self):
        with pytest.raises(ValueError, match="product_id cannot be empty"):
            self._transaction(product_id="")

    def test_quantity_must_be_positive(self):
        with pytest.raises(ValueError, match="quantity must be positive"):
            self._transaction(quantity=0)

    def test_active_transaction_grants_entitlement(self):
        transaction = self._transaction(expires_date=datetime.now(UTC) + timedelta(days=1))
        assert transaction.grants_entitlement() is True

    def test_revoked_transaction(self):
        transaction = self._transaction(revocation_date=datetime.now(UTC))
        assert transaction.is_revoked() is True
        assert transaction.grants_entitlement() is False

    def test_expired_transaction(self):
        now = datetime.now(UTC)
        transaction = self._transaction(expires_date=now - timedelta(seconds=1))
        assert transaction.is_expired(now) is True
        assert transaction.grants_entitlement(now) is False

    def test_from_jws(self):
        purchase_ms = 1_735_689_600_000  # 2025-01-01T00:00:00Z
        signed = jwt.encode(
            {
                "transactionId": "2000000042",
                "originalTransactionId": "2000000001",
                "productId": "pro_yearly",
                "purchaseDate": purchase_ms,
                "expiresDate": purchase_ms + 365 * 86_400_000,
                "type": "Auto-Renewable Subscription",
                "environment": "Sandbox",
                "quantity": 1,
            },
            "a-local-signing-key-that-is-long-enough",
            algorithm="HS256",
        )

        transaction = StoreTransaction.from_jws(signed)

        assert transaction.transaction_id == "2000000042"
        assert transaction.original_transaction_id == "2000000001"
        assert transaction.product_id == "pro_yearly"
        assert transaction.purchase_date == datetime(2025, 1, 1, tzinfo=UTC)
        assert transaction.expires_date == datetime(2026, 1, 1, tzinfo=UTC)
        assert transaction.environment == "Sandbox"
        assert transaction.revocation_date is None

    def test_from_jws_rejects_garbage(self):
        with pytest.raises(ValueError, match="Invalid JWS data"):
            StoreTransaction.from_jws("not-a-jws")

    def test_from_jws_requires_product(self):
        signed = jwt.encode(
            {"transactionId": "1"}, "a-local-signing-key-that-is-long-enough", algorithm="HS256"
        )
        with pytest.raises(ValueError, match="missing field"):
            StoreTransaction.from_jws(signed)


class TestPurchaseResult:
    """Tests for PurchaseResult and VerificationResult."""

    def test_success_requires_verification(self):
        with pytest.raises(ValueError, match="requires a verification"):
            PurchaseResult(status="success")

    def test_factories(self):
        assert PurchaseResult.user_cancelled().status == "user_cancelled"
        assert PurchaseResult.pending().status == "pending"

    def test_unverified_carries_error(self):
        transaction = StoreTransaction(
            transaction_id="1",
            original_transaction_id="1",
            product_id="pro_monthly",
            purchase_date=datetime.now(UTC),
        )
        result = VerificationResult.unverified_transaction(transaction, "bad chain")
        assert result.verified is False
        assert result.verification_error == "bad chain"

    def test_resolution_values(self):
        assert PurchaseResolution("user_cancelled") is PurchaseResolution.USER_CANCELLED
