"""
StoreKit platform models - Immutable dataclasses for store transactions.

NO DICTIONARIES - All data uses strongly typed models.

Signed transactions use the App Store JWS (JSON Web Signature) payload
format; decoding here extracts the fields, it does not verify the chain.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

import jwt


class PurchaseResolution(str, Enum):
    """How a purchase attempt ended at the store."""

    VERIFIED = "verified"
    UNVERIFIED = "unverified"
    USER_CANCELLED = "user_cancelled"
    PENDING = "pending"
    UNKNOWN = "unknown"
    FAILED = "failed"


def _parse_timestamp(ms: object) -> datetime | None:
    if ms is None:
        return None
    return datetime.fromtimestamp(int(ms) / 1000, tz=UTC)  # type: ignore[call-overload]


@dataclass(frozen=True)
class StoreTransaction:
    """A store transaction granting (or having granted) a product."""

    transaction_id: str
    original_transaction_id: str
    product_id: str
    purchase_date: datetime
    type: str = "Non-Consumable"  # "Auto-Renewable Subscription", "Consumable", ...
    environment: str = "Production"  # "Production" or "Sandbox"
    quantity: int = 1
    app_account_token: str | None = None
    expires_date: datetime | None = None  # For subscriptions
    revocation_date: datetime | None = None  # If refunded or revoked

    def __post_init__(self) -> None:
        """Validate transaction fields."""
        if not self.transaction_id:
            raise ValueError("transaction_id cannot be empty")
        if not self.product_id:
            raise ValueError("product_id cannot be empty")
        if self.quantity < 1:
            raise ValueError(f"quantity must be positive: {self.quantity}")

    def is_revoked(self) -> bool:
        """Check if the store has revoked this transaction."""
        return self.revocation_date is not None

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check if a subscription transaction has lapsed."""
        if self.expires_date is None:
            return False
        return self.expires_date <= (now or datetime.now(UTC))

    def grants_entitlement(self, now: datetime | None = None) -> bool:
        """Check if the transaction still entitles the user to the product."""
        return not self.is_revoked() and not self.is_expired(now)

    @classmethod
    def from_jws(cls, signed_data: str) -> "StoreTransaction":
        """
        Decode a JWS signed transaction into a StoreTransaction.

        The payload is read without signature verification; callers get the
        verification verdict from the store alongside the transaction.

        Raises:
            ValueError: If the payload cannot be decoded or lacks required fields
        """
        try:
            data: dict[str, object] = jwt.decode(
                signed_data,
                options={"verify_signature": False},
            )
        except jwt.exceptions.DecodeError as e:
            raise ValueError(f"Invalid JWS data: {e}") from e

        try:
            transaction_id = str(data["transactionId"])
            product_id = str(data["productId"])
        except KeyError as e:
            raise ValueError(f"JWS payload missing field: {e.args[0]}") from e

        purchase_date = _parse_timestamp(data.get("purchaseDate")) or datetime.now(UTC)
        token = data.get("appAccountToken")
        return cls(
            transaction_id=transaction_id,
            original_transaction_id=str(data.get("originalTransactionId", transaction_id)),
            product_id=product_id,
            purchase_date=purchase_date,
            type=str(data.get("type", "Non-Consumable")),
            environment=str(data.get("environment", "Production")),
            quantity=int(data.get("quantity", 1)),  # type: ignore[call-overload]
            app_account_token=str(token) if token else None,
            expires_date=_parse_timestamp(data.get("expiresDate")),
            revocation_date=_parse_timestamp(data.get("revocationDate")),
        )


@dataclass(frozen=True)
class VerificationResult:
    """A transaction together with the store's verification verdict."""

    transaction: StoreTransaction
    verified: bool
    jws_representation: str | None = None
    verification_error: str | None = None

    @classmethod
    def verified_transaction(
        cls, transaction: StoreTransaction, jws_representation: str | None = None
    ) -> "VerificationResult":
        return cls(transaction=transaction, verified=True, jws_representation=jws_representation)

    @classmethod
    def unverified_transaction(
        cls, transaction: StoreTransaction, error: str
    ) -> "VerificationResult":
        return cls(transaction=transaction, verified=False, verification_error=error)


@dataclass(frozen=True)
class PurchaseResult:
    """Raw result of a store purchase call.

    status values:
    - "success": verification holds the transaction
    - "user_cancelled": the user dismissed the payment sheet
    - "pending": waiting on approval (Ask to Buy, SCA)
    anything else is an outcome this library does not recognise.
    """

    status: str
    verification: VerificationResult | None = None

    def __post_init__(self) -> None:
        """Validate purchase result consistency."""
        if self.status == "success" and self.verification is None:
            raise ValueError("A successful purchase result requires a verification")

    @classmethod
    def success(cls, verification: VerificationResult) -> "PurchaseResult":
        return cls(status="success", verification=verification)

    @classmethod
    def user_cancelled(cls) -> "PurchaseResult":
        return cls(status="user_cancelled")

    @classmethod
    def pending(cls) -> "PurchaseResult":
        return cls(status="pending")
