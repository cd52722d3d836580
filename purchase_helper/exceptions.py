"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Gateway errors are returned inside result objects rather than raised across
the gateway boundary; only ConfigurationError escapes to callers.
"""


class PurchaseHelperError(Exception):
    """Base exception for all purchase helper errors."""

    pass


class ConfigurationError(PurchaseHelperError):
    """Raised when configuration is missing or invalid."""

    pass


class StoreBackendError(PurchaseHelperError):
    """Raised by a store backend when the platform store call fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Store backend error: {message}")


class GatewayError(PurchaseHelperError):
    """Base for failures captured by the store gateway."""

    operation = "gateway"

    def __init__(self, cause: BaseException | str) -> None:
        self.cause = cause
        super().__init__(f"{self.operation} failed: {cause}")


class FetchFailedError(GatewayError):
    """Product catalog lookup failed."""

    operation = "fetch_products"


class SyncFailedError(GatewayError):
    """Enumerating current entitlements failed before completion."""

    operation = "sync_purchases"


class PurchaseFailedError(GatewayError):
    """The store raised while a purchase was in flight."""

    operation = "purchase"
