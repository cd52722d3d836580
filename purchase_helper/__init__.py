"""
Purchase Helper - coordinates store products, owned purchases and purchasing.
"""

from purchase_helper.models.domain import (
    CatalogEntry,
    CoordinatorSnapshot,
    OperationStatus,
    ProductRepresentable,
    ProductType,
    PurchaseAttempt,
    PurchaseOption,
)
from purchase_helper.models.storekit import PurchaseResolution
from purchase_helper.services.local_store import LocalStoreBackend
from purchase_helper.services.purchase_coordinator import PurchaseCoordinator
from purchase_helper.services.store_backend import StoreBackend
from purchase_helper.services.store_gateway import StoreGateway

__all__ = [
    "CatalogEntry",
    "CoordinatorSnapshot",
    "LocalStoreBackend",
    "OperationStatus",
    "ProductRepresentable",
    "ProductType",
    "PurchaseAttempt",
    "PurchaseCoordinator",
    "PurchaseOption",
    "PurchaseResolution",
    "StoreBackend",
    "StoreGateway",
]
