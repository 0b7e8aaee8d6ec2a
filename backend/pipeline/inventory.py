"""
Inventory Ledger
================
Per-product stock counts with atomic decrement-if-sufficient.

The catalog side (name, price, images) is read-only from the pipeline's
point of view; only stock is mutated here. Both interfaces are usually
served by the same backing store.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

import structlog
from pydantic import BaseModel, Field

from pipeline.errors import InsufficientStockError, NotFoundError, ValidationFailure

logger = structlog.get_logger().bind(component="inventory")


class Product(BaseModel):
    """Catalog view of a product as the order pipeline needs it."""
    product_id: str
    name: str
    price: int = Field(ge=0)
    images: List[str] = Field(default_factory=list)
    stock: int = Field(default=0, ge=0)

    @property
    def primary_image(self) -> Optional[str]:
        return self.images[0] if self.images else None


# =============================================================================
# INTERFACES
# =============================================================================

class IProductCatalog(ABC):
    """Read-only product lookup"""

    @abstractmethod
    async def get_product(self, product_id: str) -> Optional[Product]:
        pass


class IInventoryLedger(ABC):
    """Stock counts. Implementations must make `decrement` atomic."""

    @abstractmethod
    async def get_stock(self, product_id: str) -> Optional[int]:
        pass

    @abstractmethod
    async def check_available(self, product_id: str, quantity: int) -> bool:
        pass

    @abstractmethod
    async def decrement(self, product_id: str, quantity: int) -> int:
        """Take `quantity` units. Returns the new count.

        Raises InsufficientStockError if the count would go negative and
        NotFoundError if the product does not exist.
        """
        pass

    @abstractmethod
    async def increment(self, product_id: str, quantity: int) -> Optional[int]:
        """Return `quantity` units. Returns None if the product is gone."""
        pass


def ensure_positive(quantity: int) -> None:
    if quantity <= 0:
        raise ValidationFailure("Quantity must be positive", {"quantity": quantity})


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryProductStore(IProductCatalog, IInventoryLedger):
    """Lock-guarded product table. One lock covers every product."""

    def __init__(self, products: Optional[Iterable[Product]] = None):
        self._products: Dict[str, Product] = {}
        self._lock = asyncio.Lock()
        for product in products or []:
            self._products[product.product_id] = product

    def add_product(self, product: Product) -> None:
        self._products[product.product_id] = product

    def remove_product(self, product_id: str) -> None:
        self._products.pop(product_id, None)

    async def get_product(self, product_id: str) -> Optional[Product]:
        async with self._lock:
            product = self._products.get(product_id)
            return product.model_copy() if product else None

    async def get_stock(self, product_id: str) -> Optional[int]:
        async with self._lock:
            product = self._products.get(product_id)
            return product.stock if product else None

    async def check_available(self, product_id: str, quantity: int) -> bool:
        ensure_positive(quantity)
        async with self._lock:
            product = self._products.get(product_id)
            return product is not None and product.stock >= quantity

    async def decrement(self, product_id: str, quantity: int) -> int:
        ensure_positive(quantity)
        async with self._lock:
            product = self._products.get(product_id)
            if product is None:
                raise NotFoundError("Product", product_id)
            if product.stock < quantity:
                raise InsufficientStockError(product_id, quantity, product.stock, product.name)
            product.stock -= quantity
            logger.debug("stock_decremented", product_id=product_id, quantity=quantity, stock=product.stock)
            return product.stock

    async def increment(self, product_id: str, quantity: int) -> Optional[int]:
        ensure_positive(quantity)
        async with self._lock:
            product = self._products.get(product_id)
            if product is None:
                return None
            product.stock += quantity
            logger.debug("stock_incremented", product_id=product_id, quantity=quantity, stock=product.stock)
            return product.stock
