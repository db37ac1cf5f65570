from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from sqlmodel import Session

from .models import Product


@dataclass(frozen=True)
class CatalogProduct:
    id: int
    name: str
    price: Decimal
    is_available: bool
    display_in_kitchen: bool


class Catalog(Protocol):
    def get_product(self, product_id: int) -> CatalogProduct | None: ...


class SqlCatalog:
    """Catalog lookups against the local product table."""

    def __init__(self, engine):
        self.engine = engine

    def get_product(self, product_id: int) -> CatalogProduct | None:
        with Session(self.engine) as session:
            product = session.get(Product, product_id)
            if product is None:
                return None
            return CatalogProduct(
                id=product.id,
                name=product.name,
                price=product.price,
                is_available=product.is_available,
                display_in_kitchen=product.display_in_kitchen,
            )
