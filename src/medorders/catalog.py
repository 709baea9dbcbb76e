"""Product catalog owned by laboratory accounts."""

import logging
from typing import Any

from .errors import InsufficientStockError, PermissionDeniedError, ProductNotFoundError
from .models import Page, Product, Role, StepResult, StepStatus, User, _utc_now, paginate
from .store import Database

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("name", "description", "price", "available_quantity", "image_url")


def _check_owner(product: Product, actor: User) -> None:
    if actor.role != Role.ADMIN and product.owner_id != actor.id:
        raise PermissionDeniedError(f"product {product.id} belongs to another laboratory")


def apply_quantity_change(products: dict[str, dict[str, Any]], product_id: str, delta: int) -> StepResult:
    """
    Apply a stock increment to a raw product collection.

    Used inside an open transaction, so the caller decides when it is persisted.
    Never raises: a missing product or a count dropping below zero is reported
    as a degraded step.
    """
    doc = products.get(product_id)
    if doc is None:
        logger.warning("Stock change %+d skipped: product %s not found", delta, product_id)
        return StepResult("stock_decrement", StepStatus.DEGRADED, "product not found", product_id)

    doc["available_quantity"] = doc["available_quantity"] + delta
    doc["updated_at"] = _utc_now()
    if doc["available_quantity"] < 0:
        logger.warning(
            "Stock for product %s dropped below zero (%d)", product_id, doc["available_quantity"]
        )
        return StepResult(
            "stock_decrement",
            StepStatus.DEGRADED,
            f"available quantity is now {doc['available_quantity']}",
            product_id,
        )
    return StepResult("stock_decrement", StepStatus.SUCCESS, ref=product_id)


class ProductCatalog:
    def __init__(self, db: Database):
        self.db = db

    def create_product(
        self,
        owner: User,
        name: str,
        description: str,
        price: float,
        available_quantity: int,
        image_url: str | None = None,
    ) -> Product:
        if owner.role != Role.LABORATORY:
            raise PermissionDeniedError("only laboratories can list products")
        product = Product.create(
            owner_id=owner.id,
            name=name,
            description=description,
            price=price,
            available_quantity=available_quantity,
            image_url=image_url,
        )
        with self.db.transaction() as data:
            data["products"][product.id] = product.to_dict()
        logger.info("Laboratory %s listed product %s", owner.id, product.id)
        return product

    def get_product(self, product_id: str) -> Product:
        """
        Get a product by ID.

        Raises:
            ProductNotFoundError: If the product doesn't exist.
        """
        doc = self.db.collection("products").get(product_id)
        if doc is None:
            raise ProductNotFoundError(product_id)
        return Product.from_dict(doc)

    def list_products(
        self,
        search: str | None = None,
        min_price: float | None = None,
        max_price: float | None = None,
        owner_id: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page:
        """List products newest first, matching search against name and description."""
        products = [Product.from_dict(d) for d in self.db.collection("products").values()]

        if search and search.strip():
            needle = search.strip().lower()
            products = [
                p for p in products
                if needle in p.name.lower() or needle in p.description.lower()
            ]
        if min_price is not None:
            products = [p for p in products if p.price >= min_price]
        if max_price is not None:
            products = [p for p in products if p.price <= max_price]
        if owner_id:
            products = [p for p in products if p.owner_id == owner_id]

        products.sort(key=lambda p: p.created_at, reverse=True)
        return paginate(products, page, limit)

    def update_product(self, product_id: str, actor: User, **fields: Any) -> Product:
        with self.db.transaction() as data:
            doc = data["products"].get(product_id)
            if doc is None:
                raise ProductNotFoundError(product_id)
            product = Product.from_dict(doc)
            _check_owner(product, actor)
            for key in EDITABLE_FIELDS:
                if key in fields and fields[key] is not None:
                    setattr(product, key, fields[key])
            product.updated_at = _utc_now()
            data["products"][product_id] = product.to_dict()
        return product

    def delete_product(self, product_id: str, actor: User) -> Product:
        with self.db.transaction() as data:
            doc = data["products"].get(product_id)
            if doc is None:
                raise ProductNotFoundError(product_id)
            product = Product.from_dict(doc)
            _check_owner(product, actor)
            del data["products"][product_id]
        logger.info("Deleted product %s", product_id)
        return product

    def check_availability(self, product_id: str, quantity: int) -> Product:
        """
        Return the product if it has at least `quantity` units.

        Raises:
            ProductNotFoundError: If the product doesn't exist.
            InsufficientStockError: If stock is too low.
        """
        product = self.get_product(product_id)
        if product.available_quantity < quantity:
            raise InsufficientStockError(product.name, product.available_quantity, quantity)
        return product

    def adjust_quantity(self, product_id: str, delta: int) -> StepResult:
        with self.db.transaction() as data:
            return apply_quantity_change(data["products"], product_id, delta)
