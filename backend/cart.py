# backend/cart.py

"""
Shopping cart aggregate.

Lines are keyed by (product_id, unit): the same product bought per sak and
per kg is two lines. Every operation returns a new Cart; nothing mutates in
place. Price and stock on a line are expressed in that line's unit and are
always computed server-side from the live product, never taken from the client.
"""

from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime, timezone
import logging

from pydantic import BaseModel, ConfigDict

from models import CartItem
from unit_conversion_engine import (
    CategoryUnitTable,
    UnitConversionEngine,
    UnsupportedUnitError,
    allowed_units,
    apply_precision,
    apply_product_attributes,
    normalize_unit,
)

logger = logging.getLogger(__name__)


class CartError(Exception):
    """Base class for cart/checkout rule violations"""
    error_code = "CART_ERROR"

    def __init__(self, message: str, product_id: Optional[str] = None):
        self.message = message
        self.product_id = product_id
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error_code": self.error_code, "message": self.message, "product_id": self.product_id}


class InsufficientStockError(CartError):
    error_code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: str, unit: str, requested: float, available: float):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Stok tidak mencukupi: diminta {requested:g} {unit}, tersedia {available:g} {unit}",
            product_id
        )


class ProductNotFoundError(CartError):
    error_code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: str):
        super().__init__(f"Produk '{product_id}' tidak ditemukan", product_id)


class PriceChangedError(CartError):
    error_code = "PRICE_CHANGED"

    def __init__(self, product_id: str, old_price: float, new_price: float):
        self.old_price = old_price
        self.new_price = new_price
        super().__init__(f"Harga produk berubah dari {old_price:g} menjadi {new_price:g}", product_id)


class EmptyCartError(CartError):
    error_code = "EMPTY_CART"

    def __init__(self):
        super().__init__("Keranjang belanja kosong")


# ==================== AGGREGATE ====================

LineKey = Tuple[str, str]


def line_key(item: CartItem) -> LineKey:
    return item.product_id, normalize_unit(item.unit)


class Cart(BaseModel):
    model_config = ConfigDict(frozen=True)
    items: Tuple[CartItem, ...] = ()

    def find(self, product_id: str, unit: str) -> Optional[CartItem]:
        key = (product_id, normalize_unit(unit))
        for item in self.items:
            if line_key(item) == key:
                return item
        return None

    def add_item(self, item: CartItem) -> "Cart":
        """
        Merge into an existing (product_id, unit) line or append a new one.
        The merged quantity must fit the stock carried by `item`, which is
        already expressed in the line's unit.
        """
        existing = self.find(item.product_id, item.unit)
        quantity = item.quantity + (existing.quantity if existing else 0)
        if quantity > item.stock:
            raise InsufficientStockError(item.product_id, item.unit, quantity, item.stock)

        merged = item.model_copy(update={"quantity": quantity})
        if existing is None:
            return Cart(items=self.items + (merged,))
        return Cart(items=tuple(merged if line_key(i) == line_key(item) else i for i in self.items))

    def remove_item(self, product_id: str, unit: str) -> "Cart":
        key = (product_id, normalize_unit(unit))
        return Cart(items=tuple(i for i in self.items if line_key(i) != key))

    def set_quantity(self, product_id: str, unit: str, quantity: float) -> "Cart":
        """quantity <= 0 removes the line; unknown lines leave the cart as is."""
        if quantity <= 0:
            return self.remove_item(product_id, unit)
        existing = self.find(product_id, unit)
        if existing is None:
            return self
        if quantity > existing.stock:
            raise InsufficientStockError(product_id, existing.unit, quantity, existing.stock)
        updated = existing.model_copy(update={"quantity": quantity})
        return Cart(items=tuple(updated if line_key(i) == line_key(existing) else i for i in self.items))

    def clear(self) -> "Cart":
        return Cart()

    def total_items(self) -> float:
        return sum(item.quantity for item in self.items)

    def total_price(self) -> float:
        return sum(item.price * item.quantity for item in self.items)


# ==================== PRICING SNAPSHOT ====================

def require_enabled_unit(table: CategoryUnitTable, product: Dict[str, Any], unit: str) -> str:
    """Normalized `unit`, if the product is sold in it or the admin enabled it."""
    selected = normalize_unit(unit)
    if selected == normalize_unit(product.get("unit")):
        return selected
    enabled = [u.unit for u in allowed_units(table, product.get("available_units"))]
    if selected not in enabled:
        raise UnsupportedUnitError(unit, table.category, enabled)
    return selected


async def snapshot_line(
    engine: UnitConversionEngine,
    product: Dict[str, Any],
    quantity: float,
    unit: str
) -> CartItem:
    """
    Build a cart line from the live product document, with price and stock
    converted into `unit`. Buying in the product's own unit never touches the
    conversion table.

    Raises:
        ConversionError: unit not convertible for this category/product
    """
    product_unit = normalize_unit(product.get("unit"))
    selected = normalize_unit(unit)
    price = float(product.get("price", 0))
    stock = float(product.get("stock", 0))

    if selected != product_unit:
        table = await engine.resolve_table(product["category"])
        table = apply_product_attributes(table, product.get("attributes"))
        require_enabled_unit(table, product, unit)
        price, _ = apply_precision(engine.price_for(table, 1, selected, product_unit, price), 2)
        stock, _ = apply_precision(engine.stock_available(table, stock, product_unit, selected), 4)

    images = product.get("images") or []
    return CartItem(
        product_id=product["id"],
        name=product["name"],
        slug=product.get("slug", ""),
        image=images[0] if images else "",
        category=product["category"],
        unit=selected,
        price=price,
        quantity=quantity,
        stock=max(stock, 0)
    )


class CartService:
    """Per-user cart persisted in the `carts` collection."""

    def __init__(self, db, engine: UnitConversionEngine):
        self.db = db
        self.engine = engine

    async def get_product(self, product_id: str) -> dict:
        product = await self.db.products.find_one({"id": product_id, "is_active": {"$ne": False}}, {"_id": 0})
        if not product:
            raise ProductNotFoundError(product_id)
        return product

    async def get_cart(self, user_id: str) -> Cart:
        doc = await self.db.carts.find_one({"user_id": user_id}, {"_id": 0})
        if not doc:
            return Cart()
        return Cart(items=tuple(CartItem(**item) for item in doc.get("items", [])))

    async def save(self, user_id: str, cart: Cart) -> Cart:
        await self.db.carts.update_one(
            {"user_id": user_id},
            {"$set": {
                "user_id": user_id,
                "items": [item.model_dump() for item in cart.items],
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }},
            upsert=True
        )
        return cart

    async def add_item(self, user_id: str, product_id: str, quantity: float, unit: str) -> Cart:
        product = await self.get_product(product_id)
        item = await snapshot_line(self.engine, product, quantity, unit)
        cart = (await self.get_cart(user_id)).add_item(item)
        logger.info(f"Cart {user_id}: added {quantity:g} {item.unit} of {product_id}")
        return await self.save(user_id, cart)

    async def set_quantity(self, user_id: str, product_id: str, unit: str, quantity: float) -> Cart:
        cart = await self.get_cart(user_id)
        if quantity > 0 and cart.find(product_id, unit) is not None:
            # Refresh stock before checking the new quantity
            product = await self.get_product(product_id)
            fresh = await snapshot_line(self.engine, product, quantity, unit)
            cart = cart.remove_item(product_id, unit).add_item(fresh)
        else:
            cart = cart.set_quantity(product_id, unit, quantity)
        return await self.save(user_id, cart)

    async def remove_item(self, user_id: str, product_id: str, unit: str) -> Cart:
        cart = (await self.get_cart(user_id)).remove_item(product_id, unit)
        return await self.save(user_id, cart)

    async def clear(self, user_id: str) -> Cart:
        return await self.save(user_id, Cart())


def cart_summary(cart: Cart) -> Dict[str, Any]:
    items: List[dict] = [item.model_dump() for item in cart.items]
    return {
        "items": items,
        "total_items": cart.total_items(),
        "total_price": cart.total_price(),
    }
