# agrimarket/cart.py
"""
Ephemeral per-session shopping carts.

A cart maps product id to a quantity and never persists past the process.
Every mutation keeps each line inside ``(0, stock]`` where ``stock`` is the
ceiling last seen for that product. Mutations are plain synchronous calls;
there is no await between reading and writing a cart, so requests served by
one event loop cannot interleave inside an operation.
"""
import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class CartStatus(str, Enum):
    OK = "OK"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    LIMITED_STOCK = "LIMITED_STOCK"


@dataclass(frozen=True)
class ProductSnapshot:
    """Product fields captured when the line was added; not live-linked."""

    id: str
    seller_id: str
    name: str
    price: float
    stock: float
    image: Optional[str] = None
    ai_hint: Optional[str] = None

    @classmethod
    def from_product(cls, product) -> "ProductSnapshot":
        return cls(
            id=product.id,
            seller_id=product.uid,
            name=product.name,
            price=product.price,
            stock=product.stock,
            image=product.image,
            ai_hint=product.ai_hint,
        )


@dataclass
class CartLine:
    product: ProductSnapshot
    quantity: float

    @property
    def subtotal(self) -> float:
        return self.product.price * self.quantity


@dataclass(frozen=True)
class CartResult:
    status: CartStatus
    line: Optional[CartLine] = None

    @property
    def ok(self) -> bool:
        return self.status is CartStatus.OK


class Cart:
    def __init__(self):
        self._lines: Dict[str, CartLine] = {}

    @property
    def lines(self) -> List[CartLine]:
        return list(self._lines.values())

    def get(self, product_id: str) -> Optional[CartLine]:
        return self._lines.get(product_id)

    def __len__(self):
        return len(self._lines)

    def __iter__(self):
        return iter(self.lines)

    def __contains__(self, product_id):
        return product_id in self._lines

    @property
    def item_count(self) -> float:
        return sum(line.quantity for line in self._lines.values())

    @property
    def cart_total(self) -> float:
        return sum(line.subtotal for line in self._lines.values())

    def add_to_cart(self, product, quantity: float = 1) -> CartResult:
        """Merge ``quantity`` of ``product`` into the cart.

        ``product`` is anything with the catalog fields (an ORM ``Product``
        or a ``ProductSnapshot``). Returns ``OUT_OF_STOCK`` without touching
        the cart when nothing is left, ``LIMITED_STOCK`` when the line had to
        be clamped to the available stock, ``OK`` otherwise.
        """
        # quantities carry one decimal place; keep float noise out of sums
        quantity = round(quantity, 1)
        if quantity <= 0:
            raise ValueError("quantity must be positive")

        if product.stock <= 0:
            logger.info("Out of stock: %s", product.id)
            return CartResult(CartStatus.OUT_OF_STOCK, self._lines.get(product.id))

        existing = self._lines.get(product.id)
        if existing:
            # keep the add-time snapshot, only the ceiling follows the catalog
            snapshot = dataclasses.replace(existing.product, stock=product.stock)
            wanted = round(existing.quantity + quantity, 1)
        else:
            snapshot = product if isinstance(product, ProductSnapshot) else ProductSnapshot.from_product(product)
            wanted = quantity

        if wanted > snapshot.stock:
            line = CartLine(snapshot, snapshot.stock)
            self._lines[product.id] = line
            return CartResult(CartStatus.LIMITED_STOCK, line)

        line = CartLine(snapshot, wanted)
        self._lines[product.id] = line
        return CartResult(CartStatus.OK, line)

    def update_quantity(self, product_id: str, quantity: float, stock: float = None) -> Optional[CartResult]:
        """Set a line's quantity exactly; ``None`` when the product is not in the cart."""
        existing = self._lines.get(product_id)
        if existing is None:
            return None

        quantity = round(quantity, 1)
        if quantity <= 0:
            self.remove_from_cart(product_id)
            return CartResult(CartStatus.OK)

        snapshot = existing.product
        if stock is not None and stock != snapshot.stock:
            snapshot = dataclasses.replace(snapshot, stock=stock)

        if snapshot.stock <= 0:
            self.remove_from_cart(product_id)
            return CartResult(CartStatus.OUT_OF_STOCK)

        if quantity > snapshot.stock:
            line = CartLine(snapshot, snapshot.stock)
            self._lines[product_id] = line
            return CartResult(CartStatus.LIMITED_STOCK, line)

        line = CartLine(snapshot, quantity)
        self._lines[product_id] = line
        return CartResult(CartStatus.OK, line)

    def remove_from_cart(self, product_id: str) -> None:
        self._lines.pop(product_id, None)

    def clear_cart(self) -> None:
        self._lines.clear()


class CartStore:
    """One cart per buyer, held in process memory."""

    def __init__(self):
        self._carts: Dict[str, Cart] = {}

    def get(self, owner_id: str) -> Cart:
        cart = self._carts.get(owner_id)
        if cart is None:
            cart = self._carts[owner_id] = Cart()
        return cart

    def discard(self, owner_id: str) -> None:
        self._carts.pop(owner_id, None)
