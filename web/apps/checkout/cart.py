"""Cart aggregation.

``CartService`` merges line items into a deduplicated cart per owner
(session or account id). Lines are kept in an ordered mapping keyed by
``(product_id, size, color)``; adding an existing key increments its
quantity. The service never resolves live prices: that happens at
checkout time.
"""

import logging
from typing import Dict, Optional

from .domain import Cart, CartLine, CartStorePort, InvalidQuantity, LineKey

logger = logging.getLogger(__name__)


def _lines_by_key(cart: Cart) -> Dict[LineKey, CartLine]:
    # dicts keep insertion order, which is the display order
    return {line.key: line for line in cart.lines}


class CartService:
    """CRUD over carts stored behind a ``CartStorePort``."""

    def __init__(self, store: CartStorePort):
        self.store = store

    def add_item(
        self,
        owner_id: str,
        product_id: str,
        size: Optional[str],
        color: Optional[str],
        quantity: int,
        price_snapshot_cents: Optional[int] = None,
    ) -> Cart:
        if quantity <= 0:
            raise InvalidQuantity(quantity=quantity)

        cart = self.store.load(owner_id)
        lines = _lines_by_key(cart)
        key = (product_id, size, color)
        line = lines.get(key)
        if line is None:
            lines[key] = CartLine(
                product_id=product_id,
                size=size,
                color=color,
                quantity=quantity,
                price_snapshot_cents=price_snapshot_cents,
            )
        else:
            line.quantity += quantity
            if price_snapshot_cents is not None:
                line.price_snapshot_cents = price_snapshot_cents

        cart.lines = list(lines.values())
        self.store.save(cart)
        logger.info("cart item added", extra={"owner_id": owner_id, "product_id": product_id, "quantity": quantity})
        return cart

    def update_quantity(self, owner_id: str, key: LineKey, quantity: int) -> Cart:
        """Set a line's quantity; 0 removes the line, negatives are rejected."""
        if quantity < 0:
            raise InvalidQuantity(quantity=quantity)
        if quantity == 0:
            return self.remove_item(owner_id, key)

        cart = self.store.load(owner_id)
        lines = _lines_by_key(cart)
        if key not in lines:
            raise InvalidQuantity("LINE_NOT_FOUND", key=key)
        lines[key].quantity = quantity
        cart.lines = list(lines.values())
        self.store.save(cart)
        return cart

    def remove_item(self, owner_id: str, key: LineKey) -> Cart:
        cart = self.store.load(owner_id)
        lines = _lines_by_key(cart)
        if lines.pop(key, None) is not None:
            cart.lines = list(lines.values())
            self.store.save(cart)
        return cart

    def snapshot(self, owner_id: str) -> Cart:
        return self.store.load(owner_id)

    def clear(self, owner_id: str) -> None:
        self.store.save(Cart(owner_id=owner_id, lines=[]))

    def merge(self, from_owner: str, into_owner: str) -> Cart:
        """Fold one cart into another (session cart into account cart on login).

        Quantities add up per key; the source cart is emptied.
        """
        if from_owner == into_owner:
            return self.store.load(into_owner)

        source = self.store.load(from_owner)
        target = self.store.load(into_owner)
        lines = _lines_by_key(target)
        for line in source.lines:
            existing = lines.get(line.key)
            if existing is None:
                lines[line.key] = CartLine(
                    product_id=line.product_id,
                    size=line.size,
                    color=line.color,
                    quantity=line.quantity,
                    price_snapshot_cents=line.price_snapshot_cents,
                )
            else:
                existing.quantity += line.quantity

        target.lines = list(lines.values())
        self.store.save(target)
        self.clear(from_owner)
        logger.info("carts merged", extra={"from_owner": from_owner, "into_owner": into_owner})
        return target
