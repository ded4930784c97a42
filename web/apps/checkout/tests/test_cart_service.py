"""Cart aggregation: dedup by variant key, quantity rules, merge on login."""
import pytest

from apps.checkout.adapters import InMemoryCartStore
from apps.checkout.cart import CartService
from apps.checkout.domain import InvalidQuantity


@pytest.fixture
def carts():
    return CartService(InMemoryCartStore())


def test_adding_same_variant_increments_quantity(carts):
    carts.add_item("session:a", "tee", "M", "black", 1)
    cart = carts.add_item("session:a", "tee", "M", "black", 2)
    assert len(cart.lines) == 1
    assert cart.lines[0].quantity == 3


def test_different_variants_are_separate_lines_in_insertion_order(carts):
    carts.add_item("session:a", "tee", "M", "black", 1)
    carts.add_item("session:a", "cap", None, "red", 1)
    cart = carts.add_item("session:a", "tee", "L", "black", 1)
    assert [l.key for l in cart.lines] == [("tee", "M", "black"), ("cap", None, "red"), ("tee", "L", "black")]


def test_non_positive_quantity_is_rejected(carts):
    with pytest.raises(InvalidQuantity):
        carts.add_item("session:a", "tee", "M", "black", 0)
    with pytest.raises(InvalidQuantity):
        carts.update_quantity("session:a", ("tee", "M", "black"), -1)


def test_update_to_zero_removes_line(carts):
    carts.add_item("session:a", "tee", "M", "black", 2)
    cart = carts.update_quantity("session:a", ("tee", "M", "black"), 0)
    assert cart.is_empty


def test_update_unknown_line(carts):
    with pytest.raises(InvalidQuantity) as exc:
        carts.update_quantity("session:a", ("tee", "M", "black"), 2)
    assert str(exc.value) == "LINE_NOT_FOUND"


def test_remove_missing_line_is_noop(carts):
    carts.add_item("session:a", "tee", "M", "black", 1)
    cart = carts.remove_item("session:a", ("cap", None, "red"))
    assert len(cart.lines) == 1


def test_price_snapshot_is_kept_but_informational(carts):
    cart = carts.add_item("session:a", "tee", "M", "black", 1, price_snapshot_cents=1)
    assert cart.lines[0].price_snapshot_cents == 1


def test_merge_adds_quantities_and_empties_source(carts):
    carts.add_item("session:a", "tee", "M", "black", 1)
    carts.add_item("session:a", "cap", None, "red", 1)
    carts.add_item("user:1", "tee", "M", "black", 2)

    merged = carts.merge("session:a", "user:1")

    assert {l.key: l.quantity for l in merged.lines} == {("tee", "M", "black"): 3, ("cap", None, "red"): 1}
    assert carts.snapshot("session:a").is_empty


def test_carts_are_isolated_per_owner(carts):
    carts.add_item("session:a", "tee", "M", "black", 1)
    assert carts.snapshot("session:b").is_empty
