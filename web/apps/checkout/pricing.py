"""Pricing rules applied at checkout time.

Totals, the free-shipping promotion and the installment plan. All
functions are pure and work on integer cents.
"""

from typing import Iterable, List

from .config import CheckoutConfig
from .domain import InstallmentPlan, OrderLine, PaymentMethod, ShippingOption


def subtotal_cents(lines: Iterable[OrderLine]) -> int:
    return sum(line.unit_price_cents * line.quantity for line in lines)


def apply_free_shipping(options: List[ShippingOption], subtotal: int, config: CheckoutConfig) -> List[ShippingOption]:
    """Zero the cost of every option when the subtotal reaches the threshold."""
    threshold = config.free_shipping_threshold_cents
    if threshold <= 0 or subtotal < threshold:
        return list(options)
    return [ShippingOption(method=o.method, cost_cents=0, eta_days=o.eta_days) for o in options]


def pick_shipping(options: List[ShippingOption], requested: str | None, default: str) -> ShippingOption | None:
    """Select the requested option, else the store default, else the cheapest.

    Returns None when ``requested`` is given but not offered, or when there
    are no options at all.
    """
    by_method = {o.method: o for o in options}
    if requested:
        return by_method.get(requested)
    if default in by_method:
        return by_method[default]
    if not options:
        return None
    return min(options, key=lambda o: (o.cost_cents, o.eta_days))


def installment_plan(
    total_cents: int,
    requested: int,
    method: PaymentMethod,
    config: CheckoutConfig,
) -> InstallmentPlan:
    """Split ``total_cents`` into equal installments.

    The count is clamped, never rejected: methods without installments are
    forced to 1, the count is capped at ``max_installments`` and then
    lowered until each installment is at least ``min_installment_cents``.
    Remainder cents go to the first installments so the amounts always add
    up to the total.

    Example:
        21500 cents in 6 with a 5000 minimum gives 4 x 5375.
    """
    requested = max(1, int(requested))
    count = requested if method.allows_installments else 1
    count = min(count, max(1, config.max_installments))

    minimum = config.min_installment_cents
    if minimum > 0:
        # largest n with total / n >= minimum
        count = min(count, max(1, total_cents // minimum))

    base, remainder = divmod(total_cents, count)
    amounts = tuple(base + 1 if i < remainder else base for i in range(count))
    return InstallmentPlan(count=count, requested=requested, amounts_cents=amounts)
