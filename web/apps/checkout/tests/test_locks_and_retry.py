"""Per-order locks and the bounded retry helper."""
import threading

import pytest

from apps.checkout.domain import DestinationUnreachable, OrderBusy, ShippingUnavailable
from apps.checkout.locks import KeyedLocks
from apps.checkout.retry import backoff_delay, call_with_retry


def test_same_order_is_exclusive_and_times_out():
    locks = KeyedLocks(timeout=0.05)
    held = threading.Event()
    release = threading.Event()

    def holder():
        with locks.hold("order-1"):
            held.set()
            release.wait(2)

    t = threading.Thread(target=holder)
    t.start()
    held.wait(2)
    try:
        with pytest.raises(OrderBusy):
            with locks.hold("order-1"):
                pass
        # other orders never wait
        with locks.hold("order-2"):
            pass
    finally:
        release.set()
        t.join()


def test_lock_table_is_cleaned_up():
    locks = KeyedLocks()
    with locks.hold("order-1"):
        assert len(locks) == 1
    assert len(locks) == 0


def test_backoff_is_exponential_and_capped():
    assert [backoff_delay(n, 0.15, 0.5) for n in (1, 2, 3, 4)] == [0.15, 0.3, 0.5, 0.5]


def test_retry_stops_after_budget():
    calls = {"n": 0}
    sleeps = []

    def fn():
        calls["n"] += 1
        raise ShippingUnavailable()

    with pytest.raises(ShippingUnavailable):
        call_with_retry(fn, attempts=3, retry_on=(ShippingUnavailable,), backoff_base=0.1, max_sleep=1, sleep=sleeps.append)
    assert calls["n"] == 3
    assert sleeps == [0.1, 0.2]


def test_retry_does_not_catch_other_errors():
    calls = {"n": 0}

    def fn():
        calls["n"] += 1
        raise KeyError("boom")

    with pytest.raises(KeyError):
        call_with_retry(fn, attempts=3, retry_on=(ShippingUnavailable,), sleep=lambda _s: None)
    assert calls["n"] == 1


def test_retry_returns_first_success():
    results = iter([ShippingUnavailable(), "ok"])

    def fn():
        value = next(results)
        if isinstance(value, Exception):
            raise value
        return value

    assert call_with_retry(fn, attempts=2, retry_on=(ShippingUnavailable,), sleep=lambda _s: None) == "ok"


def test_retry_gives_up_at_once_on_final_subclass():
    calls = {"n": 0}

    def fn():
        calls["n"] += 1
        raise DestinationUnreachable()

    with pytest.raises(DestinationUnreachable):
        call_with_retry(
            fn,
            attempts=3,
            retry_on=(ShippingUnavailable,),
            give_up_on=(DestinationUnreachable,),
            sleep=lambda _s: None,
        )
    assert calls["n"] == 1
