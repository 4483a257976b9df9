"""Test helpers for signal-trader test suite"""

from tests.helpers.broker_stubs import (
    FakeBroker,
    FakeMarketData,
    make_order,
    make_position,
)

__all__ = [
    "FakeBroker",
    "FakeMarketData",
    "make_order",
    "make_position",
]
