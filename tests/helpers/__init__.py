"""Test helpers for the perpguard test suite"""

from tests.helpers.fakes import (
    FakeExchange,
    make_candles,
    make_position,
)

__all__ = [
    "FakeExchange",
    "make_candles",
    "make_position",
]
