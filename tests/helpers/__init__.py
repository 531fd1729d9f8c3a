"""Test helpers for cyclebot tests."""

from tests.helpers.fake_exchange import (  # noqa: F401
    FakeExchangeClient,
    make_config,
    make_cycle,
)

__all__ = ["FakeExchangeClient", "make_config", "make_cycle"]
