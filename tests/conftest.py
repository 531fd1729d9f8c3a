"""
Pytest configuration and fixtures for cyclebot tests.
"""
import pytest

from infra.metrics import MetricsRecorder
from infra.repository import AccumulationRepository, CycleRepository
from tests.helpers import FakeExchangeClient, make_config


@pytest.fixture(autouse=True)
def reset_metrics():
    """
    Reset the metrics singleton around every test so Prometheus collectors
    are never registered twice.
    """
    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def cycles_repo(tmp_path):
    return CycleRepository(str(tmp_path / "cycles.json"))


@pytest.fixture
def accu_repo(tmp_path):
    return AccumulationRepository(str(tmp_path / "accumulations.json"))


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def binance():
    return FakeExchangeClient("BINANCE", price=60100.0, free_btc=0.0, free_usdc=1000.0)
