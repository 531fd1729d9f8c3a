"""
Tests for the reconciliation engine: buy -> sell -> completed, cancellations,
balance-propagation deferral and accumulation.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from core.cycle import Cycle
from core.exceptions import ExchangeAPIError, RepositoryUnavailable
from core.exchange_base import BTC, Balance
from core.reconcile import CycleOutcome, ReconciliationEngine, estimated_completion_time
from tests.helpers import FakeExchangeClient, make_config, make_cycle

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def build_engine(cycles_repo, accu_repo, clients, config, sleep=None):
    return ReconciliationEngine(cycles_repo, accu_repo, clients, config,
                                sleep=sleep or (lambda seconds: None), clock=lambda: NOW)


def saved_cycle(repo, **kwargs):
    cycle = make_cycle(now=NOW, **kwargs)
    repo.save(cycle)
    return cycle


class TestBuyFilled:
    """Buy fill detection and sell placement."""

    def test_sell_price_uses_offset_when_above_maker_floor(self, cycles_repo, accu_repo, config, binance):
        """buy 60000 + offset 500 beats the maker floor 60100 x 1.001."""
        binance.balances[BTC] = Balance(free=0.01, total=0.01)
        binance.add_order("1001", "BUY", 60000.0, 0.01)
        binance.fill("1001")
        cycle = saved_cycle(cycles_repo)
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        outcome = engine.process_buy_cycle(cycle, binance, 60100.0, binance.get_detailed_balances())

        assert outcome == CycleOutcome.SELL_PLACED
        stored = cycles_repo.find_by_id_int(cycle.id_int)
        assert stored.status == "sell"
        assert stored.sell_price == pytest.approx(60500.0)
        assert stored.sell_id == binance.created[0]["orderId"]
        assert binance.created[0]["side"] == "SELL"
        assert binance.created[0]["price"] == pytest.approx(60500.0)
        assert stored.purchase_amount_usdc == pytest.approx(600.0)

    def test_maker_floor_wins_when_market_ran_up(self, cycles_repo, accu_repo, config, binance):
        binance.balances[BTC] = Balance(free=0.01, total=0.01)
        binance.add_order("1001", "BUY", 60000.0, 0.01)
        binance.fill("1001")
        cycle = saved_cycle(cycles_repo)
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        engine.process_buy_cycle(cycle, binance, 61000.0, binance.get_detailed_balances())

        assert cycles_repo.find_by_id_int(cycle.id_int).sell_price == pytest.approx(61061.0)

    def test_fee_floor_wins_when_highest(self, cycles_repo, accu_repo, config, binance):
        binance.balances[BTC] = Balance(free=0.01, total=0.01)
        binance.add_order("1001", "BUY", 60000.0, 0.01)
        binance.fill("1001")
        binance.fee_floor = 60800.0
        cycle = saved_cycle(cycles_repo)
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        engine.process_buy_cycle(cycle, binance, 60100.0, binance.get_detailed_balances())

        assert cycles_repo.find_by_id_int(cycle.id_int).sell_price == pytest.approx(60800.0)

    def test_buy_fees_estimated_when_unavailable(self, cycles_repo, accu_repo, config, binance):
        binance.balances[BTC] = Balance(free=0.01, total=0.01)
        binance.add_order("1001", "BUY", 60000.0, 0.01)
        binance.fill("1001")
        cycle = saved_cycle(cycles_repo)
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        engine.process_buy_cycle(cycle, binance, 60100.0, binance.get_detailed_balances())

        # 60000 x 0.01 x 0.001
        assert cycles_repo.find_by_id_int(cycle.id_int).buy_fees == pytest.approx(0.6)

    def test_executed_quantity_replaces_drifted_quantity(self, cycles_repo, accu_repo, config, binance):
        binance.balances[BTC] = Balance(free=0.00995, total=0.00995)
        binance.add_order("1001", "BUY", 60000.0, 0.01)
        binance.fill("1001", executed=0.00995)
        cycle = saved_cycle(cycles_repo)
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        engine.process_buy_cycle(cycle, binance, 60100.0, binance.get_detailed_balances())

        stored = cycles_repo.find_by_id_int(cycle.id_int)
        assert stored.quantity == pytest.approx(0.00995)
        assert binance.created[0]["quantity"] == pytest.approx(0.00995)

    def test_sell_uses_free_btc_when_slightly_short(self, cycles_repo, accu_repo, config, binance):
        binance.balances[BTC] = Balance(free=0.00995, total=0.00995)
        binance.add_order("1001", "BUY", 60000.0, 0.01)
        binance.fill("1001")
        cycle = saved_cycle(cycles_repo)
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        engine.process_buy_cycle(cycle, binance, 60100.0, binance.get_detailed_balances())

        assert binance.created[0]["quantity"] == pytest.approx(0.00995)

    def test_defers_when_btc_not_visible(self, cycles_repo, accu_repo, config, binance):
        binance.balances[BTC] = Balance(free=0.005, total=0.005)
        binance.add_order("1001", "BUY", 60000.0, 0.01)
        binance.fill("1001")
        cycle = saved_cycle(cycles_repo)
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        outcome = engine.process_buy_cycle(cycle, binance, 60100.0, binance.get_detailed_balances())

        assert outcome == CycleOutcome.DEFERRED
        assert cycles_repo.find_by_id_int(cycle.id_int).status == "buy"
        assert binance.created == []

    def test_sell_placement_failure_keeps_cycle_in_sell(self, cycles_repo, accu_repo, config, binance):
        binance.balances[BTC] = Balance(free=0.01, total=0.01)
        binance.add_order("1001", "BUY", 60000.0, 0.01)
        binance.fill("1001")
        binance.create_error = ExchangeAPIError("BINANCE", "HTTP 400: insufficient balance", status_code=400)
        cycle = saved_cycle(cycles_repo)
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        outcome = engine.process_buy_cycle(cycle, binance, 60100.0, binance.get_detailed_balances())

        assert outcome == CycleOutcome.SELL_PENDING
        stored = cycles_repo.find_by_id_int(cycle.id_int)
        assert stored.status == "sell"
        assert stored.sell_id == ""

    def test_unfilled_buy_waits(self, cycles_repo, accu_repo, config, binance):
        binance.add_order("1001", "BUY", 60000.0, 0.01)
        cycle = saved_cycle(cycles_repo)
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        assert engine.process_buy_cycle(cycle, binance, 60100.0, binance.get_detailed_balances()) \
            == CycleOutcome.WAITING
        assert cycles_repo.find_by_id_int(cycle.id_int).status == "buy"


class TestMexcBalanceRecheck:
    """MEXC reports FILLED before balances settle."""

    def test_waits_once_then_places_sell(self, cycles_repo, accu_repo, config):
        mexc = FakeExchangeClient("MEXC", price=60100.0)
        mexc.add_order("C02__1001", "BUY", 60000.0, 0.01)
        mexc.fill("C02__1001")
        sleeps = []

        def settle(seconds):
            sleeps.append(seconds)
            mexc.balances[BTC] = Balance(free=0.01, total=0.01)

        cycle = saved_cycle(cycles_repo, exchange="MEXC")
        engine = build_engine(cycles_repo, accu_repo, {"MEXC": mexc}, config, sleep=settle)

        outcome = engine.process_buy_cycle(cycle, mexc, 60100.0, mexc.get_detailed_balances())

        assert outcome == CycleOutcome.SELL_PLACED
        assert len(sleeps) == 1

    def test_defers_when_still_short_after_wait(self, cycles_repo, accu_repo, config):
        mexc = FakeExchangeClient("MEXC", price=60100.0)
        mexc.add_order("C02__1001", "BUY", 60000.0, 0.01)
        mexc.fill("C02__1001")
        cycle = saved_cycle(cycles_repo, exchange="MEXC")
        engine = build_engine(cycles_repo, accu_repo, {"MEXC": mexc}, config)

        outcome = engine.process_buy_cycle(cycle, mexc, 60100.0, mexc.get_detailed_balances())

        assert outcome == CycleOutcome.DEFERRED
        assert cycles_repo.find_by_id_int(cycle.id_int).status == "buy"

    def test_accepts_95_percent_on_mexc(self, cycles_repo, accu_repo, config):
        mexc = FakeExchangeClient("MEXC", price=60100.0, free_btc=0.0096)
        mexc.add_order("C02__1001", "BUY", 60000.0, 0.01)
        mexc.fill("C02__1001")
        cycle = saved_cycle(cycles_repo, exchange="MEXC")
        engine = build_engine(cycles_repo, accu_repo, {"MEXC": mexc}, config)

        outcome = engine.process_buy_cycle(cycle, mexc, 60100.0, mexc.get_detailed_balances())

        assert outcome == CycleOutcome.SELL_PLACED


class TestBuyCancellation:
    """Expired, vanished and runaway buys."""

    def test_expired_buy_deleted_even_when_cancel_fails(self, tmp_path, cycles_repo, accu_repo, binance):
        config = make_config(tmp_path, binance={"buy_max_days": 2})
        binance.add_order("1001", "BUY", 60000.0, 0.01)
        binance.cancel_errors = [ExchangeAPIError("BINANCE", "HTTP 503: unavailable", status_code=503)]
        cycle = saved_cycle(cycles_repo, age=timedelta(days=3))
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        outcome = engine.process_buy_cycle(cycle, binance, 60100.0, binance.get_detailed_balances())

        assert outcome == CycleOutcome.CANCELLED
        assert cycles_repo.find_by_id_int(cycle.id_int) is None

    def test_young_buy_not_expired(self, tmp_path, cycles_repo, accu_repo, binance):
        config = make_config(tmp_path, binance={"buy_max_days": 2})
        binance.add_order("1001", "BUY", 60000.0, 0.01)
        cycle = saved_cycle(cycles_repo, age=timedelta(days=1))
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        assert engine.process_buy_cycle(cycle, binance, 60100.0, binance.get_detailed_balances()) \
            == CycleOutcome.WAITING

    def test_missing_buy_order_deletes_cycle(self, cycles_repo, accu_repo, config, binance):
        cycle = saved_cycle(cycles_repo, buy_id="4242")
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        outcome = engine.process_buy_cycle(cycle, binance, 60100.0, binance.get_detailed_balances())

        assert outcome == CycleOutcome.CANCELLED
        assert cycles_repo.find_by_id_int(cycle.id_int) is None

    def test_transient_lookup_error_keeps_cycle(self, cycles_repo, accu_repo, config, binance):
        binance.lookup_error = ExchangeAPIError("BINANCE", "HTTP 502: bad gateway", status_code=502)
        cycle = saved_cycle(cycles_repo)
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        outcome = engine.process_buy_cycle(cycle, binance, 60100.0, binance.get_detailed_balances())

        assert outcome == CycleOutcome.SKIPPED
        assert cycles_repo.find_by_id_int(cycle.id_int).status == "buy"

    def test_price_deviation_cancels_buy(self, tmp_path, cycles_repo, accu_repo, binance):
        config = make_config(tmp_path, binance={"buy_max_price_deviation": 2})
        binance.add_order("1001", "BUY", 60000.0, 0.01)
        cycle = saved_cycle(cycles_repo)
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        outcome = engine.process_buy_cycle(cycle, binance, 61500.0, binance.get_detailed_balances())

        assert outcome == CycleOutcome.CANCELLED
        assert binance.cancelled == ["1001"]
        assert cycles_repo.find_by_id_int(cycle.id_int) is None

    def test_price_within_deviation_keeps_buy(self, tmp_path, cycles_repo, accu_repo, binance):
        config = make_config(tmp_path, binance={"buy_max_price_deviation": 2})
        binance.add_order("1001", "BUY", 60000.0, 0.01)
        cycle = saved_cycle(cycles_repo)
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        assert engine.process_buy_cycle(cycle, binance, 61100.0, binance.get_detailed_balances()) \
            == CycleOutcome.WAITING


class TestSellSide:
    """Sell completion and sell recreation."""

    def test_filled_sell_completes_cycle(self, cycles_repo, accu_repo, config, binance):
        binance.add_order("2001", "SELL", 60500.0, 0.01)
        binance.fill("2001")
        binance.fees = 0.5
        cycle = saved_cycle(cycles_repo, status="sell", sell_id="2001", sell_price=60500.0,
                            buy_fees=0.6, purchase_amount_usdc=600.0)
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        outcome = engine.process_sell_cycle(cycle, binance, 60400.0, binance.get_detailed_balances())

        assert outcome == CycleOutcome.COMPLETED
        stored = cycles_repo.find_by_id_int(cycle.id_int)
        assert stored.status == "completed"
        assert stored.total_fees == pytest.approx(1.1)
        assert stored.sale_amount_usdc == pytest.approx(605.0)
        assert stored.exact_exchange_gain == pytest.approx(5.0)

    def test_completion_time_from_exchange(self, cycles_repo, accu_repo, config, binance):
        binance.add_order("2001", "SELL", 60500.0, 0.01)
        binance.fill("2001")
        binance.completed_at = NOW - timedelta(minutes=10)
        cycle = saved_cycle(cycles_repo, status="sell", sell_id="2001", sell_price=60500.0)
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        engine.process_sell_cycle(cycle, binance, 60400.0, binance.get_detailed_balances())

        assert cycles_repo.find_by_id_int(cycle.id_int).completed_at == NOW - timedelta(minutes=10)

    def test_completion_time_estimated_per_exchange(self, cycles_repo, accu_repo, config, binance):
        binance.add_order("2001", "SELL", 60500.0, 0.01)
        binance.fill("2001")
        cycle = saved_cycle(cycles_repo, status="sell", sell_id="2001", sell_price=60500.0)
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        engine.process_sell_cycle(cycle, binance, 60400.0, binance.get_detailed_balances())

        stored = cycles_repo.find_by_id_int(cycle.id_int)
        assert stored.completed_at == stored.created_at + timedelta(hours=4)

    def test_open_sell_waits(self, cycles_repo, accu_repo, config, binance):
        binance.add_order("2001", "SELL", 60500.0, 0.01)
        cycle = saved_cycle(cycles_repo, status="sell", sell_id="2001", sell_price=60500.0)
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        assert engine.process_sell_cycle(cycle, binance, 60400.0, binance.get_detailed_balances()) \
            == CycleOutcome.WAITING

    def test_missing_sell_id_is_recreated(self, cycles_repo, accu_repo, config, binance):
        binance.balances[BTC] = Balance(free=0.01, total=0.01)
        cycle = saved_cycle(cycles_repo, status="sell", sell_id="", sell_price=60500.0)
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        outcome = engine.process_sell_cycle(cycle, binance, 60100.0, binance.get_detailed_balances())

        assert outcome == CycleOutcome.SELL_PLACED
        stored = cycles_repo.find_by_id_int(cycle.id_int)
        assert stored.sell_id == binance.created[0]["orderId"]
        assert stored.sell_price == pytest.approx(60500.0)

    def test_missing_sell_id_without_btc_defers(self, cycles_repo, accu_repo, config, binance):
        cycle = saved_cycle(cycles_repo, status="sell", sell_id="", sell_price=60500.0)
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        assert engine.process_sell_cycle(cycle, binance, 60100.0, binance.get_detailed_balances()) \
            == CycleOutcome.DEFERRED
        assert binance.created == []


class TestAccumulation:
    """Sell cycles converted into retained BTC."""

    @pytest.fixture
    def accu_config(self, tmp_path):
        return make_config(tmp_path, binance={"accumulation": True, "sell_accu_price_deviation": 10})

    def _profitable_history(self, cycles_repo, gain=1000.0):
        done = Cycle(exchange="BINANCE", quantity=0.01, buy_price=50000.0, sell_price=60000.0,
                     status="completed", completed_at=NOW, purchase_amount_usdc=1000.0,
                     sale_amount_usdc=1000.0 + gain)
        cycles_repo.save(done)

    def test_approved_accumulation_cancels_sell_and_records(self, cycles_repo, accu_repo,
                                                            accu_config, binance):
        self._profitable_history(cycles_repo)
        binance.add_order("2001", "SELL", 60500.0, 0.01)
        cycle = saved_cycle(cycles_repo, status="sell", sell_id="2001", sell_price=60500.0)
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, accu_config)

        outcome = engine.process_sell_cycle(cycle, binance, 50000.0, binance.get_detailed_balances())

        assert outcome == CycleOutcome.ACCUMULATED
        assert binance.cancelled == ["2001"]
        assert cycles_repo.find_by_id_int(cycle.id_int) is None
        records = accu_repo.find_by_exchange("BINANCE")
        assert len(records) == 1
        assert records[0].cycle_id_int == cycle.id_int
        assert records[0].target_sell_price == pytest.approx(60500.0)
        assert records[0].cancel_price == pytest.approx(50000.0)

    def test_insufficient_profit_keeps_sell(self, cycles_repo, accu_repo, accu_config, binance):
        self._profitable_history(cycles_repo, gain=100.0)
        binance.add_order("2001", "SELL", 60500.0, 0.01)
        cycle = saved_cycle(cycles_repo, status="sell", sell_id="2001", sell_price=60500.0)
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, accu_config)

        outcome = engine.process_sell_cycle(cycle, binance, 50000.0, binance.get_detailed_balances())

        assert outcome == CycleOutcome.WAITING
        assert binance.cancelled == []

    def test_missing_sell_order_is_created_then_cancelled(self, cycles_repo, accu_repo,
                                                          accu_config, binance):
        self._profitable_history(cycles_repo)
        binance.balances[BTC] = Balance(free=0.01, total=0.01)
        cycle = saved_cycle(cycles_repo, status="sell", sell_id="", sell_price=60500.0)
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, accu_config)

        outcome = engine.process_sell_cycle(cycle, binance, 50000.0, binance.get_detailed_balances())

        assert outcome == CycleOutcome.ACCUMULATED
        assert binance.cancelled == [binance.created[0]["orderId"]]

    def test_record_failure_still_deletes_cycle(self, cycles_repo, accu_config, binance):
        self._profitable_history(cycles_repo)
        binance.add_order("2001", "SELL", 60500.0, 0.01)
        accumulations = Mock()
        accumulations.get_total_accumulated_value.return_value = 0.0
        accumulations.save.side_effect = RepositoryUnavailable("disk full")
        cycle = saved_cycle(cycles_repo, status="sell", sell_id="2001", sell_price=60500.0)
        engine = build_engine(cycles_repo, accumulations, {"BINANCE": binance}, accu_config)

        outcome = engine.process_sell_cycle(cycle, binance, 50000.0, binance.get_detailed_balances())

        assert outcome == CycleOutcome.ACCUMULATED
        assert cycles_repo.find_by_id_int(cycle.id_int) is None

    def test_failed_cancel_postpones_accumulation(self, cycles_repo, accu_repo, accu_config, binance):
        self._profitable_history(cycles_repo)
        binance.add_order("2001", "SELL", 60500.0, 0.01)
        binance.cancel_errors = [ExchangeAPIError("BINANCE", "HTTP 503: unavailable", status_code=503)]
        cycle = saved_cycle(cycles_repo, status="sell", sell_id="2001", sell_price=60500.0)
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, accu_config)

        outcome = engine.process_sell_cycle(cycle, binance, 50000.0, binance.get_detailed_balances())

        assert outcome == CycleOutcome.SKIPPED
        assert cycles_repo.find_by_id_int(cycle.id_int) is not None
        assert accu_repo.find_all() == []


class TestReconcilePass:
    """Whole-pass behavior."""

    def test_unexpected_error_only_aborts_that_cycle(self, cycles_repo, accu_repo, config, binance):
        binance.add_order("1002", "BUY", 60000.0, 0.01)
        first = saved_cycle(cycles_repo, buy_id="1001")
        second = saved_cycle(cycles_repo, buy_id="1002")
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        original = binance.get_order_by_id

        def flaky(order_id):
            if order_id == "1001":
                raise RuntimeError("unexpected payload")
            return original(order_id)

        binance.get_order_by_id = flaky
        summary = engine.run()

        assert summary.processed == 2
        assert summary.count(CycleOutcome.ERROR) == 1
        assert summary.count(CycleOutcome.WAITING) == 1
        assert cycles_repo.find_by_id_int(first.id_int) is not None
        assert cycles_repo.find_by_id_int(second.id_int) is not None

    def test_exchange_skipped_when_price_unavailable(self, cycles_repo, accu_repo, config, binance):
        saved_cycle(cycles_repo)
        binance.get_last_price_btc = Mock(side_effect=ExchangeAPIError("BINANCE", "timeout"))
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        summary = engine.run()

        assert summary.skipped_exchanges == ["BINANCE"]
        assert summary.processed == 0

    def test_only_requested_exchange_processed(self, cycles_repo, accu_repo, config, binance):
        kraken = FakeExchangeClient("KRAKEN", price=60100.0)
        saved_cycle(cycles_repo, exchange="KRAKEN", buy_id="OABC12-DEF34-GHI567")
        binance.add_order("1001", "BUY", 60000.0, 0.01)
        saved_cycle(cycles_repo)
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance, "KRAKEN": kraken}, config)

        summary = engine.run("binance")

        assert summary.processed == 1

    def test_completed_cycles_ignored(self, cycles_repo, accu_repo, config, binance):
        cycles_repo.save(Cycle(exchange="BINANCE", quantity=0.01, buy_price=60000.0,
                               sell_price=60500.0, status="completed", completed_at=NOW))
        engine = build_engine(cycles_repo, accu_repo, {"BINANCE": binance}, config)

        assert engine.run().processed == 0


def test_estimated_completion_offsets():
    created = datetime(2026, 1, 1, tzinfo=timezone.utc)
    for exchange, hours in (("KUCOIN", 6), ("MEXC", 2), ("BINANCE", 4), ("KRAKEN", 5)):
        cycle = Cycle(exchange=exchange, quantity=0.01, buy_price=1.0, created_at=created)
        assert estimated_completion_time(cycle) == created + timedelta(hours=hours)
