"""
Tests for the order & settlement engine.
"""
import pytest

from schemas.account import AccountState, PendingOrder, Position, RejectReason, TransactionType
from schemas.market import Instrument
from services.market.params import MarketParams
from services.market.settlement import SettlementEngine, calculate_fee, liquidation_price_for


class _FakeMarket:
    def __init__(self, instruments):
        self.instruments = {i.id: i for i in instruments}
        self.tick = 10
        self.day = 1
        self.is_market_closed = False


def _make_instrument(instrument_id="A", price=50_000, **overrides) -> Instrument:
    fields = dict(
        id=instrument_id,
        name=f"Stock {instrument_id}",
        symbol=f"00000{instrument_id}",
        kind="bluechip",
        initial_price=price,
        current_price=price,
        open_price=price,
        previous_close=price,
        upper_limit=price * 10,
        lower_limit=1,
        mean_price=price,
        kappa=0.02,
        sigma=0.03,
        jump_intensity=0.1,
    )
    fields.update(overrides)
    return Instrument(**fields)


def _make_account(cash=10_000_000) -> AccountState:
    return AccountState(id="acct-1", cash=cash)


class TestFees:
    def test_fee_rounds_half_up(self):
        assert calculate_fee(500_000, 0.001) == 500
        assert calculate_fee(1_500, 0.001) == 2
        assert calculate_fee(1_499, 0.001) == 1

    def test_liquidation_price(self):
        assert liquidation_price_for(10_000, 50) == 9_800
        assert liquidation_price_for(10_000, 2) == 5_000


class TestMarketOrders:
    def setup_method(self):
        self.instrument = _make_instrument()
        self.market = _FakeMarket([self.instrument])
        self.engine = SettlementEngine(MarketParams(), self.market)
        self.account = _make_account()

    def test_buy_charges_fee(self):
        result = self.engine.buy(self.account, "A", 10)
        assert result.success
        assert result.fee == 500
        assert result.total == 500_500
        assert self.account.cash == 10_000_000 - 500_500
        position = self.account.positions[0]
        assert position.quantity == 10
        assert position.average_price == 50_000
        assert position.leverage == 1
        assert position.liquidation_price is None
        record = self.account.transactions[0]
        assert record.type == TransactionType.BUY
        assert record.total == 500_000
        assert record.fee == 500

    def test_weighted_average_merge(self):
        self.engine.buy(self.account, "A", 10, price=100)
        self.engine.buy(self.account, "A", 10, price=200)
        assert len(self.account.positions) == 1
        assert self.account.positions[0].quantity == 20
        assert self.account.positions[0].average_price == 150

    def test_sell_realizes_profit(self):
        self.engine.buy(self.account, "A", 10)
        self.instrument.current_price = 55_000
        result = self.engine.sell(self.account, "A", 10)
        assert result.success
        assert result.fee == 550
        assert result.total == 549_450
        assert result.realized_pnl == pytest.approx(49_450)
        assert self.account.positions == []
        assert self.account.cash == 10_000_000 - 500_500 + 549_450
        assert self.account.realized_pnl == pytest.approx(49_450)

    def test_partial_sell_shrinks_position(self):
        self.engine.buy(self.account, "A", 10)
        self.engine.sell(self.account, "A", 4)
        assert self.account.positions[0].quantity == 6

    def test_rejections_leave_ledger_untouched(self):
        cases = [
            (lambda: self.engine.buy(self.account, "A", 0), RejectReason.INVALID_QUANTITY),
            (lambda: self.engine.buy(self.account, "Z", 1), RejectReason.UNKNOWN_INSTRUMENT),
            (lambda: self.engine.buy(self.account, "A", 1_000), RejectReason.INSUFFICIENT_CASH),
            (lambda: self.engine.sell(self.account, "A", 1), RejectReason.INSUFFICIENT_HOLDINGS),
        ]
        for call, reason in cases:
            result = call()
            assert not result.success
            assert result.reason == reason
        assert self.account.cash == 10_000_000
        assert self.account.positions == []
        assert self.account.transactions == []

    def test_halted_and_delisted_rejected(self):
        self.instrument.trading_halted = True
        assert self.engine.buy(self.account, "A", 1).reason == RejectReason.TRADING_HALTED
        self.instrument.trading_halted = False
        self.instrument.is_delisted = True
        assert self.engine.buy(self.account, "A", 1).reason == RejectReason.INSTRUMENT_DELISTED
        assert self.account.cash == 10_000_000

    def test_closed_market_rejected(self):
        self.market.is_market_closed = True
        assert self.engine.buy(self.account, "A", 1).reason == RejectReason.MARKET_CLOSED

    def test_transaction_log_is_capped_newest_first(self):
        engine = SettlementEngine(MarketParams(max_transactions=5), self.market)
        for quantity in range(1, 8):
            engine.buy(self.account, "A", quantity)
        assert len(self.account.transactions) == 5
        assert self.account.transactions[0].quantity == 7
        assert self.account.transactions[-1].quantity == 3


class TestLeverage:
    def setup_method(self):
        self.instrument = _make_instrument(price=10_000)
        self.market = _FakeMarket([self.instrument])
        self.engine = SettlementEngine(MarketParams(), self.market)
        self.account = _make_account()

    def test_margin_not_scaled_by_leverage(self):
        result = self.engine.buy_leveraged(self.account, "A", 10, 50)
        assert result.success
        assert result.total == 100_100
        assert self.account.cash == 10_000_000 - 100_100
        position = self.account.positions[0]
        assert position.leverage == 50
        assert position.liquidation_price == 9_800

    def test_leverage_tiers_are_separate_positions(self):
        self.engine.buy(self.account, "A", 10)
        self.engine.buy_leveraged(self.account, "A", 10, 2)
        self.engine.buy_leveraged(self.account, "A", 10, 5)
        assert sorted(p.leverage for p in self.account.positions) == [1, 2, 5]

    def test_same_tier_merge_recomputes_liquidation(self):
        self.engine.buy_leveraged(self.account, "A", 10, 10, price=100)
        self.engine.buy_leveraged(self.account, "A", 10, 10, price=200)
        position = self.account.positions[0]
        assert position.quantity == 20
        assert position.entry_price == 150
        assert position.liquidation_price == 135

    def test_leverage_one_is_plain_buy(self):
        self.engine.buy_leveraged(self.account, "A", 10, 1)
        assert self.account.positions[0].liquidation_price is None

    def test_unsupported_leverage_rejected(self):
        result = self.engine.buy_leveraged(self.account, "A", 10, 3)
        assert result.reason == RejectReason.INVALID_LEVERAGE
        assert self.account.cash == 10_000_000

    def test_leveraged_sell_payout(self):
        self.engine.buy_leveraged(self.account, "A", 10, 10)
        self.instrument.current_price = 11_000
        result = self.engine.sell(self.account, "A", 10, leverage=10)
        assert result.success
        # +10% at 10x doubles the 100,000 margin
        assert result.fee == 200
        assert result.total == 199_800
        assert result.realized_pnl == pytest.approx(99_800)

    def test_leveraged_sell_payout_floored_at_zero(self):
        self.engine.buy_leveraged(self.account, "A", 10, 10)
        cash = self.account.cash
        self.instrument.current_price = 8_000
        result = self.engine.sell(self.account, "A", 10, leverage=10)
        assert result.success
        assert result.total == 0
        assert self.account.cash == cash

    def test_sell_from_wrong_tier_rejected(self):
        self.engine.buy_leveraged(self.account, "A", 10, 10)
        result = self.engine.sell(self.account, "A", 10)
        assert result.reason == RejectReason.INSUFFICIENT_HOLDINGS

    def test_liquidation_loses_full_margin(self):
        self.engine.buy_leveraged(self.account, "A", 10, 50)
        cash = self.account.cash
        self.instrument.current_price = 9_700
        report = self.engine.settle(self.account)
        assert len(report.liquidations) == 1
        notice = report.liquidations[0]
        assert notice.loss_amount == 100_000
        assert notice.liquidation_price == 9_800
        assert notice.current_price == 9_700
        assert self.account.positions == []
        assert self.account.realized_pnl == -100_000
        assert self.account.cash == cash
        assert len(self.account.transactions) == 1  # the buy only

        # settling again finds nothing left to liquidate
        assert self.engine.settle(self.account).liquidations == []
        assert self.account.realized_pnl == -100_000

    def test_liquidation_boundary(self):
        self.engine.buy_leveraged(self.account, "A", 10, 50)
        self.instrument.current_price = 9_850
        assert self.engine.settle(self.account).liquidations == []
        self.instrument.current_price = 9_800
        assert len(self.engine.settle(self.account).liquidations) == 1


class TestLimitOrders:
    def setup_method(self):
        self.instrument = _make_instrument(price=9_500)
        self.market = _FakeMarket([self.instrument])
        self.engine = SettlementEngine(MarketParams(), self.market)
        self.account = _make_account()

    def test_buy_triggers_at_or_below_target_at_current_price(self):
        placed = self.engine.place_limit_order(self.account, "A", "buy", 10, 9_000)
        assert placed.success and placed.order_id

        report = self.engine.settle(self.account)
        assert report.executed_orders == []
        assert len(self.account.pending_orders) == 1

        self.instrument.current_price = 8_950
        report = self.engine.settle(self.account)
        assert len(report.executed_orders) == 1
        notice = report.executed_orders[0]
        assert notice.order_id == placed.order_id
        assert notice.price == 8_950
        assert notice.filled
        assert self.account.pending_orders == []
        assert self.account.positions[0].average_price == 8_950

    def test_sell_triggers_at_or_above_target(self):
        self.engine.buy(self.account, "A", 10)
        self.engine.place_limit_order(self.account, "A", "sell", 10, 10_000)
        self.instrument.current_price = 10_000
        report = self.engine.settle(self.account)
        assert len(report.executed_orders) == 1
        assert self.account.positions == []

    def test_orders_execute_in_submission_order(self):
        account = _make_account(cash=100_000)
        first = self.engine.place_limit_order(account, "A", "buy", 10, 9_600)
        second = self.engine.place_limit_order(account, "A", "buy", 10, 9_600)
        report = self.engine.settle(account)
        assert [n.order_id for n in report.executed_orders] == [first.order_id, second.order_id]
        assert report.executed_orders[0].filled
        assert not report.executed_orders[1].filled
        assert report.executed_orders[1].reason == RejectReason.INSUFFICIENT_CASH.value
        assert account.pending_orders == []

    def test_orders_on_halted_instrument_are_dropped(self):
        placed = self.engine.place_limit_order(self.account, "A", "buy", 10, 9_000)
        self.instrument.trading_halted = True
        report = self.engine.settle(self.account)
        assert report.dropped_order_ids == [placed.order_id]
        assert self.account.pending_orders == []
        assert self.account.positions == []

    def test_cancel(self):
        placed = self.engine.place_limit_order(self.account, "A", "buy", 10, 9_000)
        assert self.engine.cancel_limit_order(self.account, placed.order_id).success
        assert self.account.pending_orders == []
        missing = self.engine.cancel_limit_order(self.account, placed.order_id)
        assert missing.reason == RejectReason.ORDER_NOT_FOUND

    def test_settle_does_nothing_while_closed(self):
        self.engine.place_limit_order(self.account, "A", "buy", 10, 9_600)
        self.market.is_market_closed = True
        assert not self.engine.settle(self.account).changed
        assert len(self.account.pending_orders) == 1


class TestSellAllAndValuation:
    def setup_method(self):
        self.a = _make_instrument("A", price=10_000)
        self.b = _make_instrument("B", price=20_000)
        self.market = _FakeMarket([self.a, self.b])
        self.engine = SettlementEngine(MarketParams(), self.market)
        self.account = _make_account()

    def test_sell_all_skips_halted(self):
        self.engine.buy(self.account, "A", 10)
        self.engine.buy_leveraged(self.account, "A", 5, 2)
        self.engine.buy(self.account, "B", 10)
        self.b.trading_halted = True

        result = self.engine.sell_all(self.account)
        assert result.success
        assert len(result.results) == 2
        assert [p.stock_id for p in self.account.positions] == ["B"]

    def test_portfolio_valuation(self):
        self.engine.buy(self.account, "A", 10)
        self.engine.buy_leveraged(self.account, "B", 10, 5)
        self.a.current_price = 11_000
        self.b.current_price = 21_000

        valuation = self.engine.portfolio_valuation(self.account)
        rows = {(r.stock_id, r.leverage): r for r in valuation.positions}
        assert rows[("A", 1)].evaluated_value == 110_000
        # +5% at 5x on a 200,000 margin
        assert rows[("B", 5)].evaluated_value == pytest.approx(250_000)
        assert valuation.holdings_value == pytest.approx(360_000)
        assert valuation.total_value == pytest.approx(self.account.cash + 360_000)
        assert valuation.unrealized_pnl == pytest.approx(60_000)

    def test_existing_positions_survive_reload(self):
        self.account.positions.append(Position(
            stock_id="A", quantity=3, average_price=9_000, leverage=1, entry_price=9_000,
        ))
        self.account.pending_orders.append(PendingOrder(
            id="order-x", stock_id="A", side="sell", quantity=3, target_price=9_500,
            created_tick=0, created_day=1,
        ))
        report = self.engine.settle(AccountState.model_validate(self.account.model_dump()))
        assert len(report.executed_orders) == 1
