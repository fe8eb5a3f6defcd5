"""
Order & settlement engine.

All monetary mutations of an account ledger happen here. Every operation
returns an ``OrderResult``; rejected orders leave the ledger untouched.
"""
import logging
import math
import uuid
from typing import Optional, Protocol

from schemas.account import (
    AccountState,
    ExecutedOrderNotice,
    LiquidationNotice,
    OrderResult,
    PendingOrder,
    PortfolioValuation,
    Position,
    PositionKey,
    PositionValuation,
    RejectReason,
    SettlementReport,
    TransactionRecord,
    TransactionType,
)
from schemas.market import Instrument
from services.market.params import MarketParams

logger = logging.getLogger(__name__)


class MarketView(Protocol):
    """What settlement needs to know about the market it trades against."""
    instruments: dict[str, Instrument]
    tick: int
    day: int

    @property
    def is_market_closed(self) -> bool: ...


def calculate_fee(gross: float, rate: float) -> int:
    """Flat percentage fee rounded half-up to the nearest currency unit."""
    return math.floor(gross * rate + 0.5)


def liquidation_price_for(entry_price: float, leverage: int) -> int:
    return math.floor(entry_price * (1 - 1 / leverage) + 0.5)


def leveraged_return(entry_price: float, exit_price: float, leverage: int) -> float:
    if not entry_price:
        return 0.0
    return (exit_price - entry_price) / entry_price * leverage


def leveraged_value(position: Position, price: float, quantity: int | None = None) -> float:
    """Evaluated amount of a leveraged holding, never below zero."""
    qty = position.quantity if quantity is None else quantity
    margin = position.entry_price * qty
    return max(0.0, margin * (1 + leveraged_return(position.entry_price, price, position.leverage)))


class SettlementEngine:
    def __init__(self, params: MarketParams, market: MarketView):
        self.params = params
        self.market = market

    # ── Validation ───────────────────────────────────────────────────

    def _check_tradable(self, stock_id: str, quantity: int) -> tuple[Optional[Instrument], Optional[OrderResult]]:
        if quantity <= 0:
            return None, OrderResult.reject(RejectReason.INVALID_QUANTITY)
        if self.market.is_market_closed:
            return None, OrderResult.reject(RejectReason.MARKET_CLOSED, "The market is closed")
        instrument = self.market.instruments.get(stock_id)
        if instrument is None:
            return None, OrderResult.reject(RejectReason.UNKNOWN_INSTRUMENT, f"Unknown instrument {stock_id}")
        if instrument.is_delisted:
            return None, OrderResult.reject(RejectReason.INSTRUMENT_DELISTED, f"{instrument.name} is delisted")
        if instrument.trading_halted:
            return None, OrderResult.reject(RejectReason.TRADING_HALTED, f"Trading in {instrument.name} is halted")
        return instrument, None

    def _record(
        self,
        account: AccountState,
        kind: TransactionType,
        instrument: Instrument,
        quantity: int,
        price: int,
        total: int,
        fee: int,
        leverage: int = 1,
    ) -> None:
        name = instrument.name if leverage == 1 else f"{instrument.name} ({leverage}x)"
        record = TransactionRecord(
            id=f"tx-{uuid.uuid4().hex[:12]}",
            tick=self.market.tick,
            day=self.market.day,
            type=kind,
            stock_id=instrument.id,
            stock_name=name,
            quantity=quantity,
            price=price,
            total=total,
            fee=fee,
            leverage=leverage,
        )
        account.transactions.insert(0, record)
        del account.transactions[self.params.max_transactions:]

    # ── Market orders ────────────────────────────────────────────────

    def buy(self, account: AccountState, stock_id: str, quantity: int, price: int | None = None) -> OrderResult:
        instrument, rejection = self._check_tradable(stock_id, quantity)
        if rejection:
            return rejection
        price = instrument.current_price if price is None else price
        if price <= 0:
            return OrderResult.reject(RejectReason.INVALID_PRICE)

        gross = price * quantity
        fee = calculate_fee(gross, self.params.transaction_fee_rate)
        total_cost = gross + fee
        if account.cash < total_cost:
            return OrderResult.reject(
                RejectReason.INSUFFICIENT_CASH,
                f"Need {total_cost:,} but only {account.cash:,} available",
            )

        key = PositionKey(stock_id, 1)
        holding = account.find_position(key)
        if holding:
            new_quantity = holding.quantity + quantity
            holding.average_price = (holding.quantity * holding.average_price + gross) / new_quantity
            holding.entry_price = holding.average_price
            holding.quantity = new_quantity
        else:
            account.positions.append(Position(
                stock_id=stock_id,
                quantity=quantity,
                average_price=price,
                leverage=1,
                entry_price=price,
            ))

        account.cash -= total_cost
        self._record(account, TransactionType.BUY, instrument, quantity, price, gross, fee)
        return OrderResult(success=True, price=price, quantity=quantity, fee=fee, total=total_cost)

    def sell(
        self,
        account: AccountState,
        stock_id: str,
        quantity: int,
        price: int | None = None,
        leverage: int = 1,
    ) -> OrderResult:
        instrument, rejection = self._check_tradable(stock_id, quantity)
        if rejection:
            return rejection
        price = instrument.current_price if price is None else price
        if price <= 0:
            return OrderResult.reject(RejectReason.INVALID_PRICE)

        holding = account.find_position(PositionKey(stock_id, leverage))
        if holding is None or holding.quantity < quantity:
            held = holding.quantity if holding else 0
            return OrderResult.reject(
                RejectReason.INSUFFICIENT_HOLDINGS,
                f"Holding {held} of {instrument.name} ({leverage}x), cannot sell {quantity}",
            )

        if holding.is_leveraged:
            margin = holding.entry_price * quantity
            evaluated = leveraged_value(holding, price, quantity)
            fee = calculate_fee(evaluated, self.params.transaction_fee_rate)
            proceeds = evaluated - fee
            profit = proceeds - margin
        else:
            gross = price * quantity
            fee = calculate_fee(gross, self.params.transaction_fee_rate)
            proceeds = gross - fee
            profit = proceeds - holding.average_price * quantity

        proceeds = math.floor(proceeds + 0.5)
        if holding.quantity == quantity:
            account.positions.remove(holding)
        else:
            holding.quantity -= quantity

        account.cash += proceeds
        account.realized_pnl += profit
        self._record(account, TransactionType.SELL, instrument, quantity, price, proceeds, fee, holding.leverage)
        return OrderResult(
            success=True, price=price, quantity=quantity, fee=fee, total=proceeds, realized_pnl=profit,
        )

    def buy_leveraged(
        self,
        account: AccountState,
        stock_id: str,
        quantity: int,
        leverage: int,
        price: int | None = None,
    ) -> OrderResult:
        """Margin is qty*price plus fee regardless of leverage."""
        if leverage < 1 or leverage not in self.params.allowed_leverage:
            return OrderResult.reject(
                RejectReason.INVALID_LEVERAGE,
                f"Leverage must be one of {self.params.allowed_leverage}",
            )
        if leverage == 1:
            return self.buy(account, stock_id, quantity, price)

        instrument, rejection = self._check_tradable(stock_id, quantity)
        if rejection:
            return rejection
        price = instrument.current_price if price is None else price
        if price <= 0:
            return OrderResult.reject(RejectReason.INVALID_PRICE)

        margin = price * quantity
        fee = calculate_fee(margin, self.params.transaction_fee_rate)
        total_cost = margin + fee
        if account.cash < total_cost:
            return OrderResult.reject(
                RejectReason.INSUFFICIENT_CASH,
                f"Need {total_cost:,} but only {account.cash:,} available",
            )

        holding = account.find_position(PositionKey(stock_id, leverage))
        if holding:
            new_quantity = holding.quantity + quantity
            average = (holding.quantity * holding.average_price + margin) / new_quantity
            holding.quantity = new_quantity
            holding.average_price = average
            holding.entry_price = average
            holding.liquidation_price = liquidation_price_for(average, leverage)
        else:
            account.positions.append(Position(
                stock_id=stock_id,
                quantity=quantity,
                average_price=price,
                leverage=leverage,
                entry_price=price,
                liquidation_price=liquidation_price_for(price, leverage),
            ))

        account.cash -= total_cost
        self._record(account, TransactionType.BUY, instrument, quantity, price, margin, fee, leverage)
        return OrderResult(success=True, price=price, quantity=quantity, fee=fee, total=total_cost)

    def sell_all(self, account: AccountState) -> OrderResult:
        """Sell every position on a tradable instrument at the current price."""
        if self.market.is_market_closed:
            return OrderResult.reject(RejectReason.MARKET_CLOSED, "The market is closed")
        results = []
        for position in list(account.positions):
            instrument = self.market.instruments.get(position.stock_id)
            if instrument is None or not instrument.is_tradable:
                continue
            results.append(self.sell(
                account, position.stock_id, position.quantity, instrument.current_price, position.leverage,
            ))
        filled = [r for r in results if r.success]
        return OrderResult(
            success=bool(filled) or not results,
            quantity=sum(r.quantity for r in filled),
            fee=sum(r.fee for r in filled),
            total=sum(r.total for r in filled),
            realized_pnl=sum(r.realized_pnl or 0 for r in filled),
            results=results,
        )

    # ── Limit orders ─────────────────────────────────────────────────

    def place_limit_order(
        self,
        account: AccountState,
        stock_id: str,
        side: str,
        quantity: int,
        target_price: int,
    ) -> OrderResult:
        if side not in ("buy", "sell"):
            return OrderResult.reject(RejectReason.INVALID_QUANTITY, f"Unknown side {side!r}")
        if target_price <= 0:
            return OrderResult.reject(RejectReason.INVALID_PRICE)
        instrument, rejection = self._check_tradable(stock_id, quantity)
        if rejection:
            return rejection

        order = PendingOrder(
            id=f"order-{uuid.uuid4().hex[:12]}",
            stock_id=stock_id,
            side=side,
            quantity=quantity,
            target_price=target_price,
            created_tick=self.market.tick,
            created_day=self.market.day,
        )
        account.pending_orders.append(order)
        return OrderResult(success=True, order_id=order.id, quantity=quantity, price=target_price)

    def cancel_limit_order(self, account: AccountState, order_id: str) -> OrderResult:
        for order in account.pending_orders:
            if order.id == order_id:
                account.pending_orders.remove(order)
                return OrderResult(success=True, order_id=order_id, quantity=order.quantity)
        return OrderResult.reject(RejectReason.ORDER_NOT_FOUND, f"No pending order {order_id}")

    def execute_pending_orders(self, account: AccountState, report: SettlementReport) -> None:
        """Trigger limit orders against current prices, in submission order."""
        remaining = []
        for order in account.pending_orders:
            instrument = self.market.instruments.get(order.stock_id)
            if instrument is None:
                remaining.append(order)
                continue
            if not instrument.is_tradable:
                report.dropped_order_ids.append(order.id)
                continue

            price = instrument.current_price
            if order.side == "buy" and price <= order.target_price:
                result = self.buy(account, order.stock_id, order.quantity, price)
            elif order.side == "sell" and price >= order.target_price:
                result = self.sell(account, order.stock_id, order.quantity, price)
            else:
                remaining.append(order)
                continue

            report.executed_orders.append(ExecutedOrderNotice(
                order_id=order.id,
                instrument_id=instrument.id,
                instrument_name=instrument.name,
                side=order.side,
                quantity=order.quantity,
                price=price,
                filled=result.success,
                reason=result.reason.value if result.reason else None,
            ))
        account.pending_orders = remaining

    # ── Liquidation ──────────────────────────────────────────────────

    def liquidate_positions(self, account: AccountState, report: SettlementReport) -> None:
        """Remove leveraged positions whose price crossed the liquidation price."""
        surviving = []
        for position in account.positions:
            instrument = self.market.instruments.get(position.stock_id)
            if instrument is None or not position.is_leveraged:
                surviving.append(position)
                continue

            liquidation_price = position.liquidation_price
            if liquidation_price is None:
                liquidation_price = liquidation_price_for(position.entry_price, position.leverage)
            if instrument.current_price > liquidation_price:
                surviving.append(position)
                continue

            loss = position.margin
            account.realized_pnl -= loss
            report.liquidations.append(LiquidationNotice(
                instrument_id=instrument.id,
                instrument_name=instrument.name,
                leverage=position.leverage,
                quantity=position.quantity,
                entry_price=position.entry_price,
                liquidation_price=liquidation_price,
                current_price=instrument.current_price,
                loss_amount=loss,
            ))
            logger.info(
                "Liquidated %s %dx position of %d on account %s, lost %.0f",
                instrument.id, position.leverage, position.quantity, account.id, loss,
            )
        account.positions = surviving

    def settle(self, account: AccountState) -> SettlementReport:
        """Run pending-order execution and liquidation checks against current prices."""
        report = SettlementReport()
        if self.market.is_market_closed:
            return report
        self.execute_pending_orders(account, report)
        self.liquidate_positions(account, report)
        return report

    # ── Valuation ────────────────────────────────────────────────────

    def portfolio_valuation(self, account: AccountState) -> PortfolioValuation:
        rows = []
        for position in account.positions:
            instrument = self.market.instruments.get(position.stock_id)
            price = instrument.current_price if instrument else int(position.entry_price)
            if position.is_leveraged:
                value = leveraged_value(position, price)
            else:
                value = price * position.quantity
            cost = position.margin
            pnl = value - cost
            rows.append(PositionValuation(
                stock_id=position.stock_id,
                stock_name=instrument.name if instrument else position.stock_id,
                leverage=position.leverage,
                quantity=position.quantity,
                average_price=position.average_price,
                current_price=price,
                evaluated_value=value,
                unrealized_pnl=pnl,
                unrealized_pnl_percent=(pnl / cost * 100) if cost else 0.0,
                liquidation_price=position.liquidation_price,
            ))
        holdings_value = sum(r.evaluated_value for r in rows)
        return PortfolioValuation(
            cash=account.cash,
            holdings_value=holdings_value,
            total_value=account.cash + holdings_value,
            unrealized_pnl=sum(r.unrealized_pnl for r in rows),
            realized_pnl=account.realized_pnl,
            positions=rows,
        )
