"""FIFO round-trip reconstruction of trades from order executions."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from trade_journal.db.models import (
    AllocationRole,
    HoldingPeriod,
    Order,
    OrderSide,
    Trade,
    TradeOrder,
    TradeSide,
    TradeStatus,
)
from trade_journal.utils.logging import EventLogger
from trade_journal.utils.money import round_money, round_price, round_quantity

QTY_EPSILON = 1e-9

SCALP_LIMIT = timedelta(minutes=15)
INTRADAY_LIMIT = timedelta(hours=24)
SWING_LIMIT = timedelta(days=30)
POSITION_LIMIT = timedelta(days=365)


def classify_holding_period(entry_date: datetime, exit_date: datetime) -> HoldingPeriod:
    held = exit_date - entry_date
    if held < SCALP_LIMIT:
        return HoldingPeriod.SCALP
    if held <= INTRADAY_LIMIT:
        return HoldingPeriod.INTRADAY
    if held <= SWING_LIMIT:
        return HoldingPeriod.SWING
    if held <= POSITION_LIMIT:
        return HoldingPeriod.POSITION
    return HoldingPeriod.LONG_TERM


@dataclass(frozen=True)
class Fill:
    order_id: int
    symbol: str
    side: OrderSide
    quantity: float
    price: float
    executed_at: datetime
    commission: float = 0.0
    fees: float = 0.0

    @classmethod
    def from_order(cls, order: Order) -> Fill:
        return cls(
            order_id=order.id,
            symbol=order.symbol,
            side=OrderSide(order.side),
            quantity=float(order.quantity),
            price=float(order.price),
            executed_at=order.executed_at,
            commission=float(order.commission or 0.0),
            fees=float(order.fees or 0.0),
        )

    @property
    def opens(self) -> TradeSide:
        return TradeSide.LONG if self.side == OrderSide.BUY else TradeSide.SHORT

    def share(self, amount: float, quantity: float) -> float:
        return amount * quantity / self.quantity if self.quantity else 0.0


@dataclass(slots=True)
class OpenLot:
    fill: Fill
    quantity_remaining: float


@dataclass(frozen=True)
class Allocation:
    order_id: int
    role: AllocationRole
    quantity: float


@dataclass(frozen=True)
class TradeDraft:
    symbol: str
    side: TradeSide
    status: TradeStatus
    quantity: float
    entry_date: datetime
    entry_price: float
    exit_date: datetime | None
    exit_price: float | None
    pnl: float
    commission: float
    fees: float
    holding_period: HoldingPeriod | None
    allocations: tuple[Allocation, ...]

    @property
    def signature(self) -> tuple:
        return allocation_signature(self.allocations)

    @property
    def opening_order_id(self) -> int:
        return next(a.order_id for a in self.allocations if a.role == AllocationRole.ENTRY)


def allocation_signature(allocations) -> tuple:
    return tuple(
        sorted((a.order_id, AllocationRole(a.role).value, round_quantity(a.quantity)) for a in allocations)
    )


class FIFOTradeBuilder:
    """Replays one symbol's fills in (time, order id) order against a FIFO lot queue.

    Every fill against the open direction closes a trade for the quantity it
    exits. A fill larger than the open position flattens it and opens the
    opposite direction with the remainder.
    """

    def __init__(self, symbol: str) -> None:
        self.symbol = symbol
        self._lots: deque[OpenLot] = deque()
        self._direction: TradeSide | None = None
        self.closed: list[TradeDraft] = []

    def process(self, fills: list[Fill]) -> list[TradeDraft]:
        for fill in sorted(fills, key=lambda item: (item.executed_at, item.order_id)):
            self.process_fill(fill)
        drafts = list(self.closed)
        open_trade = self.open_trade()
        if open_trade is not None:
            drafts.append(open_trade)
        return drafts

    def process_fill(self, fill: Fill) -> None:
        remaining = fill.quantity
        if self._lots and self._direction != fill.opens:
            slices: list[tuple[Fill, float]] = []
            while remaining > QTY_EPSILON and self._lots:
                lot = self._lots[0]
                taken = min(remaining, lot.quantity_remaining)
                slices.append((lot.fill, taken))
                lot.quantity_remaining = round_quantity(lot.quantity_remaining - taken)
                remaining = round_quantity(remaining - taken)
                if lot.quantity_remaining <= QTY_EPSILON:
                    self._lots.popleft()
            self.closed.append(self._close(slices, fill))
            if not self._lots:
                self._direction = None

        if remaining > QTY_EPSILON:
            if not self._lots:
                self._direction = fill.opens
            self._lots.append(OpenLot(fill=fill, quantity_remaining=remaining))

    def _close(self, slices: list[tuple[Fill, float]], exit_fill: Fill) -> TradeDraft:
        direction = self._direction
        quantity = round_quantity(sum(taken for _, taken in slices))
        entry_cost = sum(entry.price * taken for entry, taken in slices)
        entry_price = entry_cost / quantity
        commission = sum(entry.share(entry.commission, taken) for entry, taken in slices)
        commission += exit_fill.share(exit_fill.commission, quantity)
        fees = sum(entry.share(entry.fees, taken) for entry, taken in slices)
        fees += exit_fill.share(exit_fill.fees, quantity)

        sign = 1.0 if direction == TradeSide.LONG else -1.0
        gross = (exit_fill.price - entry_price) * quantity * sign
        entry_date = min(entry.executed_at for entry, _ in slices)
        allocations = [
            Allocation(entry.order_id, AllocationRole.ENTRY, round_quantity(taken))
            for entry, taken in slices
        ]
        allocations.append(Allocation(exit_fill.order_id, AllocationRole.EXIT, quantity))
        return TradeDraft(
            symbol=self.symbol,
            side=direction,
            status=TradeStatus.CLOSED,
            quantity=quantity,
            entry_date=entry_date,
            entry_price=round_price(entry_price),
            exit_date=exit_fill.executed_at,
            exit_price=round_price(exit_fill.price),
            pnl=round_money(gross - commission - fees),
            commission=round_money(commission),
            fees=round_money(fees),
            holding_period=classify_holding_period(entry_date, exit_fill.executed_at),
            allocations=tuple(allocations),
        )

    def open_trade(self) -> TradeDraft | None:
        if not self._lots:
            return None
        quantity = round_quantity(sum(lot.quantity_remaining for lot in self._lots))
        entry_cost = sum(lot.fill.price * lot.quantity_remaining for lot in self._lots)
        commission = sum(lot.fill.share(lot.fill.commission, lot.quantity_remaining) for lot in self._lots)
        fees = sum(lot.fill.share(lot.fill.fees, lot.quantity_remaining) for lot in self._lots)
        return TradeDraft(
            symbol=self.symbol,
            side=self._direction,
            status=TradeStatus.OPEN,
            quantity=quantity,
            entry_date=self._lots[0].fill.executed_at,
            entry_price=round_price(entry_cost / quantity),
            exit_date=None,
            exit_price=None,
            pnl=0.0,
            commission=round_money(commission),
            fees=round_money(fees),
            holding_period=None,
            allocations=tuple(
                Allocation(lot.fill.order_id, AllocationRole.ENTRY, round_quantity(lot.quantity_remaining))
                for lot in self._lots
            ),
        )


@dataclass
class AggregationResult:
    trade_ids: list[int] = field(default_factory=list)
    created: int = 0
    updated: int = 0
    removed: int = 0
    unchanged: int = 0


class TradeAggregator:
    """Rebuilds a user's trades for the given symbols from all of their orders."""

    def __init__(self, events: EventLogger | None = None) -> None:
        self.events = events or EventLogger()

    def build_drafts(self, session: Session, user_id: str, symbol: str) -> list[TradeDraft]:
        orders = session.scalars(
            select(Order)
            .where(Order.user_id == user_id, Order.symbol == symbol)
            .order_by(Order.executed_at, Order.id)
        ).all()
        return FIFOTradeBuilder(symbol).process([Fill.from_order(order) for order in orders])

    def rebuild(self, session: Session, user_id: str, symbols) -> AggregationResult:
        result = AggregationResult()
        for symbol in sorted(set(symbols)):
            drafts = self.build_drafts(session, user_id, symbol)
            self._reconcile(session, user_id, symbol, drafts, result)
        session.flush()
        self.events.emit(
            "aggregate.completed",
            user_id=user_id,
            symbols=len(set(symbols)),
            created=result.created,
            updated=result.updated,
            removed=result.removed,
            unchanged=result.unchanged,
        )
        return result

    def _reconcile(
        self,
        session: Session,
        user_id: str,
        symbol: str,
        drafts: list[TradeDraft],
        result: AggregationResult,
    ) -> None:
        existing = session.scalars(
            select(Trade).where(Trade.user_id == user_id, Trade.symbol == symbol).order_by(Trade.id)
        ).all()
        links: dict[int, list[TradeOrder]] = {trade.id: [] for trade in existing}
        if existing:
            for link in session.scalars(
                select(TradeOrder).where(TradeOrder.trade_id.in_(list(links)))
            ).all():
                links[link.trade_id].append(link)
        linked_ids = {link.order_id for items in links.values() for link in items}
        executed_at: dict[int, datetime] = {}
        if linked_ids:
            executed_at = dict(
                session.execute(
                    select(Order.id, Order.executed_at).where(Order.id.in_(list(linked_ids)))
                ).tuples().all()
            )

        by_signature: dict[tuple, Trade] = {}
        for trade in existing:
            by_signature.setdefault(allocation_signature(links[trade.id]), trade)

        pending: list[TradeDraft] = []
        for draft in drafts:
            trade = by_signature.pop(draft.signature, None)
            if trade is None:
                pending.append(draft)
                continue
            result.unchanged += 1
            result.trade_ids.append(trade.id)

        # a trade whose composition changed keeps its id, notes and tags when it still
        # starts from the same opening order
        leftovers = list(by_signature.values())
        for draft in pending:
            trade = next(
                (
                    candidate
                    for candidate in leftovers
                    if candidate.side == draft.side
                    and _opening_order_id(links[candidate.id], executed_at) == draft.opening_order_id
                ),
                None,
            )
            if trade is None:
                trade = Trade(user_id=user_id, symbol=symbol, tags=[])
                session.add(trade)
                result.created += 1
            else:
                leftovers.remove(trade)
                session.execute(delete(TradeOrder).where(TradeOrder.trade_id == trade.id))
                result.updated += 1
            _apply_draft(trade, draft)
            session.flush()
            session.add_all(
                TradeOrder(
                    trade_id=trade.id,
                    order_id=allocation.order_id,
                    role=allocation.role,
                    quantity=allocation.quantity,
                )
                for allocation in draft.allocations
            )
            result.trade_ids.append(trade.id)

        for trade in leftovers:
            session.execute(delete(TradeOrder).where(TradeOrder.trade_id == trade.id))
            session.delete(trade)
            result.removed += 1


def _opening_order_id(links: list[TradeOrder], executed_at: dict[int, datetime]) -> int | None:
    """First entry order in replay order, matching ``TradeDraft.opening_order_id``."""
    entries = [link.order_id for link in links if AllocationRole(link.role) == AllocationRole.ENTRY]
    if not entries:
        return None
    return min(entries, key=lambda order_id: (executed_at.get(order_id, datetime.min), order_id))


def _apply_draft(trade: Trade, draft: TradeDraft) -> None:
    trade.side = draft.side
    trade.status = draft.status
    trade.quantity = draft.quantity
    trade.entry_date = draft.entry_date
    trade.entry_price = draft.entry_price
    trade.exit_date = draft.exit_date
    trade.exit_price = draft.exit_price
    trade.pnl = draft.pnl
    trade.commission = draft.commission
    trade.fees = draft.fees
    trade.holding_period = draft.holding_period
