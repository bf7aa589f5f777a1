"""Trade deletion guarded by shared-order conflict detection.

A partially closed position leaves one entry order referenced by several trades.
Deleting any of those trades deletes the order too, so the request is refused
unless every trade that shares one of its orders is selected as well.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from trade_journal.db.models import Order, Trade, TradeOrder
from trade_journal.ingest.errors import DeletionConflictError, TradeNotFoundError
from trade_journal.utils.logging import EventLogger


@dataclass(frozen=True)
class SharedOrderDetail:
    order_id: int
    symbol: str
    selected_trade_ids: list[int]
    conflicting_trade_ids: list[int]

    def to_payload(self) -> dict[str, Any]:
        return {
            "orderId": self.order_id,
            "symbol": self.symbol,
            "selectedTradeIds": list(self.selected_trade_ids),
            "conflictingTradeIds": list(self.conflicting_trade_ids),
        }


@dataclass(frozen=True)
class DeletionConflictReport:
    selected_trade_ids: list[int]
    shared_order_ids: list[int] = field(default_factory=list)
    conflicting_trade_ids: list[int] = field(default_factory=list)
    conflict_details: list[SharedOrderDetail] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicting_trade_ids)

    @property
    def shared_order_count(self) -> int:
        return len(self.shared_order_ids)

    @property
    def total_conflicting_trades(self) -> int:
        return len(self.conflicting_trade_ids)

    @property
    def all_affected_trade_ids(self) -> list[int]:
        return sorted({*self.selected_trade_ids, *self.conflicting_trade_ids})

    def to_payload(self) -> dict[str, Any]:
        return {
            "selectedTradeIds": list(self.selected_trade_ids),
            "sharedOrderIds": list(self.shared_order_ids),
            "sharedOrderCount": self.shared_order_count,
            "conflictingTradeIds": list(self.conflicting_trade_ids),
            "totalConflictingTrades": self.total_conflicting_trades,
            "allAffectedTradeIds": self.all_affected_trade_ids,
            "conflictDetails": [detail.to_payload() for detail in self.conflict_details],
        }


@dataclass(frozen=True)
class DeletionResult:
    deleted_trade_ids: list[int]
    deleted_order_ids: list[int]

    def to_payload(self) -> dict[str, Any]:
        return {
            "deletedTradeIds": list(self.deleted_trade_ids),
            "deletedOrderIds": list(self.deleted_order_ids),
            "deletedTrades": len(self.deleted_trade_ids),
            "deletedOrders": len(self.deleted_order_ids),
        }


def _requested_ids(trade_ids) -> list[int]:
    try:
        requested = sorted({int(trade_id) for trade_id in trade_ids})
    except (TypeError, ValueError) as exc:
        raise ValueError("Trade ids must be integers.") from exc
    if not requested:
        raise ValueError("Select at least one trade to delete.")
    return requested


def find_deletion_conflicts(session: Session, user_id: str, trade_ids) -> DeletionConflictReport:
    requested = _requested_ids(trade_ids)
    found = set(
        session.scalars(
            select(Trade.id).where(Trade.user_id == user_id, Trade.id.in_(requested))
        ).all()
    )
    missing = [trade_id for trade_id in requested if trade_id not in found]
    if missing:
        raise TradeNotFoundError(missing)

    order_ids = select(TradeOrder.order_id).where(TradeOrder.trade_id.in_(requested))
    links = session.execute(
        select(TradeOrder.order_id, TradeOrder.trade_id, Order.symbol)
        .join(Order, Order.id == TradeOrder.order_id)
        .where(TradeOrder.order_id.in_(order_ids))
    ).all()

    selected_by_order: dict[int, set[int]] = {}
    others_by_order: dict[int, set[int]] = {}
    symbols: dict[int, str] = {}
    for order_id, trade_id, symbol in links:
        symbols[order_id] = symbol
        target = selected_by_order if trade_id in found else others_by_order
        target.setdefault(order_id, set()).add(trade_id)

    shared = sorted(others_by_order)
    details = [
        SharedOrderDetail(
            order_id=order_id,
            symbol=symbols[order_id],
            selected_trade_ids=sorted(selected_by_order.get(order_id, ())),
            conflicting_trade_ids=sorted(others_by_order[order_id]),
        )
        for order_id in shared
    ]
    conflicting = sorted({trade_id for ids in others_by_order.values() for trade_id in ids})
    return DeletionConflictReport(
        selected_trade_ids=requested,
        shared_order_ids=shared,
        conflicting_trade_ids=conflicting,
        conflict_details=details,
    )


def delete_trades(
    session: Session,
    user_id: str,
    trade_ids,
    *,
    events: EventLogger | None = None,
) -> DeletionResult:
    """Delete the trades and every order they reference, or raise ``DeletionConflictError``."""
    report = find_deletion_conflicts(session, user_id, trade_ids)
    if report.has_conflicts:
        if events is not None:
            events.emit(
                "trades.delete_conflict",
                user_id=user_id,
                shared_orders=report.shared_order_count,
                conflicting_trades=report.total_conflicting_trades,
            )
        raise DeletionConflictError(report)

    requested = report.selected_trade_ids
    order_ids = sorted(
        set(
            session.scalars(
                select(TradeOrder.order_id).where(TradeOrder.trade_id.in_(requested))
            ).all()
        )
    )
    session.execute(delete(TradeOrder).where(TradeOrder.trade_id.in_(requested)))
    session.execute(delete(Trade).where(Trade.user_id == user_id, Trade.id.in_(requested)))
    if order_ids:
        session.execute(delete(Order).where(Order.user_id == user_id, Order.id.in_(order_ids)))
    session.flush()

    if events is not None:
        events.emit(
            "trades.deleted", user_id=user_id, trades=len(requested), orders=len(order_ids)
        )
    return DeletionResult(deleted_trade_ids=requested, deleted_order_ids=order_ids)
