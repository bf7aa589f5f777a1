from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from sqlalchemy import insert, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from trade_journal.db.migrate import build_engine
from trade_journal.db.models import Base, Order, Trade, UserUploadUsage
from trade_journal.ingest.errors import OrderNotFoundError, PersistenceConflictError, TradeNotFoundError
from trade_journal.utils.dates import utcnow


@contextmanager
def session_scope(engine: Engine) -> Iterator[Session]:
    session = Session(engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class Database:
    """Persistence handle owned by the process bootstrap and passed to services."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str | None = None, *, create_schema: bool = True) -> Database:
        engine = build_engine(database_url)
        if create_schema:
            Base.metadata.create_all(bind=engine)
        return cls(engine)

    def unit_of_work(self):
        """One transaction: commits on normal exit, rolls back on any exception."""
        return session_scope(self.engine)

    def session(self) -> Session:
        return Session(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()


def _chunked(rows: list[dict], batch_size: int) -> Iterable[list[dict]]:
    for start in range(0, len(rows), batch_size):
        yield rows[start : start + batch_size]


def _filter_new_rows_by_key(
    session: Session,
    model,
    rows: list[dict],
    key_field: str,
    *,
    owner_field: str = "user_id",
    query_chunk_size: int = 500,
) -> list[dict]:
    if not rows:
        return []

    seen_in_batch: set[tuple[str, str]] = set()
    deduped_batch: list[dict] = []
    grouped_keys: dict[str, set[str]] = {}
    for row in rows:
        token = (str(row[owner_field]), str(row[key_field]))
        if token in seen_in_batch:
            continue
        seen_in_batch.add(token)
        grouped_keys.setdefault(token[0], set()).add(token[1])
        deduped_batch.append(row)

    model_key = getattr(model, key_field)
    model_owner = getattr(model, owner_field)
    existing: set[tuple[str, str]] = set()
    for owner, keys in grouped_keys.items():
        ordered_keys = sorted(keys)
        for start in range(0, len(ordered_keys), query_chunk_size):
            chunk = ordered_keys[start : start + query_chunk_size]
            found = session.scalars(
                select(model_key).where(model_owner == owner, model_key.in_(chunk))
            ).all()
            existing.update((owner, str(key)) for key in found)

    return [
        row
        for row in deduped_batch
        if (str(row[owner_field]), str(row[key_field])) not in existing
    ]


def _bulk_insert(session: Session, model, rows: list[dict], batch_size: int = 2000) -> int:
    if not rows:
        return 0
    inserted = 0
    for chunk in _chunked(rows, batch_size=batch_size):
        session.execute(insert(model), chunk)
        inserted += len(chunk)
    return inserted


def _bulk_insert_ignore_conflicts(
    session: Session,
    model,
    rows: list[dict],
    *,
    conflict_fields: tuple[str, ...],
    key_field: str,
    batch_size: int = 2000,
) -> int:
    """Insert rows, skipping any that collide on ``conflict_fields``; returns rows inserted."""
    if not rows:
        return 0

    # drop known keys first so the conflict clause only covers concurrent writers
    rows = _filter_new_rows_by_key(session, model, rows, key_field=key_field)
    if not rows:
        return 0

    bind = session.get_bind()
    dialect_name = bind.dialect.name if bind is not None else ""
    inserted = 0
    if dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as sqlite_insert

        stmt = sqlite_insert(model).on_conflict_do_nothing(index_elements=list(conflict_fields))
        for chunk in _chunked(rows, batch_size=batch_size):
            before = int(session.scalar(text("SELECT total_changes()")) or 0)
            session.execute(stmt, chunk)
            after = int(session.scalar(text("SELECT total_changes()")) or 0)
            inserted += max(after - before, 0)
        return inserted

    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as postgresql_insert

        for chunk in _chunked(rows, batch_size=batch_size):
            stmt = postgresql_insert(model).values(chunk).on_conflict_do_nothing(
                index_elements=list(conflict_fields)
            )
            result = session.execute(stmt)
            inserted += max(int(result.rowcount or 0), 0)
        return inserted

    try:
        with session.begin_nested():
            return _bulk_insert(session, model, rows, batch_size=batch_size)
    except IntegrityError as exc:
        raise PersistenceConflictError(str(rows[0][key_field])) from exc


def insert_orders(session: Session, rows: list[dict]) -> list[int]:
    """Insert normalized order rows, skipping duplicates; returns ids of newly created orders."""
    if not rows:
        return []
    keys = [row["dedupe_key"] for row in rows]
    user_ids = {row["user_id"] for row in rows}
    if len(user_ids) != 1:
        raise ValueError("insert_orders expects rows for a single user.")
    user_id = next(iter(user_ids))

    before = set(
        session.scalars(
            select(Order.id).where(Order.user_id == user_id, Order.dedupe_key.in_(keys))
        ).all()
    )
    _bulk_insert_ignore_conflicts(
        session,
        Order,
        rows,
        conflict_fields=("user_id", "dedupe_key"),
        key_field="dedupe_key",
    )
    after = session.scalars(
        select(Order.id)
        .where(Order.user_id == user_id, Order.dedupe_key.in_(keys))
        .order_by(Order.id)
    ).all()
    return [order_id for order_id in after if order_id not in before]


def record_upload(session: Session, user_id: str) -> int:
    usage = session.get(UserUploadUsage, user_id)
    if usage is None:
        usage = UserUploadUsage(user_id=user_id, upload_count=0)
        session.add(usage)
    usage.upload_count = int(usage.upload_count or 0) + 1
    usage.last_upload_at = utcnow()
    session.flush()
    return usage.upload_count


def update_order_tags(session: Session, user_id: str, order_id: int, tags: list[str]) -> Order:
    order = session.get(Order, order_id)
    if order is None or order.user_id != user_id:
        raise OrderNotFoundError(order_id)
    order.tags = sorted({str(tag).strip() for tag in tags if str(tag).strip()})
    session.flush()
    return order


def stage_trade_notes(session: Session, user_id: str, trade_id: int, draft: str | None) -> Trade:
    trade = _owned_trade(session, user_id, trade_id)
    trade.notes_changes = draft
    session.flush()
    return trade


def save_trade_notes(session: Session, user_id: str, trade_id: int) -> Trade:
    trade = _owned_trade(session, user_id, trade_id)
    if trade.notes_changes is not None:
        trade.notes = trade.notes_changes
        trade.notes_changes = None
    session.flush()
    return trade


def _owned_trade(session: Session, user_id: str, trade_id: int) -> Trade:
    trade = session.get(Trade, trade_id)
    if trade is None or trade.user_id != user_id:
        raise TradeNotFoundError([trade_id])
    return trade
