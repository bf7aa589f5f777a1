from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SqlEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uuid() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    pass


class ImportStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class TradeSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class TradeStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class HoldingPeriod(str, Enum):
    SCALP = "SCALP"
    INTRADAY = "INTRADAY"
    SWING = "SWING"
    POSITION = "POSITION"
    LONG_TERM = "LONG_TERM"


class AllocationRole(str, Enum):
    ENTRY = "ENTRY"
    EXIT = "EXIT"


class ProcessingStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    RETRY_NEEDED = "RETRY_NEEDED"


class AdminReviewStatus(str, Enum):
    PENDING = "PENDING"
    IN_REVIEW = "IN_REVIEW"
    APPROVED = "APPROVED"
    CORRECTED = "CORRECTED"
    DISMISSED = "DISMISSED"
    ESCALATED = "ESCALATED"


class FeedbackIssueType(str, Enum):
    WRONG_FIELD = "WRONG_FIELD"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    SHOULD_BE_METADATA = "SHOULD_BE_METADATA"


class Broker(Base):
    __tablename__ = "brokers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)


class BrokerAlias(Base):
    __tablename__ = "broker_aliases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    broker_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("brokers.id"), nullable=False, index=True
    )
    # stored lowercased so lookups are case-insensitive on every backend
    alias: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)


class BrokerCsvFormat(Base):
    __tablename__ = "broker_csv_formats"
    __table_args__ = (
        UniqueConstraint("broker_id", "format_name", name="uq_broker_formats_broker_name"),
        Index("ix_broker_formats_fingerprint", "header_fingerprint"),
        Index("ix_broker_formats_usage", "usage_count"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    broker_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("brokers.id"), nullable=False, index=True
    )
    format_name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    header_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    headers: Mapped[list] = mapped_column(JSON, nullable=False)
    sample_data: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    field_mappings: Mapped[dict] = mapped_column(JSON, nullable=False)
    decimal_separator: Mapped[str] = mapped_column(String(1), nullable=False, default=".")
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class ImportBatch(Base):
    __tablename__ = "import_batches"
    __table_args__ = (Index("ix_import_batches_user_created", "user_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    filename: Mapped[str] = mapped_column(String(256), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[ImportStatus] = mapped_column(
        SqlEnum(ImportStatus, native_enum=False), nullable=False, index=True
    )
    column_mappings: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    temp_file_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    errors: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duplicate_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    account_tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    ai_mapping_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    broker_csv_format_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("broker_csv_formats.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("user_id", "dedupe_key", name="uq_orders_user_dedupe"),
        Index("ix_orders_user_symbol_exec", "user_id", "symbol", "executed_at", "id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    import_batch_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("import_batches.id"), nullable=True, index=True
    )
    dedupe_key: Mapped[str] = mapped_column(String(96), nullable=False)
    broker_order_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    execution_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    side: Mapped[OrderSide] = mapped_column(SqlEnum(OrderSide, native_enum=False), nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    executed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    placed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    commission: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    fees: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    order_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    time_in_force: Mapped[str | None] = mapped_column(String(16), nullable=True)
    account: Mapped[str | None] = mapped_column(String(64), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD")
    broker_metadata: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)


class Trade(Base):
    __tablename__ = "trades"
    __table_args__ = (Index("ix_trades_user_symbol_entry", "user_id", "symbol", "entry_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    side: Mapped[TradeSide] = mapped_column(SqlEnum(TradeSide, native_enum=False), nullable=False)
    status: Mapped[TradeStatus] = mapped_column(
        SqlEnum(TradeStatus, native_enum=False), nullable=False
    )
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    entry_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    exit_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    entry_price: Mapped[float] = mapped_column(Float, nullable=False)
    exit_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    pnl: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    commission: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    fees: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    holding_period: Mapped[HoldingPeriod | None] = mapped_column(
        SqlEnum(HoldingPeriod, native_enum=False), nullable=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes_changes: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )


class TradeOrder(Base):
    __tablename__ = "trade_orders"
    __table_args__ = (
        UniqueConstraint("trade_id", "order_id", "role", name="uq_trade_orders_link"),
        Index("ix_trade_orders_order", "order_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trade_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("trades.id"), nullable=False, index=True
    )
    order_id: Mapped[int] = mapped_column(Integer, ForeignKey("orders.id"), nullable=False)
    role: Mapped[AllocationRole] = mapped_column(
        SqlEnum(AllocationRole, native_enum=False), nullable=False
    )
    quantity: Mapped[float] = mapped_column(Float, nullable=False)


class AiIngestToCheck(Base):
    __tablename__ = "ai_ingest_checks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    import_batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("import_batches.id"), nullable=False, unique=True
    )
    broker_csv_format_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("broker_csv_formats.id"), nullable=True
    )
    processing_status: Mapped[ProcessingStatus] = mapped_column(
        SqlEnum(ProcessingStatus, native_enum=False), nullable=False
    )
    order_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    ai_confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    user_indicated_error: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    admin_review_status: Mapped[AdminReviewStatus] = mapped_column(
        SqlEnum(AdminReviewStatus, native_enum=False),
        nullable=False,
        default=AdminReviewStatus.PENDING,
    )
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class AiIngestFeedbackItem(Base):
    __tablename__ = "ai_ingest_feedback_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ai_ingest_check_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("ai_ingest_checks.id"), nullable=False, index=True
    )
    csv_header: Mapped[str] = mapped_column(String(256), nullable=False)
    ai_mapping: Mapped[str] = mapped_column(String(64), nullable=False)
    suggested_mapping: Mapped[str] = mapped_column(String(64), nullable=False)
    issue_type: Mapped[FeedbackIssueType] = mapped_column(
        SqlEnum(FeedbackIssueType, native_enum=False), nullable=False
    )
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    is_correct: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    original_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)


class UserUploadUsage(Base):
    __tablename__ = "user_upload_usage"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    upload_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_upload_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
