from __future__ import annotations

import json
from datetime import datetime
from types import SimpleNamespace

import pytest
from sqlalchemy.orm import Session

from trade_journal.config.settings import Settings
from trade_journal.db.models import Order, OrderSide
from trade_journal.db.repository import Database
from trade_journal.ingest.pipeline import CsvIngestionService
from trade_journal.utils.logging import EventLogger


class FakeResponses:
    def __init__(self, payload=None, error: Exception | None = None) -> None:
        self.payload = payload
        self.error = error
        self.calls: list[dict] = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        text = self.payload if isinstance(self.payload, str) else json.dumps(self.payload)
        return SimpleNamespace(output_text=text, output=[])


class FakeOpenAIClient:
    def __init__(self, payload=None, error: Exception | None = None) -> None:
        self.responses = FakeResponses(payload, error)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        app_env="test",
        database_url="sqlite:///:memory:",
        openai_model="test-model",
        enable_ai_mapping=True,
        ai_timeout_seconds=5.0,
        mapping_confidence_threshold=0.7,
        fuzzy_header_threshold=0.6,
        format_match_threshold=0.85,
        sample_row_count=3,
        max_upload_bytes=1_000_000,
        large_upload_bytes=500_000,
    )


@pytest.fixture
def database(settings: Settings):
    db = Database.from_url(settings.database_url)
    yield db
    db.dispose()


@pytest.fixture
def db_session(database: Database):
    with database.session() as session:
        yield session


@pytest.fixture
def events() -> EventLogger:
    return EventLogger("trade_journal.tests")


@pytest.fixture
def make_service(database: Database, settings: Settings, events: EventLogger):
    def _make(**overrides) -> CsvIngestionService:
        service_settings = overrides.pop("settings", settings)
        return CsvIngestionService(database, events=events, settings=service_settings, **overrides)

    return _make


def add_order(
    session: Session,
    *,
    symbol: str,
    side: str,
    quantity: float,
    price: float,
    executed_at: datetime,
    user_id: str = "user-1",
    commission: float = 0.0,
    fees: float = 0.0,
) -> Order:
    order = Order(
        user_id=user_id,
        dedupe_key=f"TEST:{symbol}:{side}:{executed_at.isoformat()}:{quantity}:{price}",
        symbol=symbol,
        side=OrderSide(side),
        quantity=quantity,
        price=price,
        executed_at=executed_at,
        commission=commission,
        fees=fees,
        currency="USD",
        broker_metadata={},
        tags=[],
    )
    session.add(order)
    session.flush()
    return order


@pytest.fixture
def order_factory():
    return add_order


@pytest.fixture
def fake_openai():
    return FakeOpenAIClient
