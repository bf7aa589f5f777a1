"""Registry of brokers and the CSV layouts each one exports.

A format is keyed by its header layout. Once a human has approved a mapping for a
layout, later uploads with the same headers reuse it without re-running detection.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from trade_journal.db.models import Broker, BrokerAlias, BrokerCsvFormat
from trade_journal.ingest.csv_mapping import (
    BROKER_METADATA,
    FieldMapping,
    header_fingerprint,
    header_set_similarity,
    mappings_from_dict,
    mappings_to_dict,
    missing_required_fields,
    normalize_header,
    validate_field_mappings,
)
from trade_journal.ingest.errors import FormatConflictError, MappingValidationError
from trade_journal.utils.dates import utcnow
from trade_journal.utils.logging import EventLogger

GENERIC_BROKER = "Generic Broker"
FORMAT_NAME_RE = re.compile(r"Format\s+(\d+)\s*$", re.IGNORECASE)

KNOWN_BROKERS: dict[str, tuple[str, ...]] = {
    "Charles Schwab": ("schwab", "charles schwab"),
    "Interactive Brokers": ("interactive brokers", "ibkr"),
    "TD Ameritrade": ("td ameritrade", "ameritrade", "tda"),
    "thinkorswim": ("thinkorswim", "tos"),
    "Webull": ("webull",),
    "Robinhood": ("robinhood",),
    "Fidelity": ("fidelity",),
    "E*TRADE": ("etrade", "e trade", "e*trade"),
    "TradeStation": ("tradestation",),
    "Tastytrade": ("tastytrade", "tastyworks"),
    "Lightspeed": ("lightspeed",),
    "DAS Trader": ("das trader",),
}


def clean_broker_name(name: str) -> str:
    return " ".join(str(name or "").split())


def _words(text: str) -> str:
    return " " + " ".join(re.split(r"[^a-z0-9*]+", text.lower())) + " "


@dataclass(frozen=True)
class FormatMatch:
    broker_csv_format: BrokerCsvFormat
    broker_name: str
    similarity: float
    exact: bool
    mappings: dict[str, FieldMapping]


@dataclass(frozen=True)
class FormatStats:
    format_id: str
    format_name: str
    broker_name: str
    usage_count: int
    success_count: int
    success_rate: float
    last_used_at: datetime | None


class BrokerFormatRegistry:
    def __init__(
        self,
        *,
        match_threshold: float = 0.85,
        max_name_retries: int = 5,
        events: EventLogger | None = None,
    ) -> None:
        self.match_threshold = match_threshold
        self.max_name_retries = max_name_retries
        self.events = events or EventLogger()

    # brokers

    def _lookup_broker(self, session: Session, name: str) -> Broker | None:
        lowered = name.lower()
        broker = session.scalars(select(Broker).where(func.lower(Broker.name) == lowered)).first()
        if broker is not None:
            return broker
        return session.scalars(
            select(Broker)
            .join(BrokerAlias, BrokerAlias.broker_id == Broker.id)
            .where(BrokerAlias.alias == lowered)
        ).first()

    def find_or_create_broker(self, session: Session, name: str) -> Broker:
        clean = clean_broker_name(name)
        if not clean:
            raise ValueError("Broker name is required.")
        existing = self._lookup_broker(session, clean)
        if existing is not None:
            return existing

        try:
            with session.begin_nested():
                broker = Broker(name=clean)
                session.add(broker)
                session.flush()
                session.add(BrokerAlias(broker_id=broker.id, alias=clean.lower()))
                session.flush()
        except IntegrityError:
            # another writer created it between our lookup and insert
            existing = self._lookup_broker(session, clean)
            if existing is None:
                raise
            return existing

        self.events.emit("broker.created", broker_id=broker.id, name=clean)
        return broker

    def add_broker_alias(self, session: Session, broker_id: str, alias: str) -> bool:
        lowered = clean_broker_name(alias).lower()
        if not lowered:
            raise ValueError("Alias is required.")
        owner = session.scalar(select(BrokerAlias.broker_id).where(BrokerAlias.alias == lowered))
        if owner == broker_id:
            return False
        if owner is not None:
            raise ValueError(f"Alias '{alias}' already belongs to another broker.")
        try:
            with session.begin_nested():
                session.add(BrokerAlias(broker_id=broker_id, alias=lowered))
                session.flush()
        except IntegrityError:
            return False
        return True

    def broker_aliases(self, session: Session, broker_id: str) -> list[str]:
        return list(
            session.scalars(
                select(BrokerAlias.alias)
                .where(BrokerAlias.broker_id == broker_id)
                .order_by(BrokerAlias.alias)
            ).all()
        )

    def get_all_brokers(self, session: Session) -> list[Broker]:
        return list(session.scalars(select(Broker).order_by(Broker.name)).all())

    def search_brokers(self, session: Session, query: str, limit: int = 20) -> list[Broker]:
        text = clean_broker_name(query).lower()
        if not text:
            return self.get_all_brokers(session)[:limit]
        pattern = f"%{text}%"
        ids = select(BrokerAlias.broker_id).where(BrokerAlias.alias.like(pattern))
        return list(
            session.scalars(
                select(Broker)
                .where(or_(func.lower(Broker.name).like(pattern), Broker.id.in_(ids)))
                .order_by(Broker.name)
                .limit(limit)
            ).all()
        )

    def identify_broker(self, session: Session, filename: str | None) -> str | None:
        """Guess the broker from an upload's filename using stored and well-known aliases."""
        haystack = _words(filename or "")
        if not haystack.strip():
            return None
        rows = session.execute(
            select(BrokerAlias.alias, Broker.name).join(Broker, Broker.id == BrokerAlias.broker_id)
        ).all()
        candidates: list[tuple[str, str]] = [(alias, name) for alias, name in rows]
        for name, aliases in KNOWN_BROKERS.items():
            candidates.extend((alias, name) for alias in aliases)
        # longest alias first so "td ameritrade" beats "tda"
        for alias, name in sorted(candidates, key=lambda item: (-len(item[0]), item[0])):
            if _words(alias) in haystack:
                return name
        return None

    # formats

    def generate_format_name(self, session: Session, broker_id: str, broker_name: str | None = None) -> str:
        names = session.scalars(
            select(BrokerCsvFormat.format_name).where(BrokerCsvFormat.broker_id == broker_id)
        ).all()
        highest = 0
        for name in names:
            match = FORMAT_NAME_RE.search(name)
            if match:
                highest = max(highest, int(match.group(1)))
        return f"Format {highest + 1}"

    def create_format(
        self,
        session: Session,
        *,
        broker_id: str,
        format_name: str,
        headers: list[str],
        field_mappings: dict[str, FieldMapping],
        sample_rows: list[dict[str, Any]] | None = None,
        confidence: float = 0.0,
        created_by: str | None = None,
        description: str | None = None,
        decimal_separator: str = ".",
    ) -> BrokerCsvFormat:
        problems = validate_field_mappings(field_mappings, headers)
        if problems:
            raise MappingValidationError("Format mapping is invalid.", problems=problems)

        record = BrokerCsvFormat(
            broker_id=broker_id,
            format_name=format_name,
            description=description,
            header_fingerprint=header_fingerprint(headers),
            headers=list(headers),
            sample_data=list(sample_rows or []),
            field_mappings=mappings_to_dict(field_mappings),
            decimal_separator=decimal_separator,
            confidence=round(confidence, 4),
            usage_count=0,
            success_count=0,
            created_by=created_by,
        )
        try:
            with session.begin_nested():
                session.add(record)
                session.flush()
        except IntegrityError as exc:
            raise FormatConflictError(broker_id, format_name) from exc
        self.events.emit(
            "format.created", format_id=record.id, broker_id=broker_id, format_name=format_name
        )
        return record

    def register_format(self, session: Session, *, broker: Broker, **format_data: Any) -> BrokerCsvFormat:
        """Create a format under the next free "Format N" name, retrying on name collisions."""
        for _ in range(self.max_name_retries):
            name = self.generate_format_name(session, broker.id, broker.name)
            try:
                return self.create_format(
                    session, broker_id=broker.id, format_name=name, **format_data
                )
            except FormatConflictError:
                self.events.emit("format.name_collision", broker_id=broker.id, format_name=name)
                continue
        raise FormatConflictError(broker.id, name)

    def _translate(self, record: BrokerCsvFormat, headers: list[str]) -> dict[str, FieldMapping]:
        stored = {
            normalize_header(header): mapping
            for header, mapping in mappings_from_dict(record.field_mappings).items()
        }
        return {
            header: stored.get(
                normalize_header(header),
                FieldMapping(BROKER_METADATA, 0.1, reasoning="not part of the stored format"),
            )
            for header in headers
        }

    def match_format(self, session: Session, headers: list[str]) -> FormatMatch | None:
        fingerprint = header_fingerprint(headers)
        exact = session.scalars(
            select(BrokerCsvFormat)
            .where(BrokerCsvFormat.header_fingerprint == fingerprint)
            .order_by(BrokerCsvFormat.usage_count.desc(), BrokerCsvFormat.created_at)
        ).first()
        if exact is not None:
            return FormatMatch(
                broker_csv_format=exact,
                broker_name=self._broker_name(session, exact.broker_id),
                similarity=1.0,
                exact=True,
                mappings=self._translate(exact, headers),
            )

        scored: list[tuple[float, int, BrokerCsvFormat]] = []
        for record in session.scalars(select(BrokerCsvFormat)).all():
            similarity = header_set_similarity(record.headers, headers)
            if similarity >= self.match_threshold:
                scored.append((similarity, int(record.usage_count or 0), record))
        scored.sort(key=lambda item: (-item[0], -item[1], item[2].created_at, item[2].id))

        for similarity, _, record in scored:
            mappings = self._translate(record, headers)
            present = [m.field for m in mappings.values() if not m.is_metadata]
            if missing_required_fields(present):
                continue
            return FormatMatch(
                broker_csv_format=record,
                broker_name=self._broker_name(session, record.broker_id),
                similarity=round(similarity, 4),
                exact=False,
                mappings=mappings,
            )
        return None

    def _broker_name(self, session: Session, broker_id: str) -> str:
        broker = session.get(Broker, broker_id)
        return broker.name if broker is not None else GENERIC_BROKER

    def update_format_usage(self, session: Session, format_id: str, success: bool) -> None:
        session.execute(
            update(BrokerCsvFormat)
            .where(BrokerCsvFormat.id == format_id)
            .values(
                usage_count=BrokerCsvFormat.usage_count + 1,
                success_count=BrokerCsvFormat.success_count + (1 if success else 0),
                last_used_at=utcnow(),
            )
        )

    def get_popular_formats(self, session: Session, limit: int = 10) -> list[BrokerCsvFormat]:
        return list(
            session.scalars(
                select(BrokerCsvFormat)
                .order_by(BrokerCsvFormat.usage_count.desc(), BrokerCsvFormat.format_name)
                .limit(limit)
            ).all()
        )

    def get_format_stats(self, session: Session, format_id: str) -> FormatStats | None:
        record = session.get(BrokerCsvFormat, format_id)
        if record is None:
            return None
        usage = int(record.usage_count or 0)
        successes = int(record.success_count or 0)
        return FormatStats(
            format_id=record.id,
            format_name=record.format_name,
            broker_name=self._broker_name(session, record.broker_id),
            usage_count=usage,
            success_count=successes,
            success_rate=round(successes / usage, 4) if usage else 0.0,
            last_used_at=record.last_used_at,
        )
