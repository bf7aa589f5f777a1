"""CSV ingestion orchestrator.

Upload flow::

    parse -> format lookup -> (stored mapping | proposal held for review)
          -> row validation -> order insert -> trade rebuild -> completed

A header layout seen before is imported straight away with the stored mapping.
Anything new is parked on the import batch as a pending proposal and only
imported once a person approves it through ``finalize_mappings``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from trade_journal.analytics.trade_builder import AggregationResult, TradeAggregator
from trade_journal.config.settings import Settings, get_settings
from trade_journal.db.models import (
    AiIngestFeedbackItem,
    AiIngestToCheck,
    FeedbackIssueType,
    ImportBatch,
    ImportStatus,
    Order,
    ProcessingStatus,
)
from trade_journal.db.repository import Database, insert_orders, record_upload
from trade_journal.ingest.ai_mapper import AiFallbackMapper, ai_mapping_configured
from trade_journal.ingest.broker_formats import GENERIC_BROKER, BrokerFormatRegistry, clean_broker_name
from trade_journal.ingest.csv_import import (
    ParsedCsv,
    decode_upload,
    normalize_order_records,
    parse_csv_text,
    standard_layout_mappings,
)
from trade_journal.ingest.csv_mapping import (
    BROKER_METADATA,
    FieldMapping,
    HeuristicMapper,
    MappingProposal,
    mappings_to_dict,
    missing_required_fields,
    overall_confidence,
    validate_field_mappings,
)
from trade_journal.ingest.errors import (
    AIServiceError,
    BatchNotFoundError,
    BatchStateError,
    IngestError,
    MappingValidationError,
    ParseError,
    UploadRejectedError,
)
from trade_journal.ingest.mapping_state import (
    Finalized,
    PendingReview,
    dump_mapping_state,
    load_mapping_state,
)
from trade_journal.ingest.validators import detect_decimal_separator
from trade_journal.utils.dates import isoformat_or_none, utcnow
from trade_journal.utils.logging import EventLogger

COMPLETED = "completed"
PENDING_REVIEW = "pending_review"
FAILED = "failed"

DECIMAL_FIELDS = ("quantity", "price", "commission", "fees")
SEPARATOR_SAMPLE_ROWS = 50
AI_SAMPLE_ROWS = 5
LOW_AI_CONFIDENCE = 0.5

REPORTED_ERROR_MESSAGE = "User reported error with proposed mappings"
CANCELLED_MESSAGE = "User cancelled import during mapping review"
ABANDONED_MESSAGE = "User abandoned import"


@dataclass
class IngestionResult:
    status: str
    import_batch_id: str | None
    total_records: int = 0
    success_count: int = 0
    error_count: int = 0
    duplicate_count: int = 0
    order_ids: list[int] = field(default_factory=list)
    trade_ids: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    proposed_mappings: dict[str, FieldMapping] | None = None
    proposed_broker: str | None = None
    metadata_fields: list[str] = field(default_factory=list)
    confidence: float | None = None
    suggestions: list[str] = field(default_factory=list)
    broker_csv_format_id: str | None = None
    format_name: str | None = None
    broker_name: str | None = None
    ai_mapping_used: bool = False
    retryable: bool = False

    @property
    def needs_review(self) -> bool:
        return self.status == PENDING_REVIEW

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status,
            "importBatchId": self.import_batch_id,
            "totalRecords": self.total_records,
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "duplicateCount": self.duplicate_count,
            "orderIds": list(self.order_ids),
            "tradeIds": list(self.trade_ids),
            "errors": list(self.errors),
            "aiMappingUsed": self.ai_mapping_used,
            "retryable": self.retryable,
        }
        if self.broker_csv_format_id is not None:
            payload["brokerCsvFormatId"] = self.broker_csv_format_id
            payload["formatName"] = self.format_name
        if self.broker_name is not None:
            payload["brokerName"] = self.broker_name
        if self.proposed_mappings is not None:
            payload["proposedMappings"] = mappings_to_dict(self.proposed_mappings)
            payload["proposedBroker"] = self.proposed_broker
            payload["metadataFields"] = list(self.metadata_fields)
            payload["confidence"] = self.confidence
            payload["suggestions"] = list(self.suggestions)
        return payload


@dataclass(frozen=True)
class CsvPreview:
    headers: list[str]
    total_records: int
    sample_rows: list[dict[str, Any]]
    mappings: dict[str, FieldMapping]
    confidence: float
    missing_required: list[str]
    decimal_separator: str
    valid_rows: int
    errors: list[str]
    broker_name: str | None = None
    broker_csv_format_id: str | None = None
    format_name: str | None = None

    @property
    def format_matched(self) -> bool:
        return self.broker_csv_format_id is not None

    def to_payload(self) -> dict[str, Any]:
        return {
            "headers": list(self.headers),
            "totalRecords": self.total_records,
            "sampleRows": list(self.sample_rows),
            "mappings": mappings_to_dict(self.mappings),
            "confidence": self.confidence,
            "missingRequired": list(self.missing_required),
            "decimalSeparator": self.decimal_separator,
            "validRows": self.valid_rows,
            "errors": list(self.errors),
            "brokerName": self.broker_name,
            "formatMatched": self.format_matched,
            "brokerCsvFormatId": self.broker_csv_format_id,
            "formatName": self.format_name,
        }


@dataclass(frozen=True)
class ImportBatchStatus:
    import_batch_id: str
    filename: str
    status: ImportStatus
    total_records: int
    success_count: int
    error_count: int
    duplicate_count: int
    errors: list[str]
    ai_mapping_used: bool
    broker_csv_format_id: str | None
    retryable: bool
    pending: PendingReview | None
    created_at: Any
    completed_at: Any

    def to_payload(self) -> dict[str, Any]:
        payload = {
            "importBatchId": self.import_batch_id,
            "filename": self.filename,
            "status": self.status.value,
            "totalRecords": self.total_records,
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "duplicateCount": self.duplicate_count,
            "errors": list(self.errors),
            "aiMappingUsed": self.ai_mapping_used,
            "brokerCsvFormatId": self.broker_csv_format_id,
            "retryable": self.retryable,
            "createdAt": isoformat_or_none(self.created_at),
            "completedAt": isoformat_or_none(self.completed_at),
        }
        if self.pending is not None:
            payload["mappingReview"] = dump_mapping_state(self.pending)
        return payload


@dataclass(frozen=True)
class MappingCorrection:
    header: str
    proposed: FieldMapping
    corrected_field: str


def _decimal_separator(parsed: ParsedCsv, mappings: dict[str, FieldMapping]) -> str:
    headers = [header for header, mapping in mappings.items() if mapping.field in DECIMAL_FIELDS]
    if not headers:
        return "."
    sample = parsed.frame.head(SEPARATOR_SAMPLE_ROWS)
    values = [value for header in headers for value in sample[header].tolist()]
    return detect_decimal_separator(values)


def _upload_size(content: str | bytes) -> int:
    return len(content.encode("utf-8")) if isinstance(content, str) else len(content)


class CsvIngestionService:
    def __init__(
        self,
        database: Database,
        *,
        registry: BrokerFormatRegistry | None = None,
        heuristic_mapper: HeuristicMapper | None = None,
        ai_mapper: AiFallbackMapper | None = None,
        aggregator: TradeAggregator | None = None,
        events: EventLogger | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.database = database
        self.settings = settings or get_settings()
        self.events = events or EventLogger()
        self.registry = registry or BrokerFormatRegistry(
            match_threshold=self.settings.format_match_threshold, events=self.events
        )
        self.heuristic_mapper = heuristic_mapper or HeuristicMapper(
            min_similarity=self.settings.fuzzy_header_threshold
        )
        self.ai_mapper = ai_mapper
        self.aggregator = aggregator or TradeAggregator(events=self.events)

    @classmethod
    def from_settings(
        cls,
        database: Database,
        settings: Settings | None = None,
        *,
        events: EventLogger | None = None,
    ) -> CsvIngestionService:
        settings = settings or get_settings()
        ai_mapper = AiFallbackMapper.from_settings(settings) if ai_mapping_configured(settings) else None
        return cls(database, ai_mapper=ai_mapper, events=events, settings=settings)

    # upload checks

    def check_upload(self, content: str | bytes, filename: str) -> int:
        if not str(filename or "").lower().endswith(".csv"):
            raise UploadRejectedError("Only .csv files can be imported.")
        size = _upload_size(content)
        if size > self.settings.max_upload_bytes:
            limit_mb = self.settings.max_upload_bytes // (1024 * 1024)
            raise UploadRejectedError(
                f"File is too large ({size} bytes). The limit is {limit_mb} MB.", too_large=True
            )
        if size > self.settings.large_upload_bytes:
            self.events.emit("ingest.large_upload", level=logging.WARNING, filename=filename, size=size)
        return size

    # preview

    def validate_csv(self, content: str | bytes, filename: str) -> CsvPreview:
        """Parse and map an upload without writing anything."""
        self.check_upload(content, filename)
        parsed = parse_csv_text(content)
        sample_rows = parsed.sample_rows(self.settings.sample_row_count)
        standard = standard_layout_mappings(parsed.headers)

        with self.database.unit_of_work() as session:
            match = self.registry.match_format(session, parsed.headers)
            if match is not None:
                mappings = match.mappings
                confidence = float(match.broker_csv_format.confidence)
                separator = match.broker_csv_format.decimal_separator or "."
                broker_name = match.broker_name
                format_id = match.broker_csv_format.id
                format_name = match.broker_csv_format.format_name
            elif standard is not None:
                mappings = standard
                confidence = 1.0
                separator = _decimal_separator(parsed, mappings)
                broker_name = self.registry.identify_broker(session, filename) or GENERIC_BROKER
                format_id = None
                format_name = None
            else:
                proposal = self.heuristic_mapper.map_headers(
                    parsed.headers, parsed.sample_rows(AI_SAMPLE_ROWS)
                )
                mappings = proposal.mappings
                confidence = proposal.confidence
                separator = _decimal_separator(parsed, mappings)
                broker_name = self.registry.identify_broker(session, filename)
                format_id = None
                format_name = None

        missing = missing_required_fields(m.field for m in mappings.values())
        valid_rows = 0
        errors: list[str] = []
        if not missing:
            rows, errors = normalize_order_records(
                parsed.frame, mappings, user_id="", decimal_separator=separator
            )
            valid_rows = len(rows)
        return CsvPreview(
            headers=parsed.headers,
            total_records=parsed.total_records,
            sample_rows=sample_rows,
            mappings=mappings,
            confidence=confidence,
            missing_required=missing,
            decimal_separator=separator,
            valid_rows=valid_rows,
            errors=errors,
            broker_name=broker_name,
            broker_csv_format_id=format_id,
            format_name=format_name,
        )

    # upload

    def ingest_csv(
        self,
        content: str | bytes,
        filename: str,
        user_id: str,
        account_tags: list[str] | None = None,
    ) -> IngestionResult:
        file_size = self.check_upload(content, filename)
        tags = [str(tag).strip() for tag in account_tags or [] if str(tag).strip()]
        try:
            text = decode_upload(content)
            parsed = parse_csv_text(text)
        except ParseError as exc:
            self._store_batch(
                user_id=user_id,
                filename=filename,
                file_size=file_size,
                status=ImportStatus.FAILED,
                errors=[exc.message],
                account_tags=tags,
            )
            self.events.emit("ingest.failed", stage="parse", user_id=user_id, error=exc.message)
            raise
        self.events.emit(
            "ingest.parsed",
            user_id=user_id,
            filename=filename,
            rows=parsed.total_records,
            columns=len(parsed.headers),
        )

        with self.database.unit_of_work() as session:
            match = self.registry.match_format(session, parsed.headers)
            if match is not None:
                matched = {
                    "format_id": match.broker_csv_format.id,
                    "format_name": match.broker_csv_format.format_name,
                    "separator": match.broker_csv_format.decimal_separator or ".",
                    "broker_name": match.broker_name,
                    "mappings": match.mappings,
                }
                self.events.emit(
                    "ingest.format_matched",
                    format_id=matched["format_id"],
                    exact=match.exact,
                    similarity=match.similarity,
                )
            else:
                matched = self._standard_layout(session, parsed, filename)

        if matched is None:
            return self._hold_for_review(text, parsed, filename, file_size, user_id, tags)

        try:
            with self.database.unit_of_work() as session:
                batch = ImportBatch(
                    user_id=user_id,
                    filename=filename,
                    file_size=file_size,
                    total_records=parsed.total_records,
                    status=ImportStatus.PROCESSING,
                    errors=[],
                    account_tags=tags,
                    ai_mapping_used=False,
                    broker_csv_format_id=matched["format_id"],
                )
                session.add(batch)
                session.flush()
                result = self._apply_mappings(
                    session,
                    batch,
                    parsed,
                    matched["mappings"],
                    decimal_separator=matched["separator"],
                    format_id=matched["format_id"],
                )
        except (IngestError, SQLAlchemyError) as exc:
            message = exc.message if isinstance(exc, IngestError) else f"Import failed: {exc}"
            self._store_batch(
                user_id=user_id,
                filename=filename,
                file_size=file_size,
                total_records=parsed.total_records,
                status=ImportStatus.FAILED,
                errors=[message],
                account_tags=tags,
            )
            self.events.emit("ingest.failed", stage="persist", user_id=user_id, error=message)
            raise

        result.format_name = matched["format_name"]
        result.broker_name = matched["broker_name"]
        return result

    def _standard_layout(
        self, session: Session, parsed: ParsedCsv, filename: str
    ) -> dict[str, Any] | None:
        mappings = standard_layout_mappings(parsed.headers)
        if mappings is None:
            return None
        self.events.emit("ingest.standard_layout", filename=filename, columns=len(parsed.headers))
        return {
            "format_id": None,
            "format_name": None,
            "separator": _decimal_separator(parsed, mappings),
            "broker_name": self.registry.identify_broker(session, filename) or GENERIC_BROKER,
            "mappings": mappings,
        }

    def _propose(self, parsed: ParsedCsv, filename: str) -> tuple[MappingProposal, str, bool]:
        """Heuristic mapping, escalated to the AI mapper when it is weak. Raises AIServiceError."""
        proposal = self.heuristic_mapper.map_headers(parsed.headers, parsed.sample_rows(AI_SAMPLE_ROWS))
        with self.database.unit_of_work() as session:
            broker_guess = self.registry.identify_broker(session, filename) or GENERIC_BROKER

        threshold = self.settings.mapping_confidence_threshold
        if not proposal.needs_escalation(threshold) or self.ai_mapper is None:
            return proposal, broker_guess, False

        self.events.emit(
            "ingest.ai_escalation",
            confidence=proposal.confidence,
            missing=",".join(proposal.missing_required) or "-",
        )
        ai_proposal = self.ai_mapper.propose(
            parsed.headers, parsed.sample_rows(AI_SAMPLE_ROWS), proposal, filename=filename
        )
        return ai_proposal, broker_guess, True

    def _hold_for_review(
        self,
        text: str,
        parsed: ParsedCsv,
        filename: str,
        file_size: int,
        user_id: str,
        account_tags: list[str],
    ) -> IngestionResult:
        try:
            proposal, broker_guess, ai_used = self._propose(parsed, filename)
        except AIServiceError as exc:
            batch_id = self._store_batch(
                user_id=user_id,
                filename=filename,
                file_size=file_size,
                total_records=parsed.total_records,
                status=ImportStatus.FAILED,
                errors=[exc.message],
                account_tags=account_tags,
                temp_file_content=text,
                ai_mapping_used=True,
            )
            self.events.emit(
                "ingest.failed", level=logging.WARNING, stage="ai_mapping", import_batch_id=batch_id
            )
            return IngestionResult(
                status=FAILED,
                import_batch_id=batch_id,
                total_records=parsed.total_records,
                errors=[exc.message],
                ai_mapping_used=True,
                retryable=True,
            )

        state = PendingReview.from_proposal(
            proposal,
            headers=parsed.headers,
            broker_name=broker_guess,
            decimal_separator=_decimal_separator(parsed, proposal.mappings),
        )
        batch_id = self._store_batch(
            user_id=user_id,
            filename=filename,
            file_size=file_size,
            total_records=parsed.total_records,
            status=ImportStatus.PENDING,
            errors=[],
            account_tags=account_tags,
            temp_file_content=text,
            column_mappings=dump_mapping_state(state),
            ai_mapping_used=ai_used,
        )
        self.events.emit(
            "ingest.pending_review",
            import_batch_id=batch_id,
            source=state.source,
            confidence=state.confidence,
        )
        return self._pending_result(batch_id, parsed.total_records, state, ai_used)

    @staticmethod
    def _pending_result(
        batch_id: str, total_records: int, state: PendingReview, ai_used: bool
    ) -> IngestionResult:
        return IngestionResult(
            status=PENDING_REVIEW,
            import_batch_id=batch_id,
            total_records=total_records,
            proposed_mappings=dict(state.proposed_mappings),
            proposed_broker=state.proposed_broker,
            metadata_fields=state.metadata_fields,
            confidence=state.confidence,
            suggestions=list(state.suggestions),
            ai_mapping_used=ai_used,
        )

    def _store_batch(self, **values: Any) -> str:
        with self.database.unit_of_work() as session:
            values.setdefault("total_records", 0)
            batch = ImportBatch(
                success_count=0,
                error_count=0,
                duplicate_count=0,
                **values,
            )
            if batch.status == ImportStatus.FAILED and batch.temp_file_content is None:
                batch.completed_at = utcnow()
            session.add(batch)
            session.flush()
            return batch.id

    def _apply_mappings(
        self,
        session: Session,
        batch: ImportBatch,
        parsed: ParsedCsv,
        mappings: dict[str, FieldMapping],
        *,
        decimal_separator: str,
        format_id: str | None,
    ) -> IngestionResult:
        rows, issues = normalize_order_records(
            parsed.frame,
            mappings,
            user_id=batch.user_id,
            import_batch_id=batch.id,
            decimal_separator=decimal_separator,
            account_tags=list(batch.account_tags or []),
        )
        order_ids = insert_orders(session, rows)
        duplicates = len(rows) - len(order_ids)

        aggregation = AggregationResult()
        if order_ids:
            symbols = session.scalars(
                select(Order.symbol).where(Order.id.in_(order_ids)).distinct()
            ).all()
            aggregation = self.aggregator.rebuild(session, batch.user_id, symbols)

        batch.status = ImportStatus.COMPLETED if rows else ImportStatus.FAILED
        batch.success_count = len(order_ids)
        batch.error_count = len(issues)
        batch.duplicate_count = duplicates
        batch.errors = issues
        batch.temp_file_content = None
        batch.column_mappings = dump_mapping_state(
            Finalized(mappings=mappings, broker_csv_format_id=format_id, decimal_separator=decimal_separator)
        )
        batch.completed_at = utcnow()
        session.flush()

        if format_id is not None:
            self._best_effort(
                session,
                "format.usage_update_failed",
                lambda: self.registry.update_format_usage(
                    session, format_id, success=len(issues) < parsed.total_records
                ),
            )
        self._best_effort(
            session, "ingest.upload_quota_failed", lambda: record_upload(session, batch.user_id)
        )

        status = COMPLETED if rows else FAILED
        self.events.emit(
            "ingest.completed" if rows else "ingest.failed",
            import_batch_id=batch.id,
            inserted=len(order_ids),
            duplicates=duplicates,
            errors=len(issues),
            trades=len(aggregation.trade_ids),
        )
        return IngestionResult(
            status=status,
            import_batch_id=batch.id,
            total_records=parsed.total_records,
            success_count=len(order_ids),
            error_count=len(issues),
            duplicate_count=duplicates,
            order_ids=list(order_ids),
            trade_ids=list(aggregation.trade_ids),
            errors=list(issues),
            broker_csv_format_id=format_id,
            ai_mapping_used=bool(batch.ai_mapping_used),
        )

    def _best_effort(self, session: Session, event: str, action) -> None:
        try:
            with session.begin_nested():
                action()
        except SQLAlchemyError as exc:
            self.events.emit(event, level=logging.WARNING, error=str(exc))

    # review

    def _owned_batch(self, session: Session, import_batch_id: str, user_id: str) -> ImportBatch:
        batch = session.get(ImportBatch, import_batch_id)
        if batch is None or batch.user_id != user_id:
            raise BatchNotFoundError(import_batch_id)
        return batch

    def finalize_mappings(
        self,
        import_batch_id: str,
        user_id: str,
        corrected_mappings: dict[str, Any] | None = None,
        user_approved: bool = True,
        report_error: bool = False,
        broker_name: str | None = None,
    ) -> IngestionResult:
        """Apply (or reject) the proposal held on a pending batch.

        Corrections are ``header -> field`` overrides. An invalid final mapping raises
        ``MappingValidationError`` and leaves the batch pending so the reviewer can fix it.
        """
        with self.database.unit_of_work() as session:
            batch = self._owned_batch(session, import_batch_id, user_id)
            state = load_mapping_state(batch.column_mappings)
            if (
                batch.status != ImportStatus.PENDING
                or not isinstance(state, PendingReview)
                or batch.temp_file_content is None
            ):
                raise BatchStateError(
                    f"Import batch {import_batch_id} is {batch.status.value}; "
                    "only batches awaiting mapping review can be finalized."
                )

            if report_error or not user_approved:
                return self._reject(session, batch, state, report_error=report_error)

            final, corrections = self._merge_corrections(state, corrected_mappings or {})
            problems = validate_field_mappings(final, list(state.headers))
            if problems:
                raise MappingValidationError("The reviewed column mappings are invalid.", problems=problems)

            parsed = parse_csv_text(batch.temp_file_content)
            broker = self.registry.find_or_create_broker(
                session, clean_broker_name(broker_name) or state.proposed_broker or GENERIC_BROKER
            )
            record = self.registry.register_format(
                session,
                broker=broker,
                headers=parsed.headers,
                field_mappings=final,
                sample_rows=parsed.sample_rows(self.settings.sample_row_count),
                confidence=overall_confidence(final),
                created_by=user_id,
                description=f"Created from {batch.filename}",
                decimal_separator=state.decimal_separator,
            )
            batch.broker_csv_format_id = record.id
            result = self._apply_mappings(
                session,
                batch,
                parsed,
                final,
                decimal_separator=state.decimal_separator,
                format_id=record.id,
            )
            if batch.ai_mapping_used:
                self._record_ai_feedback(session, batch, record.id, state, corrections, parsed, result)
            result.format_name = record.format_name
            result.broker_name = broker.name
            return result

    def _merge_corrections(
        self, state: PendingReview, corrected: dict[str, Any]
    ) -> tuple[dict[str, FieldMapping], list[MappingCorrection]]:
        unknown = [header for header in corrected if header not in state.proposed_mappings]
        if unknown:
            raise MappingValidationError(
                "Corrections reference columns that are not in the file.",
                problems=[f"Unknown column '{header}'." for header in unknown],
            )
        final: dict[str, FieldMapping] = {}
        corrections: list[MappingCorrection] = []
        for header in state.headers:
            proposed = state.proposed_mappings.get(header) or FieldMapping(BROKER_METADATA, 0.0)
            override = corrected.get(header)
            if isinstance(override, FieldMapping):
                override = override.field
            elif isinstance(override, dict):
                override = override.get("field")
            target = str(override).strip() if override else ""
            if not target or target == proposed.field:
                final[header] = proposed
                continue
            final[header] = FieldMapping(
                target, 1.0, user_corrected=True, reasoning="corrected during review"
            )
            corrections.append(MappingCorrection(header, proposed, target))
        return final, corrections

    def _reject(
        self, session: Session, batch: ImportBatch, state: PendingReview, *, report_error: bool
    ) -> IngestionResult:
        message = REPORTED_ERROR_MESSAGE if report_error else CANCELLED_MESSAGE
        batch.status = ImportStatus.FAILED
        batch.errors = [message]
        batch.temp_file_content = None
        batch.completed_at = utcnow()
        if report_error:
            session.add(
                AiIngestToCheck(
                    user_id=batch.user_id,
                    import_batch_id=batch.id,
                    processing_status=ProcessingStatus.FAILED,
                    order_ids=[],
                    ai_confidence=state.confidence,
                    user_indicated_error=True,
                )
            )
        session.flush()
        self.events.emit(
            "ingest.rejected", import_batch_id=batch.id, reported_error=report_error
        )
        return IngestionResult(
            status=FAILED,
            import_batch_id=batch.id,
            total_records=int(batch.total_records or 0),
            errors=[message],
            ai_mapping_used=bool(batch.ai_mapping_used),
        )

    def _record_ai_feedback(
        self,
        session: Session,
        batch: ImportBatch,
        format_id: str,
        state: PendingReview,
        corrections: list[MappingCorrection],
        parsed: ParsedCsv,
        result: IngestionResult,
    ) -> None:
        check = AiIngestToCheck(
            user_id=batch.user_id,
            import_batch_id=batch.id,
            broker_csv_format_id=format_id,
            processing_status=ProcessingStatus.COMPLETED,
            order_ids=list(result.order_ids),
            ai_confidence=state.confidence,
            user_indicated_error=False,
            processed_at=utcnow(),
        )
        session.add(check)
        session.flush()

        first_row = parsed.sample_rows(1)[0] if parsed.total_records else {}
        for correction in corrections:
            if correction.corrected_field == BROKER_METADATA:
                issue = FeedbackIssueType.SHOULD_BE_METADATA
            elif correction.proposed.confidence < LOW_AI_CONFIDENCE:
                issue = FeedbackIssueType.LOW_CONFIDENCE
            else:
                issue = FeedbackIssueType.WRONG_FIELD
            session.add(
                AiIngestFeedbackItem(
                    ai_ingest_check_id=check.id,
                    csv_header=correction.header,
                    ai_mapping=correction.proposed.field,
                    suggested_mapping=correction.corrected_field,
                    issue_type=issue,
                    confidence=correction.proposed.confidence,
                    is_correct=False,
                    original_value=str(first_row.get(correction.header, "")) or None,
                    comment=f"User corrected: {correction.proposed.field} -> {correction.corrected_field}",
                )
            )
        session.flush()
        self.events.emit("ingest.ai_feedback", import_batch_id=batch.id, corrections=len(corrections))

    # recovery

    def retry_mapping(self, import_batch_id: str, user_id: str) -> IngestionResult:
        """Re-run detection for a batch whose AI mapping call failed; the kept file is reused."""
        with self.database.unit_of_work() as session:
            batch = self._owned_batch(session, import_batch_id, user_id)
            if batch.status != ImportStatus.FAILED or batch.temp_file_content is None:
                raise BatchStateError(
                    f"Import batch {import_batch_id} has no retained file to retry; upload it again."
                )
            text = batch.temp_file_content
            filename = batch.filename

        parsed = parse_csv_text(text)
        try:
            proposal, broker_guess, ai_used = self._propose(parsed, filename)
        except AIServiceError as exc:
            with self.database.unit_of_work() as session:
                batch = self._owned_batch(session, import_batch_id, user_id)
                batch.errors = [exc.message]
            self.events.emit(
                "ingest.failed", level=logging.WARNING, stage="ai_mapping", import_batch_id=import_batch_id
            )
            return IngestionResult(
                status=FAILED,
                import_batch_id=import_batch_id,
                total_records=parsed.total_records,
                errors=[exc.message],
                ai_mapping_used=True,
                retryable=True,
            )

        state = PendingReview.from_proposal(
            proposal,
            headers=parsed.headers,
            broker_name=broker_guess,
            decimal_separator=_decimal_separator(parsed, proposal.mappings),
        )
        with self.database.unit_of_work() as session:
            batch = self._owned_batch(session, import_batch_id, user_id)
            batch.status = ImportStatus.PENDING
            batch.errors = []
            batch.column_mappings = dump_mapping_state(state)
            batch.ai_mapping_used = ai_used
        self.events.emit("ingest.pending_review", import_batch_id=import_batch_id, source=state.source)
        return self._pending_result(import_batch_id, parsed.total_records, state, ai_used)

    def abandon_batch(self, import_batch_id: str, user_id: str) -> None:
        """Give up on a pending or retryable batch and drop its retained file."""
        with self.database.unit_of_work() as session:
            batch = self._owned_batch(session, import_batch_id, user_id)
            if batch.status not in {ImportStatus.PENDING, ImportStatus.FAILED}:
                raise BatchStateError(
                    f"Import batch {import_batch_id} is {batch.status.value} and cannot be abandoned."
                )
            if batch.status == ImportStatus.PENDING:
                batch.errors = [*list(batch.errors or []), ABANDONED_MESSAGE]
            batch.status = ImportStatus.FAILED
            batch.temp_file_content = None
            batch.completed_at = batch.completed_at or utcnow()
        self.events.emit("ingest.abandoned", import_batch_id=import_batch_id)

    def get_import_status(self, import_batch_id: str, user_id: str) -> ImportBatchStatus:
        with self.database.unit_of_work() as session:
            batch = self._owned_batch(session, import_batch_id, user_id)
            state = load_mapping_state(batch.column_mappings)
            return ImportBatchStatus(
                import_batch_id=batch.id,
                filename=batch.filename,
                status=ImportStatus(batch.status),
                total_records=int(batch.total_records or 0),
                success_count=int(batch.success_count or 0),
                error_count=int(batch.error_count or 0),
                duplicate_count=int(batch.duplicate_count or 0),
                errors=list(batch.errors or []),
                ai_mapping_used=bool(batch.ai_mapping_used),
                broker_csv_format_id=batch.broker_csv_format_id,
                retryable=batch.status == ImportStatus.FAILED and batch.temp_file_content is not None,
                pending=state if isinstance(state, PendingReview) else None,
                created_at=batch.created_at,
                completed_at=batch.completed_at,
            )
