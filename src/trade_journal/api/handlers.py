"""Framework-free endpoint handlers.

Each handler takes already-decoded request values and returns an ``ApiResponse``;
a web framework only has to copy ``status_code``, ``headers`` and ``body`` onto its
own response type. Error-to-status translation happens here and nowhere else.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from trade_journal.analytics.trade_deletion import delete_trades
from trade_journal.db.repository import Database
from trade_journal.ingest.csv_import import csv_template
from trade_journal.ingest.errors import (
    AIServiceError,
    BatchNotFoundError,
    BatchStateError,
    DeletionConflictError,
    FormatConflictError,
    IngestError,
    MappingValidationError,
    OrderNotFoundError,
    ParseError,
    PersistenceConflictError,
    RowValidationError,
    TradeNotFoundError,
    UploadRejectedError,
)
from trade_journal.ingest.pipeline import COMPLETED, PENDING_REVIEW, CsvIngestionService
from trade_journal.utils.logging import EventLogger, get_logger

logger = get_logger(__name__)

TEMPLATE_FILENAME = "trade_journal_template.csv"

ERROR_STATUS: list[tuple[type[IngestError], int]] = [
    (ParseError, 400),
    (MappingValidationError, 400),
    (RowValidationError, 400),
    (BatchNotFoundError, 404),
    (TradeNotFoundError, 404),
    (OrderNotFoundError, 404),
    (DeletionConflictError, 409),
    (BatchStateError, 409),
    (FormatConflictError, 409),
    (PersistenceConflictError, 409),
    (AIServiceError, 502),
]


@dataclass(frozen=True)
class ApiResponse:
    status_code: int
    body: Any
    headers: dict[str, str] = field(default_factory=lambda: {"Content-Type": "application/json"})

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


def status_for(exc: IngestError) -> int:
    if isinstance(exc, UploadRejectedError):
        return 413 if exc.too_large else 400
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 400


def error_response(exc: IngestError) -> ApiResponse:
    body: dict[str, Any] = {"error": exc.message, "retryable": exc.retryable}
    if isinstance(exc, MappingValidationError) and exc.problems:
        body["problems"] = list(exc.problems)
    if isinstance(exc, ParseError) and exc.line_number is not None:
        body["lineNumber"] = exc.line_number
    if isinstance(exc, DeletionConflictError):
        body.update(exc.report.to_payload())
    status = status_for(exc)
    logger.info("Request failed with %s: %s", status, exc.message)
    return ApiResponse(status, body)


def _bad_request(message: str) -> ApiResponse:
    return ApiResponse(400, {"error": message, "retryable": False})


TRUE_FLAGS = {"true", "1", "yes"}
FALSE_FLAGS = {"false", "0", "no"}


def _flag(payload: dict[str, Any], key: str, default: bool) -> bool:
    value = payload.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower() if isinstance(value, (str, int)) else ""
    if text in TRUE_FLAGS:
        return True
    if text in FALSE_FLAGS:
        return False
    raise ValueError(f"{key} must be true or false.")


def _account_tags(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [tag.strip() for tag in value.split(",") if tag.strip()]
    return [str(tag).strip() for tag in value if str(tag).strip()]


def handle_upload(
    service: CsvIngestionService,
    *,
    user_id: str,
    filename: str,
    content: str | bytes,
    account_tags: Any = None,
) -> ApiResponse:
    """200 when imported, 202 when the mapping waits for review."""
    try:
        result = service.ingest_csv(content, filename, user_id, _account_tags(account_tags))
    except IngestError as exc:
        return error_response(exc)

    if result.status == COMPLETED:
        status = 200
    elif result.status == PENDING_REVIEW:
        status = 202
    else:
        status = 502 if result.retryable else 422
    return ApiResponse(status, result.to_payload())


def handle_validate(service: CsvIngestionService, *, filename: str, content: str | bytes) -> ApiResponse:
    try:
        preview = service.validate_csv(content, filename)
    except IngestError as exc:
        return error_response(exc)
    return ApiResponse(200, preview.to_payload())


def handle_finalize_mappings(
    service: CsvIngestionService, *, user_id: str, payload: dict[str, Any]
) -> ApiResponse:
    import_batch_id = str(payload.get("importBatchId") or "").strip()
    if not import_batch_id:
        return _bad_request("importBatchId is required.")
    corrected = payload.get("correctedMappings") or {}
    if not isinstance(corrected, dict):
        return _bad_request("correctedMappings must be an object of header -> field.")
    broker_name = payload.get("brokerName")
    if broker_name is not None and not isinstance(broker_name, str):
        return _bad_request("brokerName must be a string.")
    try:
        user_approved = _flag(payload, "userApproved", True)
        report_error = _flag(payload, "reportError", False)
    except ValueError as exc:
        return _bad_request(str(exc))

    try:
        result = service.finalize_mappings(
            import_batch_id,
            user_id,
            corrected_mappings=corrected,
            user_approved=user_approved,
            report_error=report_error,
            broker_name=broker_name,
        )
    except IngestError as exc:
        return error_response(exc)
    return ApiResponse(200, result.to_payload())


def handle_import_status(
    service: CsvIngestionService, *, user_id: str, import_batch_id: str
) -> ApiResponse:
    try:
        status = service.get_import_status(import_batch_id, user_id)
    except IngestError as exc:
        return error_response(exc)
    return ApiResponse(200, status.to_payload())


def handle_delete_trades(
    database: Database,
    *,
    user_id: str,
    payload: dict[str, Any],
    events: EventLogger | None = None,
) -> ApiResponse:
    """409 with the shared-order report when other trades still depend on the orders."""
    trade_ids = payload.get("tradeIds")
    if not isinstance(trade_ids, list):
        return _bad_request("tradeIds must be a list of trade ids.")
    try:
        with database.unit_of_work() as session:
            result = delete_trades(session, user_id, trade_ids, events=events)
    except IngestError as exc:
        return error_response(exc)
    except ValueError as exc:
        return _bad_request(str(exc))
    return ApiResponse(200, result.to_payload())


def handle_csv_template() -> ApiResponse:
    return ApiResponse(
        200,
        csv_template(),
        headers={
            "Content-Type": "text/csv; charset=utf-8",
            "Content-Disposition": f'attachment; filename="{TEMPLATE_FILENAME}"',
        },
    )
