"""Error taxonomy for the ingestion, aggregation and deletion paths.

Every error carries a user-facing ``message`` and whether retrying the same
request can succeed. HTTP status translation lives in ``trade_journal.api``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from trade_journal.analytics.trade_deletion import DeletionConflictReport


class IngestError(Exception):
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ParseError(IngestError):
    """The CSV text is structurally malformed; nothing from it is accepted."""

    def __init__(self, message: str, *, line_number: int | None = None) -> None:
        if line_number is not None:
            message = f"Line {line_number}: {message}"
        super().__init__(message)
        self.line_number = line_number


class UploadRejectedError(IngestError):
    def __init__(self, message: str, *, too_large: bool = False) -> None:
        super().__init__(message)
        self.too_large = too_large


class MappingValidationError(IngestError):
    def __init__(self, message: str, *, problems: list[str] | None = None) -> None:
        super().__init__(message)
        self.problems = list(problems or [])


class RowValidationError(IngestError):
    def __init__(self, row_number: int, reason: str) -> None:
        super().__init__(f"Row {row_number}: {reason}")
        self.row_number = row_number
        self.reason = reason


class PersistenceConflictError(IngestError):
    """A concurrent writer stored the same order between the key check and the insert."""

    retryable = True

    def __init__(self, dedupe_key: str) -> None:
        super().__init__(f"Order already imported ({dedupe_key}).")
        self.dedupe_key = dedupe_key


class FormatConflictError(IngestError):
    retryable = True

    def __init__(self, broker_id: str, format_name: str) -> None:
        super().__init__(f"Format '{format_name}' already exists for broker {broker_id}.")
        self.broker_id = broker_id
        self.format_name = format_name


class AIServiceError(IngestError):
    retryable = True


class BatchNotFoundError(IngestError):
    def __init__(self, import_batch_id: str) -> None:
        super().__init__(f"Import batch {import_batch_id} not found.")
        self.import_batch_id = import_batch_id


class BatchStateError(IngestError):
    pass


class TradeNotFoundError(IngestError):
    def __init__(self, trade_ids: list[int]) -> None:
        joined = ", ".join(str(trade_id) for trade_id in trade_ids)
        super().__init__(f"Trades not found: {joined}.")
        self.trade_ids = list(trade_ids)


class OrderNotFoundError(IngestError):
    def __init__(self, order_id: int) -> None:
        super().__init__(f"Order {order_id} not found.")
        self.order_id = order_id


class DeletionConflictError(IngestError):
    def __init__(self, report: DeletionConflictReport) -> None:
        super().__init__(
            f"Cannot delete selected trades: {report.shared_order_count} order(s) are shared with "
            f"{report.total_conflicting_trades} other trade(s). Select the conflicting trades too "
            "or cancel the deletion."
        )
        self.report = report
