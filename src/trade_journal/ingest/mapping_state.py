"""Column mapping state stored on an import batch.

A batch holds either a finalized mapping that has been applied, or a proposal
waiting for a human to approve it. The JSON form carries an explicit ``kind``
tag so the two cases are never confused when read back.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from trade_journal.ingest.csv_mapping import (
    FieldMapping,
    MappingProposal,
    mappings_from_dict,
    mappings_to_dict,
)

FINALIZED = "finalized"
PENDING_REVIEW = "pending_review"


@dataclass(frozen=True)
class Finalized:
    mappings: dict[str, FieldMapping]
    broker_csv_format_id: str | None
    decimal_separator: str = "."


@dataclass(frozen=True)
class PendingReview:
    proposed_mappings: dict[str, FieldMapping]
    proposed_broker: str
    confidence: float
    headers: tuple[str, ...]
    source: str
    decimal_separator: str = "."
    suggestions: tuple[str, ...] = ()

    @property
    def metadata_fields(self) -> list[str]:
        return [header for header, mapping in self.proposed_mappings.items() if mapping.is_metadata]

    @classmethod
    def from_proposal(
        cls,
        proposal: MappingProposal,
        *,
        headers: list[str],
        broker_name: str,
        decimal_separator: str,
    ) -> PendingReview:
        return cls(
            proposed_mappings=dict(proposal.mappings),
            proposed_broker=proposal.broker_name or broker_name,
            confidence=proposal.confidence,
            headers=tuple(headers),
            source=proposal.source,
            decimal_separator=decimal_separator,
            suggestions=tuple(proposal.suggestions),
        )


MappingState = Union[Finalized, PendingReview]


def dump_mapping_state(state: MappingState) -> dict[str, Any]:
    if isinstance(state, Finalized):
        return {
            "kind": FINALIZED,
            "mappings": mappings_to_dict(state.mappings),
            "brokerCsvFormatId": state.broker_csv_format_id,
            "decimalSeparator": state.decimal_separator,
        }
    return {
        "kind": PENDING_REVIEW,
        "proposedMappings": mappings_to_dict(state.proposed_mappings),
        "proposedBroker": state.proposed_broker,
        "metadataFields": state.metadata_fields,
        "confidence": state.confidence,
        "headers": list(state.headers),
        "source": state.source,
        "decimalSeparator": state.decimal_separator,
        "suggestions": list(state.suggestions),
    }


def load_mapping_state(payload: dict[str, Any] | None) -> MappingState | None:
    if not payload:
        return None
    kind = payload.get("kind")
    if kind == FINALIZED:
        return Finalized(
            mappings=mappings_from_dict(payload.get("mappings") or {}),
            broker_csv_format_id=payload.get("brokerCsvFormatId"),
            decimal_separator=str(payload.get("decimalSeparator") or "."),
        )
    if kind == PENDING_REVIEW:
        return PendingReview(
            proposed_mappings=mappings_from_dict(payload.get("proposedMappings") or {}),
            proposed_broker=str(payload.get("proposedBroker") or ""),
            confidence=float(payload.get("confidence") or 0.0),
            headers=tuple(payload.get("headers") or ()),
            source=str(payload.get("source") or "heuristic"),
            decimal_separator=str(payload.get("decimalSeparator") or "."),
            suggestions=tuple(payload.get("suggestions") or ()),
        )
    raise ValueError(f"Unknown mapping state kind: {kind!r}")
