from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, replace
from difflib import SequenceMatcher
from hashlib import sha256
from typing import Any

from trade_journal.ingest.validators import (
    looks_like_symbol,
    normalize_side,
    parse_datetime,
    parse_decimal,
    parse_time,
)

BROKER_METADATA = "broker_metadata"

ORDER_CANONICAL_FIELDS = [
    "order_id",
    "execution_id",
    "symbol",
    "side",
    "quantity",
    "price",
    "executed_at",
    "trade_date",
    "trade_time",
    "placed_at",
    "commission",
    "fees",
    "order_type",
    "order_status",
    "time_in_force",
    "account",
    "currency",
    "tags",
]

ORDER_REQUIRED_FIELDS = ["symbol", "side", "quantity", "price"]
TIMESTAMP_FIELDS = ("executed_at", "trade_date")
CRITICAL_FIELDS = {"symbol", "side", "quantity", "price", "executed_at", "trade_date"}

MAPPABLE_FIELDS = [*ORDER_CANONICAL_FIELDS, BROKER_METADATA]


@dataclass(frozen=True)
class FieldSpec:
    synonyms: tuple[str, ...]
    kind: str = "text"


FIELD_DICTIONARY: dict[str, FieldSpec] = {
    "order_id": FieldSpec(
        ("order id", "order number", "order no", "ref id", "reference", "confirmation number")
    ),
    "execution_id": FieldSpec(
        ("execution id", "exec id", "fill id", "trade id", "transaction id", "deal id")
    ),
    "symbol": FieldSpec(
        ("symbol", "ticker", "instrument", "security", "underlying", "stock", "ticker symbol"),
        kind="symbol",
    ),
    "side": FieldSpec(
        ("side", "buy/sell", "b/s", "action", "transaction type", "direction", "trans code"),
        kind="side",
    ),
    "quantity": FieldSpec(
        ("quantity", "qty", "shares", "filled", "filled qty", "filled quantity", "exec qty", "size", "units"),
        kind="decimal",
    ),
    "price": FieldSpec(
        ("price", "avg price", "average price", "fill price", "exec price", "execution price", "trade price", "unit price"),
        kind="decimal",
    ),
    "executed_at": FieldSpec(
        ("executed at", "execution time", "exec time", "filled time", "fill time", "time", "date/time", "datetime", "timestamp"),
        kind="date",
    ),
    "trade_date": FieldSpec(
        ("date", "trade date", "transaction date", "activity date", "run date"), kind="date"
    ),
    "trade_time": FieldSpec(("trade time", "time of trade", "time of day"), kind="time"),
    "placed_at": FieldSpec(
        ("placed time", "placed at", "order time", "submitted", "submitted at", "time placed", "order date"),
        kind="date",
    ),
    "commission": FieldSpec(("commission", "commissions", "comm", "commission fee"), kind="decimal"),
    "fees": FieldSpec(
        ("fees", "fee", "reg fee", "sec fee", "exchange fee", "other fees", "charges", "fees & comm"),
        kind="decimal",
    ),
    "order_type": FieldSpec(("order type", "type", "ord type", "price type")),
    "order_status": FieldSpec(("status", "order status", "state")),
    "time_in_force": FieldSpec(("time in force", "tif", "duration")),
    "account": FieldSpec(("account", "account number", "account id", "acct", "account name")),
    "currency": FieldSpec(("currency", "ccy")),
    "tags": FieldSpec(("tags", "tag", "labels", "label")),
}


def normalize_header(raw: Any) -> str:
    """Comparison key for a CSV header: lowercase, trimmed, punctuation-insensitive."""
    text = str(raw if raw is not None else "").replace("\ufeff", "").strip().lower()
    text = re.sub(r"[^a-z0-9/#&% ]+", " ", text)
    text = re.sub(r"\s*/\s*", "/", text)
    return " ".join(text.split())


def _match_key(text: str) -> str:
    return "".join(ch for ch in text.strip().lower() if ch.isalnum())


def _tokenize(text: str) -> list[str]:
    return [token for token in re.split(r"[^a-z0-9]+", text.strip().lower()) if token]


def header_fingerprint(headers: Iterable[str]) -> str:
    """Order-independent identity of a header layout."""
    canonical = "|".join(sorted(normalize_header(header) for header in headers))
    return sha256(canonical.encode("utf-8")).hexdigest()


def header_set_similarity(left: Iterable[str], right: Iterable[str]) -> float:
    left_set = {normalize_header(header) for header in left}
    right_set = {normalize_header(header) for header in right}
    if not left_set and not right_set:
        return 0.0
    return len(left_set & right_set) / len(left_set | right_set)


def header_similarity(header: str, synonym: str) -> float:
    normalized_header = normalize_header(header)
    normalized_synonym = normalize_header(synonym)
    if not normalized_header or not normalized_synonym:
        return 0.0
    ratio = SequenceMatcher(None, normalized_header, normalized_synonym).ratio()
    header_tokens = set(_tokenize(normalized_header))
    synonym_tokens = set(_tokenize(normalized_synonym))
    overlap = 0.0
    if header_tokens and synonym_tokens:
        overlap = len(header_tokens & synonym_tokens) / len(header_tokens | synonym_tokens)
    return max(ratio, overlap)


@dataclass(frozen=True)
class FieldMapping:
    field: str
    confidence: float
    user_corrected: bool = False
    reasoning: str | None = None

    @property
    def is_metadata(self) -> bool:
        return self.field == BROKER_METADATA

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"field": self.field, "confidence": round(self.confidence, 4)}
        if self.user_corrected:
            payload["userCorrected"] = True
        if self.reasoning:
            payload["reasoning"] = self.reasoning
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> FieldMapping:
        return cls(
            field=str(payload.get("field") or BROKER_METADATA),
            confidence=float(payload.get("confidence") or 0.0),
            user_corrected=bool(payload.get("userCorrected", False)),
            reasoning=payload.get("reasoning") or None,
        )


def mappings_to_dict(mappings: dict[str, FieldMapping]) -> dict[str, dict[str, Any]]:
    return {header: mapping.to_dict() for header, mapping in mappings.items()}


def mappings_from_dict(payload: dict[str, Any]) -> dict[str, FieldMapping]:
    return {
        str(header): FieldMapping.from_dict(value if isinstance(value, dict) else {"field": value})
        for header, value in (payload or {}).items()
    }


def field_to_header(mappings: dict[str, FieldMapping]) -> dict[str, str]:
    return {
        mapping.field: header
        for header, mapping in mappings.items()
        if not mapping.is_metadata
    }


def missing_required_fields(fields: Iterable[str]) -> list[str]:
    present = set(fields)
    missing = [name for name in ORDER_REQUIRED_FIELDS if name not in present]
    if not present.intersection(TIMESTAMP_FIELDS):
        missing.append("executed_at")
    return missing


def overall_confidence(mappings: dict[str, FieldMapping]) -> float:
    """Weighted mean of mapped-header confidences, scaled by required-field coverage."""
    weighted = 0.0
    weights = 0.0
    for mapping in mappings.values():
        if mapping.is_metadata:
            continue
        weight = 3.0 if mapping.field in CRITICAL_FIELDS else 1.0
        weighted += weight * mapping.confidence
        weights += weight
    if not weights:
        return 0.0
    required_groups = len(ORDER_REQUIRED_FIELDS) + 1
    missing = missing_required_fields(m.field for m in mappings.values())
    coverage = (required_groups - len(missing)) / required_groups
    return round((weighted / weights) * coverage, 4)


def validate_field_mappings(
    mappings: dict[str, FieldMapping], headers: list[str] | None = None
) -> list[str]:
    errors: list[str] = []
    if headers is not None:
        unknown = [header for header in mappings if header not in headers]
        unmapped = [header for header in headers if header not in mappings]
        errors.extend(f"Mapping references unknown header '{header}'." for header in unknown)
        errors.extend(f"Header '{header}' has no mapping." for header in unmapped)

    seen: dict[str, str] = {}
    for header, mapping in mappings.items():
        if mapping.field not in MAPPABLE_FIELDS:
            errors.append(f"Header '{header}' maps to unsupported field '{mapping.field}'.")
            continue
        if mapping.is_metadata:
            continue
        previous = seen.get(mapping.field)
        if previous is not None:
            errors.append(
                f"Field '{mapping.field}' is mapped from multiple headers ('{previous}' and '{header}')."
            )
            continue
        seen[mapping.field] = header

    errors.extend(
        f"Missing required field mapping '{name}'."
        for name in missing_required_fields(seen)
    )
    return errors


@dataclass(frozen=True)
class MappingProposal:
    mappings: dict[str, FieldMapping]
    confidence: float
    source: str
    broker_name: str | None = None
    suggestions: tuple[str, ...] = ()

    @property
    def missing_required(self) -> list[str]:
        return missing_required_fields(m.field for m in self.mappings.values())

    @property
    def metadata_fields(self) -> list[str]:
        return [header for header, mapping in self.mappings.items() if mapping.is_metadata]

    def needs_escalation(self, threshold: float) -> bool:
        return self.confidence < threshold or bool(self.missing_required)


def _sample_fit(kind: str, values: list[Any]) -> float:
    present = [value for value in values if str(value if value is not None else "").strip()]
    if not present or kind == "text":
        return 1.0
    if kind == "decimal":
        hits = sum(1 for value in present if parse_decimal(value) is not None)
    elif kind == "date":
        hits = sum(1 for value in present if parse_datetime(value) is not None)
    elif kind == "time":
        hits = sum(1 for value in present if parse_time(value) is not None)
    elif kind == "side":
        hits = sum(1 for value in present if normalize_side(value) in {"BUY", "SELL"})
    elif kind == "symbol":
        hits = sum(1 for value in present if looks_like_symbol(value))
    else:
        return 1.0
    return hits / len(present)


class HeuristicMapper:
    """Rule-based header mapper: exact synonyms first, then fuzzy similarity."""

    def __init__(
        self,
        dictionary: dict[str, FieldSpec] | None = None,
        *,
        min_similarity: float = 0.6,
    ) -> None:
        self.dictionary = dictionary or FIELD_DICTIONARY
        self.min_similarity = min_similarity
        self._exact: dict[str, str] = {}
        for field_name, definition in self.dictionary.items():
            for synonym in (field_name.replace("_", " "), *definition.synonyms):
                self._exact.setdefault(normalize_header(synonym), field_name)
                self._exact.setdefault(_match_key(synonym), field_name)

    def map_header(self, header: str, values: list[Any] | None = None) -> FieldMapping:
        normalized = normalize_header(header)
        exact = self._exact.get(normalized) or self._exact.get(_match_key(header))
        if exact:
            return FieldMapping(exact, 1.0, reasoning="exact synonym match")

        best_field = None
        best_score = 0.0
        for field_name, definition in self.dictionary.items():
            for synonym in definition.synonyms:
                score = header_similarity(normalized, synonym)
                if score > best_score:
                    best_field, best_score = field_name, score
        if best_field is None or best_score < self.min_similarity:
            return FieldMapping(BROKER_METADATA, 0.0, reasoning="no close synonym")

        fit = _sample_fit(self.dictionary[best_field].kind, values or [])
        if fit == 0.0:
            return FieldMapping(BROKER_METADATA, 0.0, reasoning="sample values disagree")
        confidence = best_score * 0.9 * (0.5 + 0.5 * fit)
        return FieldMapping(
            best_field,
            round(confidence, 4),
            reasoning=f"fuzzy match {best_score:.2f}, sample fit {fit:.2f}",
        )

    def map_headers(
        self, headers: list[str], sample_rows: list[dict[str, Any]] | None = None
    ) -> MappingProposal:
        rows = sample_rows or []
        mappings = {
            header: self.map_header(header, [row.get(header) for row in rows])
            for header in headers
        }
        mappings = resolve_field_collisions(mappings)
        mappings = split_date_and_time(mappings)
        return MappingProposal(
            mappings=mappings,
            confidence=overall_confidence(mappings),
            source="heuristic",
        )


def resolve_field_collisions(mappings: dict[str, FieldMapping]) -> dict[str, FieldMapping]:
    """Keep the strongest header per field; the rest become broker metadata."""
    winners: dict[str, tuple[float, int, str]] = {}
    for index, (header, mapping) in enumerate(mappings.items()):
        if mapping.is_metadata:
            continue
        candidate = (mapping.confidence, -index, header)
        current = winners.get(mapping.field)
        if current is None or candidate > current:
            winners[mapping.field] = candidate
    keep = {header for _, _, header in winners.values()}
    resolved: dict[str, FieldMapping] = {}
    for header, mapping in mappings.items():
        if mapping.is_metadata or header in keep:
            resolved[header] = mapping
        else:
            resolved[header] = FieldMapping(
                BROKER_METADATA,
                0.1,
                reasoning=f"'{mapping.field}' already mapped from another header",
            )
    return resolved


def split_date_and_time(mappings: dict[str, FieldMapping]) -> dict[str, FieldMapping]:
    """A bare ``Time`` column next to a ``Date`` column is the time of day."""
    fields = {mapping.field: header for header, mapping in mappings.items()}
    executed_header = fields.get("executed_at")
    if (
        executed_header is None
        or "trade_date" not in fields
        or "trade_time" in fields
        or normalize_header(executed_header) != "time"
    ):
        return mappings
    updated = dict(mappings)
    updated[executed_header] = replace(
        mappings[executed_header], field="trade_time", reasoning="time of day for trade date"
    )
    return updated
