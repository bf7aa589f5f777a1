from __future__ import annotations

import json
import os
import re
from typing import Any, Callable

from trade_journal.config.settings import Settings
from trade_journal.ingest.csv_mapping import (
    BROKER_METADATA,
    FIELD_DICTIONARY,
    MAPPABLE_FIELDS,
    FieldMapping,
    MappingProposal,
    overall_confidence,
    resolve_field_collisions,
    split_date_and_time,
)
from trade_journal.ingest.errors import AIServiceError
from trade_journal.utils.logging import get_logger

logger = get_logger(__name__)

MAX_SAMPLE_ROWS = 5
MAX_CELL_CHARS = 64

AI_FIELD_ALIASES = {
    "brokermetadata": BROKER_METADATA,
    "metadata": BROKER_METADATA,
    "orderquantity": "quantity",
    "limitprice": "price",
    "orderexecutedtime": "executed_at",
    "orderplacedtime": "placed_at",
    "orderid": "order_id",
    "tradeid": "execution_id",
    "ordertype": "order_type",
    "orderstatus": "order_status",
    "timeinforce": "time_in_force",
    "accountid": "account",
    "orderaccount": "account",
}

INSTRUCTIONS = (
    "You map CSV column headers from stock broker trade exports onto a canonical order schema. "
    "Respond with JSON only, no prose. Use exactly this shape: "
    '{"brokerName": string or null, '
    '"mappings": {"<header>": {"field": "<canonical field>", "confidence": 0.0-1.0, "reasoning": string}}, '
    '"overallConfidence": 0.0-1.0, "suggestions": [string]}. '
    "Include every header. Use the field \"broker_metadata\" for columns that do not fit any canonical field. "
    "Never map two headers to the same canonical field."
)


def build_openai_client(timeout_seconds: float | None = None) -> Any:
    api_key = os.getenv("OPENAI_API_KEY", "").strip()
    if not api_key:
        raise RuntimeError("OPENAI_API_KEY is not configured.")
    from openai import OpenAI

    return OpenAI(api_key=api_key, timeout=timeout_seconds, max_retries=1)


def ai_mapping_configured(settings: Settings) -> bool:
    return settings.enable_ai_mapping and bool(os.getenv("OPENAI_API_KEY", "").strip())


def _as_dict(item: Any) -> dict[str, Any]:
    if isinstance(item, dict):
        return item
    if hasattr(item, "model_dump"):
        dumped = item.model_dump()
        if isinstance(dumped, dict):
            return dumped
    if hasattr(item, "__dict__"):
        return dict(item.__dict__)
    return {}


def extract_response_text(response: Any) -> str:
    text = str(getattr(response, "output_text", "") or "").strip()
    if text:
        return text

    snippets: list[str] = []
    for item in getattr(response, "output", []) or []:
        payload = _as_dict(item)
        if payload.get("type") != "message":
            continue
        for content in payload.get("content") or []:
            content_payload = _as_dict(content)
            if content_payload.get("type") not in {"output_text", "text"}:
                continue
            value = str(content_payload.get("text", "") or "").strip()
            if value:
                snippets.append(value)
    return "\n\n".join(snippets).strip()


def extract_json_payload(text: str) -> dict[str, Any]:
    candidates = [text.strip()]
    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", text, re.DOTALL)
    if fenced:
        candidates.append(fenced.group(1))
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        try:
            loaded = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(loaded, dict):
            return loaded
    raise AIServiceError(
        "The AI mapping service returned malformed output. Retry the mapping or map the columns manually."
    )


def _canonical_field(raw: Any) -> str:
    text = str(raw or "").strip()
    if text in MAPPABLE_FIELDS:
        return text
    compact = re.sub(r"[^a-z]", "", text.lower())
    if compact in AI_FIELD_ALIASES:
        return AI_FIELD_ALIASES[compact]
    snake = re.sub(r"(?<!^)(?=[A-Z])", "_", text).lower().replace(" ", "_")
    return snake if snake in MAPPABLE_FIELDS else BROKER_METADATA


def _clamp(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(1.0, number))


def build_prompt(
    headers: list[str],
    sample_rows: list[dict[str, Any]],
    heuristic: MappingProposal | None,
    filename: str | None,
) -> str:
    fields = {name: list(definition.synonyms[:4]) for name, definition in FIELD_DICTIONARY.items()}
    samples = [
        {header: str(row.get(header, ""))[:MAX_CELL_CHARS] for header in headers}
        for row in sample_rows[:MAX_SAMPLE_ROWS]
    ]
    payload: dict[str, Any] = {
        "filename": filename,
        "headers": headers,
        "sampleRows": samples,
        "canonicalFields": fields,
        "requiredFields": ["symbol", "side", "quantity", "price", "executed_at or trade_date"],
    }
    if heuristic is not None:
        payload["heuristicGuess"] = {
            header: mapping.to_dict() for header, mapping in heuristic.mappings.items()
        }
    return json.dumps(payload, indent=2)


class AiFallbackMapper:
    """Asks a language model for a header mapping; the result is only ever a proposal."""

    def __init__(
        self,
        client: Any = None,
        *,
        model: str = "gpt-5-mini",
        timeout_seconds: float = 30.0,
        client_factory: Callable[[float], Any] = build_openai_client,
    ) -> None:
        self._client = client
        self._client_factory = client_factory
        self.model = model
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings, client: Any = None) -> AiFallbackMapper:
        return cls(client, model=settings.openai_model, timeout_seconds=settings.ai_timeout_seconds)

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                self._client = self._client_factory(self.timeout_seconds)
            except RuntimeError as exc:
                raise AIServiceError(f"AI mapping is unavailable: {exc}") from exc
        return self._client

    def propose(
        self,
        headers: list[str],
        sample_rows: list[dict[str, Any]],
        heuristic: MappingProposal | None = None,
        *,
        filename: str | None = None,
    ) -> MappingProposal:
        client = self._get_client()
        prompt = build_prompt(headers, sample_rows, heuristic, filename)
        try:
            response = client.responses.create(
                model=self.model,
                instructions=INSTRUCTIONS,
                input=prompt,
                timeout=self.timeout_seconds,
            )
        except Exception as exc:
            logger.warning("AI mapping request failed: %s", exc)
            raise AIServiceError(
                f"The AI mapping service did not respond ({type(exc).__name__}). "
                "Your file was kept; retry the mapping in a moment."
            ) from exc

        payload = extract_json_payload(extract_response_text(response))
        raw_mappings = payload.get("mappings")
        if not isinstance(raw_mappings, dict):
            raise AIServiceError(
                "The AI mapping service returned no column mappings. Retry the mapping or map the columns manually."
            )
        return self._to_proposal(headers, raw_mappings, payload)

    def _to_proposal(
        self, headers: list[str], raw_mappings: dict[str, Any], payload: dict[str, Any]
    ) -> MappingProposal:
        mappings: dict[str, FieldMapping] = {}
        for header in headers:
            entry = raw_mappings.get(header)
            if isinstance(entry, str):
                entry = {"field": entry, "confidence": 0.5}
            if not isinstance(entry, dict):
                mappings[header] = FieldMapping(BROKER_METADATA, 0.0, reasoning="not returned by AI")
                continue
            target = _canonical_field(entry.get("field"))
            confidence = _clamp(entry.get("confidence"))
            if target == BROKER_METADATA:
                confidence = min(confidence, 0.1)
            mappings[header] = FieldMapping(
                target,
                confidence,
                reasoning=str(entry.get("reasoning") or "") or None,
            )

        mappings = split_date_and_time(resolve_field_collisions(mappings))
        broker_name = str(payload.get("brokerName") or "").strip() or None
        suggestions = tuple(str(item) for item in payload.get("suggestions") or [] if str(item).strip())
        return MappingProposal(
            mappings=mappings,
            confidence=overall_confidence(mappings),
            source="ai",
            broker_name=broker_name,
            suggestions=suggestions,
        )
