from __future__ import annotations

import json
from dataclasses import replace
from types import SimpleNamespace

import pytest

from trade_journal.ingest.ai_mapper import (
    AiFallbackMapper,
    ai_mapping_configured,
    build_openai_client,
    extract_json_payload,
    extract_response_text,
)
from trade_journal.ingest.csv_mapping import BROKER_METADATA, HeuristicMapper
from trade_journal.ingest.errors import AIServiceError

HEADERS = ["Ticker", "Shares", "Fill Px", "Action", "Exec Stamp", "Venue", "Extra"]
SAMPLE_ROWS = [
    {
        "Ticker": "AAPL",
        "Shares": "10",
        "Fill Px": "150.25",
        "Action": "BOT",
        "Exec Stamp": "2024-03-04 09:30:00",
        "Venue": "ARCA",
        "Extra": "",
    }
]
AI_PAYLOAD = {
    "brokerName": "Acme Securities",
    "mappings": {
        "Ticker": {"field": "symbol", "confidence": 0.95, "reasoning": "ticker symbols"},
        "Shares": {"field": "orderQuantity", "confidence": 0.9},
        "Fill Px": {"field": "price", "confidence": 0.9},
        "Action": "side",
        "Exec Stamp": {"field": "executedAt", "confidence": 0.85},
        "Venue": {"field": "exchange", "confidence": 0.7},
    },
    "overallConfidence": 0.9,
    "suggestions": ["Venue looks like an exchange code", " "],
}


def test_extract_json_payload_accepts_fenced_and_embedded_objects() -> None:
    assert extract_json_payload('{"mappings": {}}') == {"mappings": {}}
    assert extract_json_payload('Here you go:\n```json\n{"mappings": {}}\n```') == {"mappings": {}}
    assert extract_json_payload('Sure! {"a": 1} hope it helps') == {"a": 1}


@pytest.mark.parametrize("text", ["no json here", "[1, 2]", '{"broken": '])
def test_extract_json_payload_rejects_malformed_output(text: str) -> None:
    with pytest.raises(AIServiceError) as excinfo:
        extract_json_payload(text)
    assert excinfo.value.retryable is True


def test_extract_response_text_falls_back_to_message_items() -> None:
    response = SimpleNamespace(
        output_text="",
        output=[
            {"type": "reasoning", "content": []},
            {"type": "message", "content": [{"type": "output_text", "text": '{"mappings": {}}'}]},
        ],
    )
    assert extract_response_text(response) == '{"mappings": {}}'


def test_propose_normalizes_ai_fields(fake_openai) -> None:
    client = fake_openai(AI_PAYLOAD)
    mapper = AiFallbackMapper(client, model="test-model", timeout_seconds=5.0)
    heuristic = HeuristicMapper().map_headers(HEADERS, SAMPLE_ROWS)

    proposal = mapper.propose(HEADERS, SAMPLE_ROWS, heuristic, filename="acme.csv")

    fields = {header: mapping.field for header, mapping in proposal.mappings.items()}
    assert fields == {
        "Ticker": "symbol",
        "Shares": "quantity",
        "Fill Px": "price",
        "Action": "side",
        "Exec Stamp": "executed_at",
        "Venue": BROKER_METADATA,
        "Extra": BROKER_METADATA,
    }
    assert proposal.mappings["Venue"].confidence == 0.1
    assert proposal.mappings["Extra"].confidence == 0.0
    assert proposal.mappings["Action"].confidence == 0.5
    assert proposal.confidence == pytest.approx(0.82)
    assert proposal.source == "ai"
    assert proposal.broker_name == "Acme Securities"
    assert proposal.suggestions == ("Venue looks like an exchange code",)

    (call,) = client.responses.calls
    assert call["model"] == "test-model"
    assert call["timeout"] == 5.0
    prompt = json.loads(call["input"])
    assert prompt["headers"] == HEADERS
    assert prompt["filename"] == "acme.csv"
    assert "heuristicGuess" in prompt


def test_propose_resolves_duplicate_field_claims(fake_openai) -> None:
    payload = {
        "mappings": {
            "Symbol": {"field": "symbol", "confidence": 0.9},
            "Price": {"field": "price", "confidence": 0.6},
            "Avg Price": {"field": "price", "confidence": 0.8},
        }
    }
    mapper = AiFallbackMapper(fake_openai(payload))

    proposal = mapper.propose(["Symbol", "Price", "Avg Price"], [])

    assert proposal.mappings["Avg Price"].field == "price"
    assert proposal.mappings["Price"].field == BROKER_METADATA


def test_propose_wraps_client_failures_as_retryable(fake_openai) -> None:
    mapper = AiFallbackMapper(fake_openai(error=TimeoutError("slow")))

    with pytest.raises(AIServiceError) as excinfo:
        mapper.propose(HEADERS, SAMPLE_ROWS)

    assert excinfo.value.retryable is True
    assert "TimeoutError" in excinfo.value.message


def test_propose_requires_a_mappings_object(fake_openai) -> None:
    mapper = AiFallbackMapper(fake_openai({"mappings": ["Ticker"]}))
    with pytest.raises(AIServiceError):
        mapper.propose(HEADERS, SAMPLE_ROWS)


def test_propose_reports_unavailable_client() -> None:
    def _factory(timeout_seconds: float):
        raise RuntimeError("OPENAI_API_KEY is not configured.")

    mapper = AiFallbackMapper(client_factory=_factory)

    with pytest.raises(AIServiceError, match="unavailable"):
        mapper.propose(HEADERS, SAMPLE_ROWS)


def test_from_settings_uses_configured_model(settings, fake_openai) -> None:
    mapper = AiFallbackMapper.from_settings(settings, client=fake_openai(AI_PAYLOAD))
    assert mapper.model == "test-model"
    assert mapper.timeout_seconds == 5.0


def test_ai_mapping_configured_needs_flag_and_key(settings, monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    assert ai_mapping_configured(settings) is True
    assert ai_mapping_configured(replace(settings, enable_ai_mapping=False)) is False

    monkeypatch.delenv("OPENAI_API_KEY")
    assert ai_mapping_configured(settings) is False


def test_build_openai_client_requires_api_key(monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(RuntimeError):
        build_openai_client(5.0)
