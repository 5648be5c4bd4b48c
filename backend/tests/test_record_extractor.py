"""Unit tests for LLM record extraction and natural-key dedup."""

from __future__ import annotations

import unittest
from datetime import datetime, timezone
from unittest import mock

from harvester.harvesting.errors import LLMClientError
from harvester.harvesting.extractor import RecordExtractor
from harvester.harvesting.llm_client import OpenAIChatCompletionsClient
from harvester.harvesting.types import MessageContent, make_record_id, natural_key

_NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


class _StubClient:
    def __init__(self, payload: object = None, error: Exception | None = None) -> None:
        self.payload = payload
        self.error = error
        self.calls: list[dict] = []

    def extract_records(self, messages, *, category, known_values):  # noqa: ANN001
        self.calls.append({"messages": messages, "category": category, "known_values": known_values})
        if self.error is not None:
            raise self.error
        return self.payload


def _message(message_id: str, body: str = "Your Acme Rewards number is 1234 5678") -> MessageContent:
    return MessageContent(
        id=message_id,
        subject=f"Welcome {message_id}",
        sender="rewards@acme.com",
        date="Tue, 14 Oct 2026 10:00:00 +0000",
        body=body,
    )


def _candidate(identifier: str, source: str, **overrides: object) -> dict:
    candidate = {
        "category": "Acme",
        "program_name": "Acme Rewards",
        "identifier": identifier,
        "tier": "Gold",
        "source_message_id": source,
        "confidence": 88,
    }
    candidate.update(overrides)
    return candidate


class RecordExtractorTests(unittest.TestCase):
    def test_builds_record_with_provenance_from_the_fetched_message(self) -> None:
        extractor = RecordExtractor(
            _StubClient({"records": [_candidate("1234 5678", "m1")]}),
            clock=lambda: _NOW,
        )

        records = extractor.extract([_message("m1")], "Acme")

        self.assertEqual(len(records), 1)
        record = records[0]
        self.assertEqual(record.id, make_record_id("Acme", "12345678"))
        self.assertEqual(record.natural_value, "12345678")
        self.assertEqual(record.fields, {"identifier": "1234 5678", "program_name": "Acme Rewards", "tier": "Gold"})
        self.assertEqual(record.source_subject, "Welcome m1")
        self.assertEqual(record.source_date, "Tue, 14 Oct 2026 10:00:00 +0000")
        self.assertEqual(record.confidence, 88)
        self.assertEqual(record.extracted_at, _NOW)

    def test_record_id_depends_only_on_the_natural_key(self) -> None:
        self.assertEqual(make_record_id("Acme", "1234-5678"), make_record_id(" acme ", "12345678"))
        self.assertNotEqual(make_record_id("Acme", "12345678"), make_record_id("Beta", "12345678"))

    def test_known_keys_are_dropped_even_if_the_model_returns_them(self) -> None:
        client = _StubClient({"records": [_candidate("12345678", "m1"), _candidate("99990000", "m1")]})
        extractor = RecordExtractor(client)

        records = extractor.extract([_message("m1")], "Acme", {natural_key("Acme", "1234-5678")})

        self.assertEqual([record.natural_value for record in records], ["99990000"])
        self.assertEqual(client.calls[0]["known_values"], ["12345678"])

    def test_same_key_in_one_response_keeps_the_first_candidate(self) -> None:
        client = _StubClient(
            {"records": [_candidate("1234 5678", "m1"), _candidate("1234-5678", "m2", tier="Platinum")]}
        )

        records = RecordExtractor(client).extract([_message("m1"), _message("m2")], "Acme")

        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].source_message_id, "m1")
        self.assertEqual(records[0].fields["tier"], "Gold")

    def test_candidates_for_unknown_messages_or_other_categories_are_dropped(self) -> None:
        client = _StubClient(
            {
                "records": [
                    _candidate("11112222", "not-fetched"),
                    _candidate("33334444", "m1", category="Hilton"),
                    _candidate(" - ", "m1"),
                    _candidate("55556666", "m1", category="ACME"),
                ]
            }
        )

        records = RecordExtractor(client).extract([_message("m1")], "Acme")

        self.assertEqual([record.natural_value for record in records], ["55556666"])
        self.assertEqual(records[0].category, "Acme")

    def test_confidence_is_clamped(self) -> None:
        client = _StubClient(
            {"records": [_candidate("1", "m1", confidence=250), _candidate("2", "m1", confidence=-3)]}
        )

        records = RecordExtractor(client).extract([_message("m1")], "Acme")

        self.assertEqual([record.confidence for record in records], [100, 0])

    def test_malformed_or_failed_responses_yield_no_records(self) -> None:
        for client in (
            _StubClient(error=LLMClientError("HTTP 500")),
            _StubClient({"records": [{"identifier": "123"}]}),
            _StubClient("not json"),
            _StubClient(None),
        ):
            extractor = RecordExtractor(client)
            self.assertEqual(extractor.extract([_message("m1")], "Acme"), [])
            self.assertIsNotNone(extractor.last_error)

    def test_network_timeout_from_model_client_yields_no_records(self) -> None:
        client = OpenAIChatCompletionsClient(api_key="test-key", model="test-model", timeout_seconds=1)
        extractor = RecordExtractor(client)

        with mock.patch(
            "harvester.harvesting.http_json.urllib_request.urlopen",
            side_effect=TimeoutError("timed out"),
        ):
            records = extractor.extract([_message("m1")], "Acme")

        self.assertEqual(records, [])
        self.assertIn("timed out", str(extractor.last_error))

    def test_empty_bodies_skip_the_model_call(self) -> None:
        client = _StubClient({"records": [_candidate("1", "m1")]})

        records = RecordExtractor(client).extract([_message("m1", body="   ")], "Acme")

        self.assertEqual(records, [])
        self.assertEqual(client.calls, [])


if __name__ == "__main__":
    unittest.main()
