import json

import pytest

from freeme.service.errors import ParseFailureError
from freeme.service.extractor import (
    extract_intent,
    extract_structure,
    find_balanced_object,
    parse_fenced,
)
from freeme.service.intents import (
    CreateIntent,
    DeleteIntent,
    QueryIntent,
    UpdateIntent,
    intent_from_payload,
)

CREATE = {
    "action": "create",
    "event": {
        "title": "Lunch with Sam",
        "start_time": "2030-01-02T12:00:00Z",
        "end_time": "2030-01-02T13:00:00Z",
    },
    "message": "Scheduled lunch",
}


class TestExtractStructure:
    def test_bare_and_fenced_agree(self):
        bare = json.dumps(CREATE)
        fenced = f"```json\n{bare}\n```"
        assert extract_structure(bare) == extract_structure(fenced) == CREATE

    def test_unlabelled_fence(self):
        assert parse_fenced(f"```\n{json.dumps(CREATE)}\n```") == CREATE

    def test_object_embedded_in_prose(self):
        text = f"Sure! Here is the change: {json.dumps(CREATE)} Let me know."
        assert extract_structure(text) == CREATE

    def test_braces_inside_strings_do_not_confuse_scan(self):
        payload = {"action": "query", "results": [], "message": "use {curly} braces }"}
        text = "prefix " + json.dumps(payload) + " suffix"
        assert extract_structure(text) == payload

    def test_skips_unbalanced_leading_brace(self):
        text = 'noise { not json ' + json.dumps({"action": "query"})
        assert find_balanced_object(text) is not None
        assert extract_structure(text) == {"action": "query"}

    def test_no_json_is_parse_failure(self):
        with pytest.raises(ParseFailureError) as excinfo:
            extract_structure("no json here")
        assert excinfo.value.status_code == 502
        assert excinfo.value.detail["excerpt"] == "no json here"

    @pytest.mark.parametrize("raw", ["", "   ", None])
    def test_empty_response_is_parse_failure(self, raw):
        with pytest.raises(ParseFailureError):
            extract_structure(raw)

    def test_excerpt_is_bounded(self):
        with pytest.raises(ParseFailureError) as excinfo:
            extract_structure("x" * 500)
        assert len(excerpt_of(excinfo.value)) == 100

    def test_json_array_is_not_an_object(self):
        with pytest.raises(ParseFailureError):
            extract_structure("[1, 2, 3]")


def excerpt_of(exc: ParseFailureError) -> str:
    return exc.detail["excerpt"]


class TestIntentFromPayload:
    def test_create(self):
        intent = extract_intent(json.dumps(CREATE))
        assert isinstance(intent, CreateIntent)
        assert intent.event["title"] == "Lunch with Sam"
        assert intent.message == "Scheduled lunch"

    def test_update(self):
        intent = intent_from_payload(
            {"action": "update", "event_id": "abc", "updates": {"title": "New"}}
        )
        assert isinstance(intent, UpdateIntent)
        assert intent.updates == {"title": "New"}
        assert intent.message == "Event updated successfully"

    def test_delete_ignores_other_variant_fields(self):
        intent = intent_from_payload(
            {"action": "delete", "event_id": "abc", "event": {"title": "x"}}
        )
        assert isinstance(intent, DeleteIntent)
        assert intent.event_id == "abc"

    def test_query_defaults(self):
        intent = intent_from_payload({"action": "query", "results": "not a list", "message": 5})
        assert isinstance(intent, QueryIntent)
        assert intent.results == []
        assert intent.message == "Query completed"

    def test_action_is_case_insensitive(self):
        assert isinstance(intent_from_payload({"action": " QUERY "}), QueryIntent)

    @pytest.mark.parametrize(
        "payload",
        [
            {"action": "destroy"},
            {"event": {"title": "x"}},
            {"action": "create"},
            {"action": "create", "event": "Lunch"},
            {"action": "update", "event_id": "abc"},
            {"action": "update", "updates": {"title": "x"}},
            {"action": "delete"},
            ["create"],
        ],
    )
    def test_malformed_payloads(self, payload):
        with pytest.raises(ParseFailureError):
            intent_from_payload(payload)

    def test_unknown_action_message(self):
        with pytest.raises(ParseFailureError) as excinfo:
            intent_from_payload({"action": "destroy"})
        assert excinfo.value.message == "Sorry, I couldn't understand what you wanted to do."
