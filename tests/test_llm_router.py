import json
import logging

import pytest

from regtruth.config import build_config
from regtruth.errors import ValidationError
from regtruth.llm import router
from regtruth.llm.router import ModelError, run_structured
from regtruth.pipelines.extract import LlmExtractor

SCHEMA = {
    "type": "object",
    "required": ["value"],
    "properties": {"value": {"type": "string"}},
}
LOGGER = logging.getLogger("regtruth.test")


def _llm_config(**overrides):
    return build_config({"llm": {"enabled": True, "model": "test-model", **overrides}})


def _reply(content):
    return {"choices": [{"message": {"content": content}}]}


def test_disabled_model_is_refused():
    with pytest.raises(ModelError, match="llm_disabled"):
        run_structured(build_config().llm, "system", "user", SCHEMA, LOGGER)
    with pytest.raises(ModelError, match="llm_model_not_set"):
        run_structured(build_config({"llm": {"enabled": True}}).llm, "system", "user", SCHEMA, LOGGER)


def test_valid_output_is_parsed(monkeypatch):
    calls = []

    def fake_request(method, url, headers, payload, timeout):
        calls.append((method, url, headers, payload))
        return _reply('{"value": "25"}')

    monkeypatch.setattr(router, "_http_request", fake_request)
    monkeypatch.setenv("RT_LLM_API_KEY", "secret")

    result = run_structured(_llm_config(base_url="https://llm.example/v1/").llm, "system", "user", SCHEMA, LOGGER)

    assert result == {
        "raw": '{"value": "25"}',
        "parsed": {"value": "25"},
        "model": "test-model",
        "schema_valid": True,
        "schema_error": None,
    }
    method, url, headers, payload = calls[0]
    assert (method, url) == ("POST", "https://llm.example/v1/chat/completions")
    assert headers == {"Authorization": "Bearer secret"}
    assert payload["messages"] == [
        {"role": "system", "content": "system"},
        {"role": "user", "content": "user"},
    ]


def test_schema_failure_triggers_one_repair(monkeypatch):
    replies = iter([_reply("not json"), _reply('{"value": "25"}')])
    sent = []

    def fake_request(method, url, headers, payload, timeout):
        sent.append(payload["messages"])
        return next(replies)

    monkeypatch.setattr(router, "_http_request", fake_request)

    result = run_structured(_llm_config().llm, "system", "user", SCHEMA, LOGGER)

    assert result["schema_valid"] is True
    assert len(sent) == 2
    assert sent[1][2] == {"role": "assistant", "content": "not json"}
    assert sent[1][3]["content"].startswith("Return valid JSON only.")


def test_repair_failure_is_reported(monkeypatch):
    monkeypatch.setattr(router, "_http_request", lambda *args: _reply('{"value": 25}'))

    result = run_structured(_llm_config().llm, "system", "user", SCHEMA, LOGGER)

    assert result["schema_valid"] is False
    assert "is not of type 'string'" in result["schema_error"]


def test_missing_choices_is_a_model_error(monkeypatch):
    monkeypatch.setattr(router, "_http_request", lambda *args: {"choices": []})
    with pytest.raises(ModelError, match="llm_missing_choices"):
        run_structured(_llm_config().llm, "system", "user", SCHEMA, LOGGER)


def test_llm_extractor_maps_claims(monkeypatch):
    claims = {
        "claims": [
            {
                "concept_id": "vat-standard-rate",
                "exact_quote": "The standard VAT rate is 25%.",
                "value": " 25 ",
                "value_type": "PERCENTAGE",
                "confidence": 0.85,
                "article_ref": None,
                "effective_from": "2024-01-01",
            }
        ]
    }
    monkeypatch.setattr(router, "_http_request", lambda *args: _reply(json.dumps(claims)))
    config = _llm_config()

    drafts = LlmExtractor(config, LOGGER).extract("The standard VAT rate is 25%.", config.concepts)

    assert len(drafts) == 1
    assert drafts[0].normalized_value == "25"
    assert drafts[0].effective_from == "2024-01-01"
    assert drafts[0].article_ref is None


def test_llm_extractor_rejects_invalid_output(monkeypatch):
    monkeypatch.setattr(router, "_http_request", lambda *args: _reply('{"claims": [{"value": "25"}]}'))
    config = _llm_config()

    with pytest.raises(ValidationError) as excinfo:
        LlmExtractor(config, LOGGER).extract("text", config.concepts)

    assert excinfo.value.stage == "extract"
    assert excinfo.value.reason.startswith("model output failed schema")
