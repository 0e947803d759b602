from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from typing import Any

import jsonschema

from ..config import LlmConfig
from ..utils import log_event


class ModelError(ValueError):
    pass


def run_structured(
    config: LlmConfig,
    system: str,
    user: str,
    schema: dict[str, Any],
    logger: logging.Logger,
) -> dict[str, Any]:
    """Call the configured chat-completions model and validate its JSON output.

    A schema violation triggers one repair request; the result carries
    ``schema_valid`` and ``schema_error`` so callers decide what to reject.
    """
    if not config.enabled:
        raise ModelError("llm_disabled")
    if not config.model:
        raise ModelError("llm_model_not_set")
    messages = [{"role": "system", "content": system}, {"role": "user", "content": user}]
    raw = _call_chat(config, messages)
    parsed = _maybe_parse_json(raw)
    validation = _validate_json(schema, parsed)
    if not validation["ok"]:
        log_event(logger, logging.INFO, "llm_repair_requested", model=config.model, error=validation["error"])
        repair = messages + [
            {"role": "assistant", "content": raw},
            {"role": "user", "content": "Return valid JSON only. Fix schema violations: " + validation["error"]},
        ]
        raw = _call_chat(config, repair)
        parsed = _maybe_parse_json(raw)
        validation = _validate_json(schema, parsed)
    return {
        "raw": raw,
        "parsed": parsed,
        "model": config.model,
        "schema_valid": validation["ok"],
        "schema_error": validation.get("error"),
    }


def _call_chat(config: LlmConfig, messages: list[dict[str, str]]) -> str:
    payload = {
        "model": config.model,
        "messages": messages,
        "temperature": config.temperature,
        "response_format": {"type": "json_object"},
    }
    headers = {}
    api_key = os.environ.get(config.api_key_env, "").strip()
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    response = _http_request(
        "POST",
        config.base_url.rstrip("/") + "/chat/completions",
        headers,
        payload,
        config.timeout_seconds,
    )
    choices = response.get("choices") or []
    if not choices:
        raise ModelError("llm_missing_choices")
    return choices[0]["message"]["content"] or ""


def _http_request(
    method: str,
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any] | None,
    timeout: int,
) -> dict[str, Any]:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    request = urllib.request.Request(url, data=data, method=method)
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        raw = exc.read().decode("utf-8", errors="ignore")
        raise ModelError(f"http_error {exc.code}: {raw[:500]}") from exc
    except urllib.error.URLError as exc:
        raise ModelError(f"network_error: {exc}") from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ModelError(f"invalid_response: {raw[:200]}") from exc


def _maybe_parse_json(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _validate_json(schema: dict[str, Any], payload: Any) -> dict[str, Any]:
    try:
        jsonschema.validate(payload, schema)
        return {"ok": True}
    except jsonschema.ValidationError as exc:
        return {"ok": False, "error": exc.message}
