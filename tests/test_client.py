"""
Unit tests for the remote classifier client.
"""
import json

import pytest
import requests
import responses
from tenacity import wait_none

from core.config import Settings
from core.exceptions import ConfigurationError, RemoteServiceError, ValidationError
from llm.client import LLMClient, parse_response_body, strip_code_fences
from services.cascade import ClassificationCascade

GATEWAY_URL = "https://gateway.test/v1/chat/completions"
ANSWER = {"category": "Shopping", "subcategory": "Retail", "confidence": 0.9, "reasoning": ["Store"]}


def make_client(**overrides) -> LLMClient:
    values = {"OPENAI_API_KEY": "test-key", "OPENAI_GATEWAY_URL": GATEWAY_URL, "OPENAI_MAX_RETRIES": 3}
    values.update(overrides)
    client = LLMClient(Settings(**values))
    client.retry_wait = wait_none()
    return client


def completion(content, usage=None):
    body = {"choices": [{"message": {"role": "assistant", "content": content}}]}
    if usage is not None:
        body["usage"] = usage
    return body


def test_missing_api_key():
    with pytest.raises(ConfigurationError):
        LLMClient(Settings(OPENAI_API_KEY=None))


@responses.activate
def test_complete_json_success():
    responses.add(
        responses.POST, GATEWAY_URL,
        json=completion(json.dumps(ANSWER), usage={"prompt_tokens": 120, "completion_tokens": 30}),
    )
    client = make_client()

    result = client.complete_json("system", "user", max_completion_tokens=300)

    assert result.data == ANSWER
    assert result.input_tokens == 120
    assert result.output_tokens == 30
    assert result.total_tokens == 150

    request = responses.calls[0].request
    assert request.headers["Authorization"] == "Bearer test-key"
    payload = json.loads(request.body)
    assert payload["response_format"] == {"type": "json_object"}
    assert payload["max_completion_tokens"] == 300
    assert [m["role"] for m in payload["messages"]] == ["system", "user"]


@responses.activate
def test_gateway_output_format_and_code_fences():
    body = {
        "output": [{
            "type": "message",
            "role": "assistant",
            "content": [{"type": "output_text", "text": "```json\n" + json.dumps(ANSWER) + "\n```"}],
        }],
        "usage": {"input_tokens": 10, "output_tokens": 4},
    }
    responses.add(responses.POST, GATEWAY_URL, json=body)

    result = make_client().complete_json("system", "user")

    assert result.data == ANSWER
    assert result.input_tokens == 10


@responses.activate
def test_transient_error_is_retried():
    responses.add(responses.POST, GATEWAY_URL, status=503)
    responses.add(responses.POST, GATEWAY_URL, json=completion(json.dumps(ANSWER)))

    result = make_client().complete_json("system", "user")

    assert result.data == ANSWER
    assert result.total_tokens is None
    assert len(responses.calls) == 2


@responses.activate
def test_retries_stop_after_max_attempts():
    responses.add(responses.POST, GATEWAY_URL, status=429)

    with pytest.raises(RemoteServiceError) as exc_info:
        make_client().complete_json("system", "user")

    assert exc_info.value.status_code == 429
    assert exc_info.value.retryable is True
    assert len(responses.calls) == 3


@responses.activate
def test_client_error_is_not_retried():
    responses.add(responses.POST, GATEWAY_URL, status=400, json={"error": "bad request"})

    with pytest.raises(RemoteServiceError) as exc_info:
        make_client().complete_json("system", "user")

    assert exc_info.value.status_code == 400
    assert exc_info.value.retryable is False
    assert len(responses.calls) == 1


@responses.activate
def test_connection_error_is_retried():
    responses.add(responses.POST, GATEWAY_URL, body=requests.exceptions.ConnectionError("refused"))

    with pytest.raises(RemoteServiceError):
        make_client(OPENAI_MAX_RETRIES=2).complete_json("system", "user")

    assert len(responses.calls) == 2


@responses.activate
def test_invalid_json_answer_is_not_retried():
    responses.add(responses.POST, GATEWAY_URL, json=completion("Sorry, I cannot help with that"))

    with pytest.raises(ValidationError):
        make_client().complete_json("system", "user")

    assert len(responses.calls) == 1


@responses.activate
def test_non_object_answer_is_rejected():
    responses.add(responses.POST, GATEWAY_URL, json=completion("[1, 2, 3]"))

    with pytest.raises(ValidationError):
        make_client().complete_json("system", "user")


def test_parse_response_body_ndjson():
    """Streaming gateways send NDJSON; the last completion object wins."""
    lines = [
        json.dumps({"status": "started"}),
        json.dumps(completion("{}")),
    ]
    assert parse_response_body("\n".join(lines)) == completion("{}")


def test_parse_response_body_errors():
    with pytest.raises(ValidationError):
        parse_response_body("   ")
    with pytest.raises(ValidationError):
        parse_response_body('{"status": "started"}\nnot json')
    with pytest.raises(ValidationError):
        parse_response_body("[1, 2]")


def test_strip_code_fences():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('{"a": 1}') == '{"a": 1}'


@pytest.mark.parametrize("body", [
    {"output": ["not-a-dict"]},
    {"output": [{"type": "message", "role": "assistant", "content": "plain text"}]},
    {"output": "not-a-list"},
    {"choices": [{"message": {"content": ["x"]}}]},
    {"choices": [{"message": {"content": {"category": "Shopping"}}}]},
])
@responses.activate
def test_wrong_shaped_completion_is_a_validation_error(body):
    responses.add(responses.POST, GATEWAY_URL, json=body)

    with pytest.raises(ValidationError):
        make_client().complete_json("system", "user")

    assert len(responses.calls) == 1


@responses.activate
def test_non_integer_usage_is_ignored():
    responses.add(
        responses.POST, GATEWAY_URL,
        json=completion(json.dumps(ANSWER), usage={"prompt_tokens": "many", "completion_tokens": 12.5}),
    )

    result = make_client().complete_json("system", "user")

    assert result.input_tokens is None
    assert result.output_tokens is None


@responses.activate
def test_cascade_falls_back_on_wrong_shaped_completion(transaction_factory):
    responses.add(responses.POST, GATEWAY_URL, json={"output": ["not-a-dict"]})
    cascade = ClassificationCascade(client=make_client(), pattern_confidence_floor=0.6)

    result = cascade.classify(transaction_factory(description="MYSTERY ITEM"))

    assert result.source == "fallback"
    assert cascade.fallback_mode is True
