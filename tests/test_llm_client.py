import json

import httpx

from gateway import llm_client
from gateway.llm_client import (
    FALLBACK_CHAIN,
    SEARCH_CHAIN,
    TextGenerationRequest,
    candidate_models,
    normalize_messages,
)
from tests.conftest import ALLOWED_ORIGIN

TEXT_URL = "/api/ai/groq"


def _ok(content="hello"):
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


def _err(status, message):
    return httpx.Response(status, json={"error": {"message": message}})


def scripted(*responses):
    queue = list(responses)

    def handler(request):
        if isinstance(queue[0], Exception):
            raise queue.pop(0)
        return queue.pop(0)

    return handler


def _models_called(upstream):
    return [json.loads(r.content)["model"] for r in upstream.requests]


def test_normalize_messages_drops_empty_and_roleless_turns():
    body = {
        "messages": [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": ""},
            {"content": "no role"},
            {"role": "user", "content": 42},
            {"role": "user", "content": "hi"},
        ]
    }
    assert normalize_messages(body) == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "hi"},
    ]


def test_normalize_messages_from_prompt_pair():
    body = {"prompt": "write a haiku", "systemPrompt": "you are a poet"}
    assert normalize_messages(body) == [
        {"role": "system", "content": "you are a poet"},
        {"role": "user", "content": "write a haiku"},
    ]
    assert normalize_messages({"prompt": "", "systemPrompt": ""}) == []
    assert normalize_messages(["not", "a", "dict"]) == []


def test_candidate_models_prepends_requested_and_dedupes():
    models = candidate_models(llm_client.MODEL_VERSATILE)
    assert models[0] == llm_client.MODEL_VERSATILE
    assert models.count(llm_client.MODEL_VERSATILE) == 1
    assert len(models) == len(FALLBACK_CHAIN)

    custom = candidate_models("custom/model")
    assert custom == ["custom/model", *FALLBACK_CHAIN]


def test_candidate_models_search_replaces_chain():
    assert candidate_models("custom/model", search=True) == list(SEARCH_CHAIN)


def test_two_server_errors_then_success(make_client):
    client, upstream = make_client(scripted(_err(500, "boom"), _err(502, "bad gateway"), _ok("third time")))
    r = client.post(TEXT_URL, json={"prompt": "hi"}, headers={"Origin": ALLOWED_ORIGIN})
    assert r.status_code == 200
    assert r.json() == {"content": "third time", "model": FALLBACK_CHAIN[2]}
    assert upstream.calls == 3
    assert _models_called(upstream) == list(FALLBACK_CHAIN[:3])


def test_terminal_error_is_surfaced_after_one_call(make_client):
    client, upstream = make_client(scripted(_err(401, "invalid api key")))
    r = client.post(TEXT_URL, json={"prompt": "hi"})
    assert r.status_code == 401
    assert r.json() == {"error": "invalid api key", "model": FALLBACK_CHAIN[0]}
    assert upstream.calls == 1


def test_exhaustion_returns_503_with_last_error(make_client):
    responses = [_err(429, f"rate limited #{i}") for i in range(len(FALLBACK_CHAIN))]
    client, upstream = make_client(scripted(*responses))
    r = client.post(TEXT_URL, json={"prompt": "hi"})
    assert r.status_code == 503
    assert r.json() == {"error": f"rate limited #{len(FALLBACK_CHAIN) - 1}"}
    assert upstream.calls == len(FALLBACK_CHAIN)


def test_context_too_long_advances(make_client):
    client, upstream = make_client(
        scripted(_err(400, "Please reduce the length of the messages"), _ok("short enough"))
    )
    r = client.post(TEXT_URL, json={"prompt": "hi"})
    assert r.status_code == 200
    assert r.json()["model"] == FALLBACK_CHAIN[1]
    assert upstream.calls == 2


def test_search_mode_advances_on_access_errors(make_client):
    client, upstream = make_client(scripted(_err(403, "nope"), _ok("found it")))
    r = client.post(TEXT_URL, json={"prompt": "news today", "search": True})
    assert r.status_code == 200
    assert r.json() == {"content": "found it", "model": llm_client.MODEL_SEARCH_MINI}
    assert _models_called(upstream) == list(SEARCH_CHAIN)


def test_access_error_is_terminal_outside_search(make_client):
    client, upstream = make_client(scripted(_err(403, "nope")))
    r = client.post(TEXT_URL, json={"prompt": "hi"})
    assert r.status_code == 403
    assert upstream.calls == 1


def test_transport_error_counts_as_retryable(make_client):
    client, upstream = make_client(scripted(httpx.ConnectError("connection refused"), _ok("recovered")))
    r = client.post(TEXT_URL, json={"prompt": "hi"})
    assert r.status_code == 200
    assert r.json()["model"] == FALLBACK_CHAIN[1]
    assert upstream.calls == 2


def test_non_json_error_body_uses_status_message(make_client):
    client, upstream = make_client(scripted(httpx.Response(400, text="<html>nope</html>")))
    r = client.post(TEXT_URL, json={"prompt": "hi"})
    assert r.status_code == 400
    assert r.json()["error"] == "Groq API error (400)"


def test_requested_model_and_options_are_forwarded(make_client):
    client, upstream = make_client(scripted(_ok()))
    r = client.post(
        TEXT_URL,
        json={
            "messages": [{"role": "user", "content": "hi"}],
            "options": {"model": "custom/model", "maxTokens": 64, "temperature": 0.2},
        },
    )
    assert r.status_code == 200
    sent = json.loads(upstream.requests[0].content)
    assert sent["model"] == "custom/model"
    assert sent["max_tokens"] == 64
    assert sent["temperature"] == 0.2
    assert sent["messages"] == [{"role": "user", "content": "hi"}]
    assert upstream.requests[0].headers["authorization"] == "Bearer test-groq-key"


def test_default_generation_options(make_client):
    client, upstream = make_client(scripted(_ok()))
    client.post(TEXT_URL, json={"prompt": "hi"})
    sent = json.loads(upstream.requests[0].content)
    assert sent["max_tokens"] == 1024
    assert sent["temperature"] == 0.7


def test_missing_credential_returns_500_without_upstream(make_client):
    client, upstream = make_client(groq_api_key="")
    r = client.post(TEXT_URL, json={"prompt": "hi"})
    assert r.status_code == 500
    assert "GROQ_API_KEY" in r.json()["error"]
    assert upstream.calls == 0


def test_invalid_json_and_empty_messages_are_client_errors(make_client):
    client, upstream = make_client()
    r = client.post(TEXT_URL, content=b"{not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid JSON request body."}

    r = client.post(TEXT_URL, json={"messages": [], "prompt": ""})
    assert r.status_code == 400
    assert r.json() == {"error": "Missing prompt/messages."}
    assert upstream.calls == 0


def test_invalid_options_are_client_errors(make_client):
    client, upstream = make_client()
    r = client.post(TEXT_URL, json={"prompt": "hi", "options": {"maxTokens": "lots"}})
    assert r.status_code == 400
    assert upstream.calls == 0


def test_null_generation_options_fall_back_to_defaults(make_client):
    client, upstream = make_client(scripted(_ok()))
    r = client.post(TEXT_URL, json={"prompt": "hi", "options": {"maxTokens": None, "temperature": None}})
    assert r.status_code == 200
    sent = json.loads(upstream.requests[0].content)
    assert sent["max_tokens"] == 1024
    assert sent["temperature"] == 0.7


def test_out_of_range_options_are_left_to_the_provider(make_client):
    client, upstream = make_client(scripted(_err(400, "invalid sampling options")))
    r = client.post(TEXT_URL, json={"prompt": "hi", "options": {"maxTokens": 0, "temperature": 5}})
    assert r.status_code == 400
    assert r.json() == {"error": "invalid sampling options", "model": FALLBACK_CHAIN[0]}
    sent = json.loads(upstream.requests[0].content)
    assert sent["max_tokens"] == 0
    assert sent["temperature"] == 5


def test_text_generation_request_is_loose():
    req = TextGenerationRequest.model_validate(
        {"prompt": "hi", "systemPrompt": "be brief", "search": 1, "options": "fast", "extra": True}
    )
    assert req.search is True
    assert req.options.max_tokens == 1024
    assert req.options.model is None
    assert req.chat_messages() == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "hi"},
    ]
    assert TextGenerationRequest.model_validate({"messages": "nope"}).chat_messages() == []
