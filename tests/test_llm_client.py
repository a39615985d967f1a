"""
Tests for the LLM client.

The HTTP session is mocked; no network access is needed.
"""

from unittest.mock import MagicMock

import pytest
import requests

from src.agents.exceptions import ExternalServiceError
from src.agents.llm_client import CompletionResult, LLMClient


def _response(ok=True, status_code=200, payload=None, text=""):
    response = MagicMock()
    response.ok = ok
    response.status_code = status_code
    response.text = text
    response.json.return_value = payload if payload is not None else {
        "choices": [{"message": {"role": "assistant", "content": "hello there"}}]
    }
    return response


def _make_client(session=None, **overrides):
    config = {
        "llm_api_key": "test-key",
        "llm_model": "test-model",
        "llm_base_url": "https://llm.example.com/api/v1/",
        "retry_delay_seconds": 0,
        "min_request_interval_seconds": 0,
    }
    config.update(overrides)
    return LLMClient(config, session=session or MagicMock())


class TestCompletionResult:

    def test_ok_result(self):
        result = CompletionResult(text="generated")

        assert result.ok
        assert result.unwrap_or("fallback") == "generated"

    def test_error_result_uses_fallback(self):
        result = CompletionResult(error=ExternalServiceError("down"))

        assert not result.ok
        assert result.unwrap_or("fallback") == "fallback"

    def test_blank_text_uses_fallback(self):
        assert CompletionResult(text="   ").unwrap_or("fallback") == "fallback"


class TestLLMClientInit:

    def test_disabled_without_api_key(self, monkeypatch):
        monkeypatch.delenv("LLM_API_KEY", raising=False)

        client = LLMClient({})

        assert not client.enabled
        assert not client.is_available()

    def test_api_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("LLM_API_KEY", "env-key")

        client = LLMClient({"min_request_interval_seconds": 0}, session=MagicMock())

        assert client.is_available()

    def test_disabled_by_config(self):
        client = _make_client(use_llm=False)

        assert not client.is_available()
        assert client.get_status()["enabled"] is False

    def test_base_url_trailing_slash_stripped(self):
        assert _make_client().base_url == "https://llm.example.com/api/v1"


class TestComplete:
    """LLMClient.complete()"""

    def test_posts_chat_completion(self):
        session = MagicMock()
        session.post.return_value = _response()
        client = _make_client(session)

        text = client.complete(
            [{"role": "user", "content": "hi"}],
            system_prompt="be brief",
            temperature=0.2,
            max_tokens=50,
        )

        assert text == "hello there"
        args, kwargs = session.post.call_args
        assert args[0] == "https://llm.example.com/api/v1/chat/completions"
        assert kwargs["json"] == {
            "model": "test-model",
            "messages": [
                {"role": "system", "content": "be brief"},
                {"role": "user", "content": "hi"},
            ],
            "temperature": 0.2,
            "max_tokens": 50,
        }
        assert kwargs["headers"]["Authorization"] == "Bearer test-key"
        assert kwargs["timeout"] == 30.0

    def test_timeout_from_config(self):
        session = MagicMock()
        session.post.return_value = _response()
        client = _make_client(session, request_timeout_seconds=5)

        client.complete([{"role": "user", "content": "hi"}])

        assert session.post.call_args.kwargs["timeout"] == 5

    def test_missing_content_is_empty_string(self):
        session = MagicMock()
        session.post.return_value = _response(payload={"choices": []})

        assert _make_client(session).complete([{"role": "user", "content": "hi"}]) == ""

    def test_non_2xx_raises_after_retries(self):
        session = MagicMock()
        session.post.return_value = _response(ok=False, status_code=502, text="bad gateway")
        client = _make_client(session, max_retries=3)

        with pytest.raises(ExternalServiceError) as exc_info:
            client.complete([{"role": "user", "content": "hi"}])

        assert exc_info.value.status_code == 502
        assert session.post.call_count == 3

    def test_network_error_raises(self):
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("no route to host")
        client = _make_client(session, max_retries=1)

        with pytest.raises(ExternalServiceError):
            client.complete([{"role": "user", "content": "hi"}])

    def test_invalid_json_raises(self):
        session = MagicMock()
        response = _response()
        response.json.side_effect = ValueError("Expecting value")
        session.post.return_value = response
        client = _make_client(session, max_retries=1)

        with pytest.raises(ExternalServiceError):
            client.complete([{"role": "user", "content": "hi"}])

    @pytest.mark.parametrize("payload", [
        [],
        {"choices": "not a list"},
        {"choices": ["plain string"]},
        {"choices": [{"message": "plain string"}]},
        {"choices": [{"message": {"content": [{"type": "text", "text": "hi"}]}}]},
    ])
    def test_malformed_payload_raises_service_error(self, payload):
        session = MagicMock()
        session.post.return_value = _response(payload=payload)
        client = _make_client(session, max_retries=1)

        with pytest.raises(ExternalServiceError, match="Malformed completion response"):
            client.complete([{"role": "user", "content": "hi"}])

    def test_try_complete_wraps_malformed_payload(self):
        session = MagicMock()
        session.post.return_value = _response(payload=[])

        result = _make_client(session, max_retries=1).try_complete([{"role": "user", "content": "hi"}])

        assert not result.ok
        assert isinstance(result.error, ExternalServiceError)

    def test_recovers_on_retry(self):
        session = MagicMock()
        session.post.side_effect = [requests.Timeout("slow"), _response()]
        client = _make_client(session, max_retries=3)

        assert client.complete([{"role": "user", "content": "hi"}]) == "hello there"
        assert session.post.call_count == 2

    def test_disabled_client_raises(self):
        with pytest.raises(ExternalServiceError):
            _make_client(use_llm=False).complete([{"role": "user", "content": "hi"}])


class TestHelpers:
    """Call-site helpers return CompletionResult and never raise."""

    def test_try_complete_wraps_errors(self):
        result = _make_client(use_llm=False).try_complete([{"role": "user", "content": "hi"}])

        assert not result.ok
        assert isinstance(result.error, ExternalServiceError)

    def test_generate_schema_prompt(self):
        session = MagicMock()
        session.post.return_value = _response()
        client = _make_client(session)

        result = client.generate_schema("low risk, $1000")

        assert result.ok
        body = session.post.call_args.kwargs["json"]
        assert body["temperature"] == 0.2
        assert "riskTolerance" in body["messages"][0]["content"]
        assert "low risk, $1000" in body["messages"][1]["content"]

    def test_agent_message_uses_persona(self):
        session = MagicMock()
        session.post.return_value = _response()
        client = _make_client(session)

        client.generate_agent_message("matching", "Allocated $500", "info")

        body = session.post.call_args.kwargs["json"]
        assert "Portfolio Optimization Engineer" in body["messages"][0]["content"]
        assert "Allocated $500" in body["messages"][1]["content"]

    @pytest.mark.parametrize("call", [
        lambda c: c.find_arbitrage_opportunities({"spreads": []}),
        lambda c: c.match_opportunities({"risk_tolerance": "low"}, [{"id": "arb-1"}]),
        lambda c: c.generate_agent_message("arbitrage", "context", "alert"),
    ])
    def test_helpers_return_failed_result_when_down(self, call):
        session = MagicMock()
        session.post.return_value = _response(ok=False, status_code=500)
        client = _make_client(session, max_retries=1)

        result = call(client)

        assert isinstance(result, CompletionResult)
        assert not result.ok
        assert result.error.status_code == 500
