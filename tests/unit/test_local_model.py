"""
Unit tests for the local model tier.
"""

import asyncio
import json

import httpx
import pytest

from router_fakes import FakeRunner, model_json

from slm_router.catalog import DEFAULT_CATALOG
from slm_router.config import LocalModelConfig
from slm_router.errors import MalformedModelOutputError, ServiceUnavailableError
from slm_router.local_model import (
    LocalModelAdapter,
    ModelDecision,
    OllamaRunner,
    extract_json_object,
)


@pytest.fixture
def adapter():
    return LocalModelAdapter(FakeRunner(), DEFAULT_CATALOG)


# =============================================================================
# JSON extraction
# =============================================================================


class TestExtractJsonObject:
    """Tests for locating the JSON object in model output."""

    def test_plain_json(self):
        assert extract_json_object('{"tool_name": "emi_calc"}') == {"tool_name": "emi_calc"}

    def test_surrounding_prose(self):
        text = 'Sure! Here you go: {"tool_name": "emi_calc", "confidence": 0.8} Hope that helps.'
        assert extract_json_object(text)["confidence"] == 0.8

    def test_markdown_fence(self):
        text = '```json\n{"tool_name": "hsn_lookup"}\n```'
        assert extract_json_object(text) == {"tool_name": "hsn_lookup"}

    def test_skips_broken_brace(self):
        assert extract_json_object('{oops} {"a": 1}') == {"a": 1}

    @pytest.mark.parametrize("text", ["", "no json here", "[1, 2]", "{not json"])
    def test_no_object(self, text):
        with pytest.raises(MalformedModelOutputError):
            extract_json_object(text)


# =============================================================================
# Decision schema
# =============================================================================


class TestModelDecision:
    """Tests for the pydantic output schema."""

    def test_code_answer_alias(self):
        assert ModelDecision.model_validate({"codeAnswer": "Use calc()"}).code_answer == "Use calc()"
        assert ModelDecision.model_validate({"code_answer": "Use calc()"}).code_answer == "Use calc()"

    def test_blank_tool_is_none(self):
        assert ModelDecision.model_validate({"tool_name": "  "}).tool_name is None

    def test_non_string_tool_is_none(self):
        assert ModelDecision.model_validate({"tool_name": 42}).tool_name is None

    @pytest.mark.parametrize("raw", ["high", True, None, float("nan"), [0.9]])
    def test_non_numeric_confidence_missing(self, raw):
        assert ModelDecision.model_validate({"confidence": raw}).confidence is None

    @pytest.mark.parametrize("raw,expected", [(1.7, 1.0), (-3, 0.0), (0.42, 0.42)])
    def test_confidence_clamped(self, raw, expected):
        assert ModelDecision.model_validate({"confidence": raw}).confidence == expected

    @pytest.mark.parametrize("raw", ["true", 1, "yes", None])
    def test_escalate_must_be_true(self, raw):
        assert ModelDecision.model_validate({"escalate": raw}).escalate is False

    def test_null_parameters_dropped(self):
        decision = ModelDecision.model_validate({"parameters": {"gstin": None, "state": "MH"}})
        assert decision.parameters == {"state": "MH"}

    def test_extra_keys_ignored(self):
        decision = ModelDecision.model_validate({"tool_name": "emi_calc", "reasoning": "..."})
        assert decision.tool_name == "emi_calc"


# =============================================================================
# Prompt and parse
# =============================================================================


class TestBuildPrompt:
    """Tests for the routing prompt."""

    def test_lists_every_tool(self, adapter):
        prompt = adapter.build_prompt("Calculate EMI")
        for name, description in DEFAULT_CATALOG.describe():
            assert f"- {name}: {description}" in prompt
        assert prompt.endswith("Query: Calculate EMI")

    def test_tool_format_without_code(self, adapter):
        prompt = adapter.build_prompt("Calculate EMI")
        assert "escalate (boolean)" in prompt
        assert "codeAnswer" not in prompt

    def test_contexts_included(self, adapter):
        prompt = adapter.build_prompt(
            "How does calculateToll work?", memory_context="- past", code_context="### calc"
        )
        assert "Past similar routings (for reference):\n- past" in prompt
        assert "Relevant code from ANKR packages:\n### calc" in prompt
        assert "codeAnswer" in prompt


class TestParse:
    """Tests for tolerant output parsing."""

    def test_valid_decision(self, adapter):
        decision = adapter.parse(model_json("toll_estimate", {"origin": "Pune"}, confidence=0.85))
        assert decision.tool_name == "toll_estimate"
        assert decision.arguments == {"origin": "Pune"}
        assert decision.confidence == 0.85
        assert decision.escalate is False
        assert decision.error is None

    def test_missing_confidence_defaults_to_half(self, adapter):
        decision = adapter.parse(model_json("emi_calc", confidence=None))
        assert decision.confidence == 0.5
        assert decision.escalate is True

    def test_low_confidence_escalates(self, adapter):
        assert adapter.parse(model_json("emi_calc", confidence=0.6)).escalate is True

    def test_model_requested_escalation(self, adapter):
        decision = adapter.parse(model_json("emi_calc", confidence=0.95, escalate=True))
        assert decision.escalate is True
        assert decision.tool_name == "emi_calc"

    def test_unknown_tool_dropped(self, adapter):
        decision = adapter.parse(model_json("teleport", {"to": "Mars"}, confidence=0.99))
        assert decision.tool_name is None
        assert decision.arguments == {}
        assert decision.escalate is True
        assert adapter.get_statistics()["unknown_tools"] == 1

    @pytest.mark.parametrize(
        "content",
        ["", "I think you want GST", '{"parameters": [1, 2]}', '{"parameters": {"a": {"b": null}}}'],
    )
    def test_garbage_becomes_failed_decision(self, adapter, content):
        decision = adapter.parse(content)
        assert decision.tool_name is None
        assert decision.confidence == 0.0
        assert decision.escalate is True
        assert decision.error.startswith("parse error")

    def test_code_answer_needs_code_context(self, adapter):
        content = model_json(None, confidence=0.9, codeAnswer="Call calculateToll(route)")
        assert adapter.parse(content).code_answer is None
        assert adapter.parse(content, code_context_supplied=True).code_answer == (
            "Call calculateToll(route)"
        )

    @pytest.mark.parametrize("content", [None, 42, {"tool_name": "gst_verify"}])
    def test_non_text_content_becomes_failed_decision(self, adapter, content):
        decision = adapter.parse(content)
        assert decision.tool_name is None
        assert decision.confidence == 0.0
        assert decision.escalate is True
        assert adapter.get_statistics()["parse_failures"] == 1

    def test_deeply_nested_json_becomes_failed_decision(self, adapter):
        depth = 100_000
        content = '{"parameters": ' + "[" * depth + "]" * depth + "}"

        decision = adapter.parse(content)

        assert decision.tool_name is None
        assert decision.escalate is True
        assert decision.error.startswith("parse error")


class TestRoute:
    """Tests for the full tier-2 call."""

    @pytest.mark.asyncio
    async def test_route_uses_config(self):
        runner = FakeRunner(model_json("emi_calc", {"principal": 1000000}))
        adapter = LocalModelAdapter(runner, DEFAULT_CATALOG)

        decision = await adapter.route("Calculate EMI for 10 lakh")

        assert decision.tool_name == "emi_calc"
        assert decision.latency_ms >= 0
        assert runner.calls == 1
        assert "Query: Calculate EMI for 10 lakh" in runner.prompts[0]

    @pytest.mark.asyncio
    async def test_runner_error_becomes_failed_decision(self):
        runner = FakeRunner(error=ServiceUnavailableError("ollama", "refused"))
        adapter = LocalModelAdapter(runner, DEFAULT_CATALOG)

        decision = await adapter.route("Calculate EMI")

        assert decision.tool_name is None
        assert decision.escalate is True
        assert "ollama unavailable" in decision.error
        assert adapter.get_statistics()["errors"] == 1

    @pytest.mark.asyncio
    async def test_timeout(self):
        runner = FakeRunner(model_json("emi_calc"), delay=5)
        adapter = LocalModelAdapter(runner, DEFAULT_CATALOG, LocalModelConfig(timeout_seconds=0.05))

        decision = await adapter.route("Calculate EMI")

        assert decision.tool_name is None
        assert "Timeout" in decision.error

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        runner = FakeRunner(model_json("emi_calc"), delay=5)
        adapter = LocalModelAdapter(runner, DEFAULT_CATALOG)

        task = asyncio.create_task(adapter.route("Calculate EMI"))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_health(self):
        assert await LocalModelAdapter(FakeRunner(available=True)).health() is True
        assert await LocalModelAdapter(FakeRunner(available=False)).health() is False

    def test_statistics(self, adapter):
        stats = adapter.get_statistics()
        assert stats["calls"] == 0
        assert stats["avg_latency_ms"] == 0.0
        assert stats["model"] == {"backend": "fake"}


# =============================================================================
# Ollama runner
# =============================================================================


def _ollama_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestOllamaRunner:
    """Tests for the Ollama HTTP runner."""

    @pytest.mark.asyncio
    async def test_generate_payload(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"response": '{"tool_name": null}', "eval_count": 7})

        runner = OllamaRunner(LocalModelConfig(base_url="http://ollama:11434/"), _ollama_client(handler))
        result = await runner.generate("prompt", max_tokens=256, temperature=0.1)

        assert seen["url"] == "http://ollama:11434/api/generate"
        assert seen["body"]["model"] == "qwen2.5:1.5b"
        assert seen["body"]["format"] == "json"
        assert seen["body"]["stream"] is False
        assert seen["body"]["options"] == {"num_predict": 256, "temperature": 0.1}
        assert result.content == '{"tool_name": null}'
        assert result.tokens_generated == 7
        assert result.model_name == "qwen2.5:1.5b"

    @pytest.mark.asyncio
    async def test_transport_error_retried_once(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"response": "{}"})

        runner = OllamaRunner(client=_ollama_client(handler))
        result = await runner.generate("prompt", max_tokens=10, temperature=0.0)

        assert len(attempts) == 2
        assert result.content == "{}"

    @pytest.mark.asyncio
    async def test_second_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        runner = OllamaRunner(client=_ollama_client(handler))
        with pytest.raises(ServiceUnavailableError) as exc_info:
            await runner.generate("prompt", max_tokens=10, temperature=0.0)
        assert exc_info.value.service == "ollama"

    @pytest.mark.asyncio
    async def test_timeout_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ReadTimeout("slow", request=request)

        runner = OllamaRunner(client=_ollama_client(handler))
        with pytest.raises(ServiceUnavailableError):
            await runner.generate("prompt", max_tokens=10, temperature=0.0)
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_retry_disabled(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        runner = OllamaRunner(LocalModelConfig(retry_transient=False), _ollama_client(handler))
        with pytest.raises(ServiceUnavailableError):
            await runner.generate("prompt", max_tokens=10, temperature=0.0)
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        runner = OllamaRunner(client=_ollama_client(lambda request: httpx.Response(500)))
        with pytest.raises(ServiceUnavailableError):
            await runner.generate("prompt", max_tokens=10, temperature=0.0)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{"response": None}, {"response": 12}, {}, []])
    async def test_missing_text_response_is_empty(self, body):
        runner = OllamaRunner(client=_ollama_client(lambda request: httpx.Response(200, json=body)))
        result = await runner.generate("prompt", max_tokens=10, temperature=0.0)
        assert result.content == ""

    @pytest.mark.asyncio
    async def test_null_response_escalates_through_adapter(self):
        runner = OllamaRunner(
            client=_ollama_client(lambda request: httpx.Response(200, json={"response": None}))
        )
        adapter = LocalModelAdapter(runner, DEFAULT_CATALOG)

        decision = await adapter.route("Mumbai se Delhi truck chahiye")

        assert decision.tool_name is None
        assert decision.confidence == 0.0
        assert decision.escalate is True
        assert decision.error.startswith("parse error")

    @pytest.mark.asyncio
    async def test_is_available(self):
        def handler(request):
            assert request.url.path == "/api/tags"
            return httpx.Response(200, json={"models": []})

        assert await OllamaRunner(client=_ollama_client(handler)).is_available() is True

    @pytest.mark.asyncio
    async def test_not_available(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        assert await OllamaRunner(client=_ollama_client(handler)).is_available() is False

    @pytest.mark.asyncio
    async def test_aclose_keeps_injected_client(self):
        client = _ollama_client(lambda request: httpx.Response(200))
        runner = OllamaRunner(client=client)
        await runner.aclose()
        assert not client.is_closed
        await client.aclose()

    def test_model_info(self):
        info = OllamaRunner(LocalModelConfig(model_name="phi3:mini")).get_model_info()
        assert info == {
            "backend": "ollama",
            "base_url": "http://localhost:11434",
            "model_name": "phi3:mini",
        }
