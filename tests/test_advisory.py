"""
Advisory Tests
==============
Covers:
    - Strict advisory response parsing (fences, extraction, typed errors)
    - Provider routing, credential filtering and cooldown
    - LLMClient provider calls via httpx.MockTransport (no network)
    - LLMQueryAdvisor wiring with a mocked client

No real LLM calls.
"""
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import httpx

from sqlheal.llm.advisory import LLMQueryAdvisor, parse_advisory_response
from sqlheal.llm.client import LLMClient, LLMResponse
from sqlheal.llm.prompts import build_compare_prompt, build_rewrite_prompt
from sqlheal.llm.router import LLMRouter, ProviderConfig
from sqlheal.models.fix import Fix, FixType


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _make_provider(name: str = "groq", api_key: str = "test-key") -> ProviderConfig:
    return ProviderConfig(name=name, api_key=api_key, base_url=f"https://{name}.test/v1", model="m")


def _make_mock_client(handler) -> LLMClient:
    client = LLMClient()
    client._http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return client


COMPARE_JSON = {
    "semanticallyEquivalent": True,
    "keyDifferences": [],
    "estimatedSpeedup": 1.4,
    "improvementAreas": ["index seek"],
    "summary": "Equivalent, IN list enables a seek",
}


# ===================================================================
# Response parsing
# ===================================================================
def test_parse_plain_json():
    result = parse_advisory_response(json.dumps(COMPARE_JSON), "groq")
    assert result.ok
    assert result.provider_name == "groq"
    assert result.advisory.semantically_equivalent is True
    assert result.advisory.estimated_speedup == 1.4
    assert result.advisory.improvement_areas == ["index seek"]
    assert not result.advisory.flags_semantic_difference


def test_parse_fenced_json_with_prose():
    raw = "```json\nHere you go: " + json.dumps(COMPARE_JSON) + " hope it helps\n```"
    result = parse_advisory_response(raw)
    assert result.ok
    assert result.advisory.summary == "Equivalent, IN list enables a seek"


def test_parse_empty_response_is_error():
    result = parse_advisory_response("   ")
    assert not result.ok
    assert result.error == "Empty response from LLM"


def test_parse_without_json_is_error():
    result = parse_advisory_response("The queries look equivalent to me.")
    assert not result.ok
    assert result.error == "No JSON object in response"


def test_parse_invalid_json_is_error():
    result = parse_advisory_response('{"semanticallyEquivalent": tru}')
    assert not result.ok
    assert result.error.startswith("Invalid JSON")


def test_semantic_difference_flagged_by_key_differences():
    raw = json.dumps({"keyDifferences": ["Semantic change: NULL rows excluded"]})
    result = parse_advisory_response(raw)
    assert result.ok
    assert result.advisory.semantically_equivalent is None
    assert result.advisory.flags_semantic_difference


def test_rewrite_confidence_is_clamped():
    raw = json.dumps({"rewrittenQuery": "SELECT 1", "confidence": 3, "explanation": "x"})
    advisory = parse_advisory_response(raw).advisory
    assert advisory.rewritten_query == "SELECT 1"
    assert advisory.confidence == 1.0
    assert advisory.summary == "x"


def test_prompts_carry_both_queries_and_fix_detail():
    compare = build_compare_prompt("SELECT 1 ", " SELECT 2")
    assert "ORIGINAL QUERY:\nSELECT 1" in compare
    assert "REWRITTEN QUERY:\nSELECT 2" in compare

    fix = Fix(fix_type=FixType.DISTINCT_REVIEW, title="Review DISTINCT", before_snippet="SELECT DISTINCT")
    rewrite = build_rewrite_prompt("SELECT DISTINCT a FROM t", fix)
    assert "ISSUE: Review DISTINCT" in rewrite
    assert "EVIDENCE: SELECT DISTINCT" in rewrite


# ===================================================================
# Router
# ===================================================================
def test_router_ignores_providers_without_credentials():
    router = LLMRouter(providers=[_make_provider("groq", ""), _make_provider("gemini")])
    assert [p.name for p in router.candidates()] == ["gemini"]
    assert LLMRouter(providers=[_make_provider("groq", "")]).has_providers is False


def test_router_cooldown_and_recovery():
    router = LLMRouter(providers=[_make_provider("a"), _make_provider("b")])
    for _ in range(4):
        router.report_failure("a")

    assert router.get_health("a").is_healthy is False
    for _ in range(4):
        assert [p.name for p in router.candidates()] == ["b"]
    assert [p.name for p in router.candidates()] == ["a", "b"]
    assert router.provider_health_state["a"]["is_healthy"] is True


def test_router_last_resort_when_all_unhealthy():
    router = LLMRouter(providers=[_make_provider("a")])
    for _ in range(4):
        router.report_failure("a")
    assert [p.name for p in router.candidates()] == ["a"]


# ===================================================================
# LLMClient
# ===================================================================
def test_openai_compatible_call():
    async def run_test():
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path.endswith("/chat/completions")
            assert request.headers["Authorization"] == "Bearer test-key"
            return httpx.Response(200, json={"choices": [{"message": {"content": "{\"summary\": \"ok\"}"}}]})

        client = _make_mock_client(handler)
        response = await client.call("user", "system", _make_provider())
        await client.close()

        assert response.success
        assert response.text == "{\"summary\": \"ok\"}"

    asyncio.run(run_test())


def test_gemini_call():
    async def run_test():
        def handler(request: httpx.Request) -> httpx.Response:
            assert ":generateContent" in request.url.path
            return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "{}"}]}}]})

        client = _make_mock_client(handler)
        response = await client.call("user", "system", _make_provider("gemini"))
        await client.close()
        assert response.success
        assert response.text == "{}"

    asyncio.run(run_test())


def test_rate_limit_fails_without_retry():
    async def run_test():
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(429, json={"error": "slow down"})

        client = _make_mock_client(handler)
        provider = _make_provider()
        provider.max_retries = 3
        response = await client.call("user", "system", provider)
        await client.close()

        assert not response.success
        assert len(calls) == 1

    asyncio.run(run_test())


def test_fallback_to_next_provider():
    async def run_test():
        router = LLMRouter(providers=[_make_provider("a"), _make_provider("b")])
        client = LLMClient()
        client.call = AsyncMock(side_effect=[
            LLMResponse(text="", provider_name="a", success=False, error="down"),
            LLMResponse(text="{}", provider_name="b"),
        ])

        response = await client.call_with_fallback("user", "system", router)
        assert response.success
        assert response.provider_name == "b"
        assert router.get_health("a").consecutive_failures == 1

    asyncio.run(run_test())


def test_fallback_without_providers():
    async def run_test():
        response = await LLMClient().call_with_fallback("user", "system", LLMRouter(providers=[]))
        assert not response.success
        assert response.error == "No advisory provider configured"

    asyncio.run(run_test())


# ===================================================================
# LLMQueryAdvisor
# ===================================================================
def test_advisor_compare_queries():
    async def run_test():
        client = MagicMock(spec=LLMClient)
        client.call_with_fallback = AsyncMock(return_value=LLMResponse(
            text=json.dumps({"semanticallyEquivalent": False, "keyDifferences": ["NULLs"]}),
            provider_name="groq",
        ))
        advisor = LLMQueryAdvisor(router=LLMRouter(providers=[_make_provider()]), client=client)

        assert advisor.is_available
        result = await advisor.compare_queries("SELECT 1", "SELECT 2")
        assert result.ok
        assert result.advisory.flags_semantic_difference

    asyncio.run(run_test())


def test_advisor_rewrite_requires_query():
    async def run_test():
        client = MagicMock(spec=LLMClient)
        client.call_with_fallback = AsyncMock(return_value=LLMResponse(
            text=json.dumps({"confidence": 0.9}), provider_name="groq",
        ))
        advisor = LLMQueryAdvisor(router=LLMRouter(providers=[_make_provider()]), client=client)

        result = await advisor.rewrite_query("SELECT DISTINCT a FROM t", Fix(fix_type=FixType.DISTINCT_REVIEW))
        assert not result.ok
        assert result.error == "Response has no rewrittenQuery"

    asyncio.run(run_test())


def test_advisor_provider_failure_is_typed_error():
    async def run_test():
        client = MagicMock(spec=LLMClient)
        client.call_with_fallback = AsyncMock(return_value=LLMResponse(
            text="", provider_name="groq", success=False, error="All providers failed",
        ))
        advisor = LLMQueryAdvisor(router=LLMRouter(providers=[_make_provider()]), client=client)

        result = await advisor.compare_queries("SELECT 1", "SELECT 2")
        assert not result.ok
        assert result.error == "All providers failed"

    asyncio.run(run_test())
