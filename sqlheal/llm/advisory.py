"""
Query Advisory
==============
Optional LLM opinion on a rewrite: "are these two queries equivalent, and
is the new one faster?", plus targeted rewrites for fix types that have
no deterministic transform.

Parsing Contract:
    - Strip markdown code fences, then take the text from the first ``{``
      to the last ``}`` and decode it as JSON
    - Malformed or empty output is a typed failure (AdvisoryParseResult
      with ``error`` set), never an exception and never a silent default
    - Callers fall back to their rule-based result on any failure

Advisory output never upgrades a structurally invalid rewrite and never
decides whether a fix is applied; it can only add warnings or downgrade
semantic equivalence.
"""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from sqlheal.llm.client import LLMClient
from sqlheal.llm.prompts import (
    COMPARE_SYSTEM_PROMPT,
    REWRITE_SYSTEM_PROMPT,
    build_compare_prompt,
    build_rewrite_prompt,
)
from sqlheal.llm.router import LLMRouter
from sqlheal.models.fix import Fix

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Parsed advisory
# ---------------------------------------------------------------------------
@dataclass
class ParsedAdvisory:
    """Structured opinion extracted from an LLM response."""
    semantically_equivalent: Optional[bool] = None
    key_differences: List[str] = field(default_factory=list)
    estimated_speedup: Optional[float] = None
    improvement_areas: List[str] = field(default_factory=list)
    summary: str = ""
    rewritten_query: str = ""
    confidence: Optional[float] = None

    @property
    def flags_semantic_difference(self) -> bool:
        """True when the advisor says results may differ."""
        if self.semantically_equivalent is False:
            return True
        return any("semantic" in d.lower() for d in self.key_differences)


@dataclass
class AdvisoryParseResult:
    """Either a ParsedAdvisory or an error message."""
    advisory: Optional[ParsedAdvisory] = None
    error: str = ""
    provider_name: str = ""

    @property
    def ok(self) -> bool:
        return self.advisory is not None and not self.error


# ---------------------------------------------------------------------------
# Response Parsing
# ---------------------------------------------------------------------------
def _strip_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        first_newline = cleaned.find("\n")
        if first_newline != -1:
            cleaned = cleaned[first_newline + 1:]
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3].rstrip()
    return cleaned


def _as_str_list(value) -> List[str]:
    if isinstance(value, list):
        return [str(v) for v in value if v is not None]
    if isinstance(value, str) and value.strip():
        return [value]
    return []


def _as_float(value) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def parse_advisory_response(raw: str, provider_name: str = "") -> AdvisoryParseResult:
    """
    Parse an advisory LLM response into a typed result.

    Parameters
    ----------
    raw : str
        Raw text response from the LLM.
    provider_name : str
        Name of the provider that produced it (for logs).

    Returns
    -------
    AdvisoryParseResult
        ``ok`` with a ParsedAdvisory, or ``error`` describing why parsing failed.
    """
    if not raw or not raw.strip():
        return AdvisoryParseResult(error="Empty response from LLM", provider_name=provider_name)

    cleaned = _strip_fences(raw)
    start = cleaned.find("{")
    end = cleaned.rfind("}") + 1
    if start == -1 or end <= start:
        return AdvisoryParseResult(error="No JSON object in response", provider_name=provider_name)

    try:
        data = json.loads(cleaned[start:end])
    except json.JSONDecodeError as e:
        return AdvisoryParseResult(error=f"Invalid JSON: {e}", provider_name=provider_name)

    if not isinstance(data, dict):
        return AdvisoryParseResult(error="Expected JSON object", provider_name=provider_name)

    equivalent = data.get("semanticallyEquivalent")
    confidence = _as_float(data.get("confidence"))
    advisory = ParsedAdvisory(
        semantically_equivalent=equivalent if isinstance(equivalent, bool) else None,
        key_differences=_as_str_list(data.get("keyDifferences")),
        estimated_speedup=_as_float(data.get("estimatedSpeedup")),
        improvement_areas=_as_str_list(data.get("improvementAreas")),
        summary=str(data.get("summary") or data.get("explanation") or ""),
        rewritten_query=str(data.get("rewrittenQuery") or ""),
        confidence=max(0.0, min(1.0, confidence)) if confidence is not None else None,
    )
    return AdvisoryParseResult(advisory=advisory, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Advisor interface
# ---------------------------------------------------------------------------
class QueryAdvisor(ABC):
    """Capability interface for the optional advisory collaborator."""

    @property
    @abstractmethod
    def is_available(self) -> bool:
        ...

    @abstractmethod
    async def compare_queries(self, original: str, rewritten: str) -> AdvisoryParseResult:
        ...

    @abstractmethod
    async def rewrite_query(self, query_text: str, fix: Fix) -> AdvisoryParseResult:
        ...


# ---------------------------------------------------------------------------
# LLM-backed advisor
# ---------------------------------------------------------------------------
class LLMQueryAdvisor(QueryAdvisor):
    """
    Advisory collaborator backed by the provider router and httpx client.

    Parameters
    ----------
    router : LLMRouter or None
        Provider router (auto-created from the environment if not provided).
    client : LLMClient or None
        HTTP client (auto-created if not provided).
    """

    def __init__(
        self,
        router: Optional[LLMRouter] = None,
        client: Optional[LLMClient] = None,
    ) -> None:
        self.router = router or LLMRouter()
        self.client = client or LLMClient()

    @property
    def is_available(self) -> bool:
        return self.router.has_providers

    async def compare_queries(self, original: str, rewritten: str) -> AdvisoryParseResult:
        response = await self.client.call_with_fallback(
            build_compare_prompt(original, rewritten), COMPARE_SYSTEM_PROMPT, self.router,
        )
        if not response.success:
            return AdvisoryParseResult(error=response.error, provider_name=response.provider_name)
        result = parse_advisory_response(response.text, response.provider_name)
        if not result.ok:
            logger.warning("Advisory comparison from %s unparseable: %s", response.provider_name, result.error)
        return result

    async def rewrite_query(self, query_text: str, fix: Fix) -> AdvisoryParseResult:
        response = await self.client.call_with_fallback(
            build_rewrite_prompt(query_text, fix), REWRITE_SYSTEM_PROMPT, self.router,
        )
        if not response.success:
            return AdvisoryParseResult(error=response.error, provider_name=response.provider_name)
        result = parse_advisory_response(response.text, response.provider_name)
        if result.ok and not result.advisory.rewritten_query.strip():
            return AdvisoryParseResult(error="Response has no rewrittenQuery", provider_name=response.provider_name)
        return result

    async def close(self) -> None:
        await self.client.close()
