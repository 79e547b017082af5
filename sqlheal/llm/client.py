"""
LLM Client
==========
Unified asynchronous client wrapper for the advisory LLM providers.
Supports Gemini (REST) and OpenAI-compatible endpoints (Groq, OpenRouter).

Provider Fallback:
    - Providers are tried in the router's order
    - Fallback triggers on: HTTP error, timeout, rate limit, empty response
    - A 429 switches provider immediately without retrying

The client returns raw text only. Turning that text into a structured
opinion (and deciding what to do when it is malformed) belongs to
sqlheal.llm.advisory.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from sqlheal.llm.router import ProviderConfig, LLMRouter

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# LLM Response
# ---------------------------------------------------------------------------
@dataclass
class LLMResponse:
    """Raw text returned by one provider call."""
    text: str
    provider_name: str
    success: bool = True
    error: str = ""


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------
class LLMClient:
    """
    Async HTTP client for calling LLM providers.

    Usage:
        client = LLMClient()
        response = await client.call_with_fallback(prompt, system_prompt, router)
        await client.close()
    """

    def __init__(self) -> None:
        self._http: Optional[httpx.AsyncClient] = None

    async def _get_http(self) -> httpx.AsyncClient:
        """Lazy-initialise the HTTP client."""
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=httpx.Timeout(30.0))
        return self._http

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http and not self._http.is_closed:
            await self._http.aclose()
            self._http = None

    async def call(
        self,
        user_prompt: str,
        system_prompt: str,
        provider: ProviderConfig,
    ) -> LLMResponse:
        """
        Send a prompt to the specified provider.

        Parameters
        ----------
        user_prompt : str
            The comparison or rewrite prompt.
        system_prompt : str
            The system prompt with output rules.
        provider : ProviderConfig
            Provider configuration.

        Returns
        -------
        LLMResponse
            Raw text on success; success=False with error otherwise.
        """
        for attempt in range(1, provider.max_retries + 1):
            try:
                if provider.name == "gemini":
                    raw = await self._call_gemini(user_prompt, system_prompt, provider)
                else:
                    raw = await self._call_openai_compatible(user_prompt, system_prompt, provider)

                if raw and raw.strip():
                    return LLMResponse(text=raw, provider_name=provider.name)

                logger.warning("Provider %s attempt %d: empty response", provider.name, attempt)

            except httpx.TimeoutException:
                logger.warning("Provider %s attempt %d: timeout", provider.name, attempt)
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                logger.warning("Provider %s attempt %d: HTTP %d", provider.name, attempt, status)
                if status == 429:
                    break
            except httpx.HTTPError as e:
                logger.warning("Provider %s attempt %d: %s", provider.name, attempt, e)
            except ValueError as e:
                logger.warning("Provider %s attempt %d: invalid response body: %s", provider.name, attempt, e)

        return LLMResponse(
            text="",
            provider_name=provider.name,
            success=False,
            error=f"All {provider.max_retries} attempt(s) failed for {provider.name}",
        )

    async def _call_gemini(
        self,
        user_prompt: str,
        system_prompt: str,
        provider: ProviderConfig,
    ) -> str:
        """Call Gemini REST API."""
        http = await self._get_http()
        url = (
            f"{provider.base_url}/models/{provider.model}:generateContent"
            f"?key={provider.api_key}"
        )
        payload = {
            "system_instruction": {"parts": [{"text": system_prompt}]},
            "contents": [{"parts": [{"text": user_prompt}]}],
            "generationConfig": {
                "temperature": 0.0,
                "maxOutputTokens": 2048,
                "responseMimeType": "application/json",
            },
        }
        resp = await http.post(url, json=payload, timeout=provider.timeout_seconds)
        resp.raise_for_status()
        data = resp.json()

        candidates = data.get("candidates") or []
        if candidates:
            parts = (candidates[0].get("content") or {}).get("parts") or []
            if parts:
                return parts[0].get("text", "")
        return ""

    async def _call_openai_compatible(
        self,
        user_prompt: str,
        system_prompt: str,
        provider: ProviderConfig,
    ) -> str:
        """Call OpenAI-compatible API (Groq, OpenRouter)."""
        http = await self._get_http()
        url = f"{provider.base_url}/chat/completions"
        headers = {
            "Authorization": f"Bearer {provider.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": provider.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": 0.0,
            "max_tokens": 2048,
        }
        resp = await http.post(url, json=payload, headers=headers, timeout=provider.timeout_seconds)
        resp.raise_for_status()
        data = resp.json()

        choices = data.get("choices") or []
        if choices:
            return (choices[0].get("message") or {}).get("content", "") or ""
        return ""

    async def call_with_fallback(
        self,
        user_prompt: str,
        system_prompt: str,
        router: LLMRouter,
    ) -> LLMResponse:
        """
        Call the LLM with automatic provider fallback.

        Parameters
        ----------
        user_prompt : str
            The comparison or rewrite prompt.
        system_prompt : str
            The system prompt with output rules.
        router : LLMRouter
            Router for provider selection and health tracking.

        Returns
        -------
        LLMResponse
            Response from whichever provider succeeded, or a failure response.
        """
        tried = []
        for provider in router.candidates():
            tried.append(provider.name)
            response = await self.call(user_prompt, system_prompt, provider)
            if response.success:
                router.report_success(provider.name)
                return response
            router.report_failure(provider.name)

        return LLMResponse(
            text="",
            provider_name=",".join(tried),
            success=False,
            error="No advisory provider configured" if not tried else "All providers failed",
        )
