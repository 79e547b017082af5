"""
LLM Router
==========
Decides which advisory provider to use and manages provider switching.

Routing Strategy:
    1. Only providers with an API key configured are eligible
    2. Attempt the first healthy provider (Groq → Gemini → OpenRouter)
    3. On failure (HTTP error, timeout, rate limit) → next healthy provider
    4. When every provider fails the advisor reports "unavailable" and the
       Validator stays rule-based

Provider Health Tracking:
    - Track consecutive failures per provider
    - After PROVIDER_COOLDOWN_THRESHOLD failures in a row, skip the provider
      for PROVIDER_COOLDOWN_SKIP_COUNT selections
    - Health is shared by every healing run served by the same router
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Any, Optional

from sqlheal.core.config import (
    GEMINI_API_KEY, GROQ_API_KEY, OPENROUTER_API_KEY,
    PROVIDER_COOLDOWN_THRESHOLD, PROVIDER_COOLDOWN_SKIP_COUNT,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Provider Configuration
# ---------------------------------------------------------------------------
@dataclass
class ProviderConfig:
    """Configuration for a single LLM provider."""
    name: str
    api_key: str
    base_url: str
    model: str
    max_retries: int = 1
    timeout_seconds: int = 30

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key)


def default_providers() -> List[ProviderConfig]:
    """Provider configs built from the environment, in routing order."""
    return [
        ProviderConfig(
            name="groq",
            api_key=GROQ_API_KEY or "",
            base_url="https://api.groq.com/openai/v1",
            model="llama-3.3-70b-versatile",
        ),
        ProviderConfig(
            name="gemini",
            api_key=GEMINI_API_KEY or "",
            base_url="https://generativelanguage.googleapis.com/v1beta",
            model="gemini-2.0-flash",
        ),
        ProviderConfig(
            name="openrouter",
            api_key=OPENROUTER_API_KEY or "",
            base_url="https://openrouter.ai/api/v1",
            model="stepfun/step-3.5-flash:free",
        ),
    ]


# ---------------------------------------------------------------------------
# Provider Health Tracker
# ---------------------------------------------------------------------------
@dataclass
class ProviderHealth:
    """Tracks consecutive failures and cooldown for a provider."""
    consecutive_failures: int = 0
    is_healthy: bool = True
    max_failures: int = PROVIDER_COOLDOWN_THRESHOLD
    cooldown_remaining: int = 0

    def record_failure(self) -> None:
        """Record a failure. Enter cooldown after max consecutive failures."""
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.max_failures:
            self.is_healthy = False
            self.cooldown_remaining = PROVIDER_COOLDOWN_SKIP_COUNT
            logger.warning(
                "Provider entering cooldown after %d failures (skip %d calls)",
                self.consecutive_failures, self.cooldown_remaining,
            )

    def record_success(self) -> None:
        self.consecutive_failures = 0

    def tick_cooldown(self) -> None:
        """Decrement cooldown. Re-enable cautiously when it expires."""
        if self.cooldown_remaining > 0:
            self.cooldown_remaining -= 1
            if self.cooldown_remaining <= 0:
                self.is_healthy = True
                # One more failure puts the provider straight back in cooldown
                self.consecutive_failures = max(1, self.max_failures - 1)
                logger.info("Provider cooldown expired, re-enabled (cautious)")


# ---------------------------------------------------------------------------
# LLM Router
# ---------------------------------------------------------------------------
class LLMRouter:
    """
    Routes advisory requests to the best available provider.

    Usage:
        router = LLMRouter()
        for provider in router.candidates():
            ...  # call, then report_success / report_failure
    """

    def __init__(self, providers: Optional[List[ProviderConfig]] = None) -> None:
        configured = providers if providers is not None else default_providers()
        self._providers = [p for p in configured if p.has_credentials]
        self._health: Dict[str, ProviderHealth] = {
            p.name: ProviderHealth() for p in self._providers
        }

    @property
    def has_providers(self) -> bool:
        return bool(self._providers)

    def candidates(self) -> List[ProviderConfig]:
        """
        Healthy providers in routing order.

        Ticks every cooldown first. If all providers are cooling down the
        first configured provider is returned alone as a last resort.

        Returns
        -------
        list of ProviderConfig
            Possibly empty when no provider has credentials.
        """
        for h in self._health.values():
            h.tick_cooldown()

        healthy = [p for p in self._providers if self._health[p.name].is_healthy]
        if healthy:
            return healthy
        if self._providers:
            logger.warning("All providers unhealthy, falling back to %s", self._providers[0].name)
            return [self._providers[0]]
        return []

    def report_success(self, provider_name: str) -> None:
        health = self._health.get(provider_name)
        if health:
            health.record_success()

    def report_failure(self, provider_name: str) -> None:
        health = self._health.get(provider_name)
        if health:
            health.record_failure()

    def get_health(self, provider_name: str) -> Optional[ProviderHealth]:
        return self._health.get(provider_name)

    @property
    def provider_health_state(self) -> Dict[str, Any]:
        """Expose per-provider health and cooldown for the /health endpoint."""
        return {
            name: {
                "is_healthy": h.is_healthy,
                "consecutive_failures": h.consecutive_failures,
                "cooldown_remaining": h.cooldown_remaining,
            }
            for name, h in self._health.items()
        }
