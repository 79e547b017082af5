"""
Fix Applier
===========
Applies candidate fixes to query text, highest estimated impact first.

Gating (in order, per fix):
    1. confidence < options.min_confidence              → LOW_CONFIDENCE
    2. safety REVIEW_REQUIRED                           → REVIEW_REQUIRED
    3. safety above tolerance (LOW, or HIGH if aggressive) → RISK_EXCEEDED
    4. no registered transform (and no advisor opt-in)  → NO_TRANSFORM
    5. transform left the text unchanged                → NO_CHANGE

A fix counts as applied only when the text actually changed. Each applied
fix carries the exact (before, after) fragments that were replaced, so the
Validator can reconcile parenthesis counts against the original.

The FixApplier does NOT:
    - Validate the result (that's the Validator's job)
    - Persist anything (that's the orchestrator's job)
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from sqlheal.agents.transforms import QueryTransformer, default_transformers
from sqlheal.core.config import ADVISORY_TIMEOUT_SECONDS, DEFAULT_MIN_CONFIDENCE
from sqlheal.llm.advisory import QueryAdvisor
from sqlheal.models.fix import AppliedFix, Fix, FixSafety, FixType, TextDelta, safety_rank
from sqlheal.parser.sql_text import count_parentheses, leading_verb, mask_sql
from sqlheal.utils.skip_reasons import (
    ADVISOR_REJECTED,
    LOW_CONFIDENCE,
    NO_CHANGE,
    NO_TRANSFORM,
    REVIEW_REQUIRED,
    RISK_EXCEEDED,
    TRANSFORM_ERROR,
    describe_reason,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Apply Options
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ApplyOptions:
    """Caller's confidence floor and risk tolerance."""
    min_confidence: float = DEFAULT_MIN_CONFIDENCE
    aggressive_mode: bool = False
    use_advisor: bool = False

    @property
    def max_safety(self) -> FixSafety:
        return FixSafety.HIGH if self.aggressive_mode else FixSafety.LOW


def _by_impact(fixes: List[Fix]) -> List[Fix]:
    """Stable sort, highest estimated impact first."""
    return sorted(fixes, key=lambda f: -f.estimated_impact)


# ---------------------------------------------------------------------------
# Fix Applier
# ---------------------------------------------------------------------------
class FixApplier:
    """
    Applies deterministic transforms (and, when opted in, advisory rewrites).

    Parameters
    ----------
    transformers : dict or None
        FixType → QueryTransformer registry (defaults to the built-ins).
    advisor : QueryAdvisor or None
        Used by apply_async for fix types without a transform.
    """

    def __init__(
        self,
        transformers: Optional[Dict[FixType, QueryTransformer]] = None,
        advisor: Optional[QueryAdvisor] = None,
    ) -> None:
        self.transformers = transformers if transformers is not None else default_transformers()
        self.advisor = advisor

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------
    def apply(
        self,
        query_text: str,
        fixes: List[Fix],
        options: Optional[ApplyOptions] = None,
    ) -> Tuple[str, List[AppliedFix]]:
        """
        Apply every eligible fix with a deterministic transform.

        Parameters
        ----------
        query_text : str
            Original query text.
        fixes : list of Fix
            Candidates (any order).
        options : ApplyOptions or None
            Confidence floor and risk tolerance.

        Returns
        -------
        tuple of (str, list of AppliedFix)
            Rewritten text and the fixes that changed it, in application order.
        """
        options = options or ApplyOptions()
        text = query_text
        applied: List[AppliedFix] = []

        for fix in _by_impact(fixes):
            if self.skip_reason(fix, options):
                continue
            text, record = self._run_transform(text, fix)
            if record:
                applied.append(record)
        return text, applied

    async def apply_async(
        self,
        query_text: str,
        fixes: List[Fix],
        options: Optional[ApplyOptions] = None,
        timeout: float = ADVISORY_TIMEOUT_SECONDS,
    ) -> Tuple[str, List[AppliedFix]]:
        """
        Like apply(), but fix types without a transform may be rewritten by
        the advisor when ``options.use_advisor`` is set.

        Each advisory call is bounded by ``timeout`` seconds; a timeout or
        error skips that fix and keeps going.
        """
        options = options or ApplyOptions()
        use_advisor = options.use_advisor and self.advisor is not None and self.advisor.is_available
        text = query_text
        applied: List[AppliedFix] = []

        for fix in _by_impact(fixes):
            if self.skip_reason(fix, options, allow_advisor=use_advisor):
                continue
            if self._has_transform(fix.fix_type):
                text, record = self._run_transform(text, fix)
            else:
                text, record = await self._run_advisor(text, fix, timeout)
            if record:
                applied.append(record)
        return text, applied

    def skip_reason(
        self,
        fix: Fix,
        options: ApplyOptions,
        allow_advisor: bool = False,
    ) -> Optional[str]:
        """Return the gating reason a fix is skipped, or None if it may be attempted."""
        reason = None
        if fix.confidence < options.min_confidence:
            reason = LOW_CONFIDENCE
        elif fix.safety == FixSafety.REVIEW_REQUIRED:
            reason = REVIEW_REQUIRED
        elif safety_rank(fix.safety) > safety_rank(options.max_safety):
            reason = RISK_EXCEEDED
        elif not self._has_transform(fix.fix_type) and not allow_advisor:
            reason = NO_TRANSFORM

        if reason:
            logger.info(
                "Fix %s not applied: %s (%s)", fix.fix_type.value, reason, describe_reason(reason),
            )
        return reason

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------
    def _has_transform(self, fix_type: FixType) -> bool:
        transformer = self.transformers.get(fix_type)
        return transformer is not None

    def _run_transform(self, text: str, fix: Fix) -> Tuple[str, Optional[AppliedFix]]:
        transformer = self.transformers[fix.fix_type]
        try:
            result = transformer.transform(text)
        except Exception as exc:
            logger.error("Fix %s not applied: %s: %s", fix.fix_type.value, TRANSFORM_ERROR, exc, exc_info=True)
            return text, None

        if not result.changed or result.text == text:
            logger.info("Fix %s not applied: %s", fix.fix_type.value, NO_CHANGE)
            return text, None

        logger.info("Fix %s applied (%d replacement(s))", fix.fix_type.value, len(result.deltas))
        return result.text, AppliedFix(fix=fix, applied=True, deltas=result.deltas)

    async def _run_advisor(self, text: str, fix: Fix, timeout: float) -> Tuple[str, Optional[AppliedFix]]:
        try:
            outcome = await asyncio.wait_for(self.advisor.rewrite_query(text, fix), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Advisory rewrite for %s timed out after %.1fs", fix.fix_type.value, timeout)
            return text, None
        except Exception as exc:
            logger.warning("Advisory rewrite for %s failed: %s", fix.fix_type.value, exc)
            return text, None

        if not outcome.ok:
            logger.info("Fix %s not applied: %s (%s)", fix.fix_type.value, ADVISOR_REJECTED, outcome.error)
            return text, None

        candidate = outcome.advisory.rewritten_query.strip()
        if candidate == text.strip():
            logger.info("Fix %s not applied: %s", fix.fix_type.value, NO_CHANGE)
            return text, None

        masked = mask_sql(candidate)
        opened, closed = count_parentheses(masked)
        if opened != closed or leading_verb(masked) != leading_verb(mask_sql(text)):
            logger.info("Fix %s not applied: %s (structure changed)", fix.fix_type.value, ADVISOR_REJECTED)
            return text, None

        logger.info("Fix %s applied via advisory rewrite (%s)", fix.fix_type.value, outcome.provider_name)
        return candidate, AppliedFix(fix=fix, applied=True, deltas=[TextDelta(before=text, after=candidate)])
