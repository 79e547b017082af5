"""
Validator
=========
Decides whether a rewrite is structurally sound and worth keeping.

Pipeline:
    1. Blocking structural checks on the rewritten text
       (non-empty, leading query verb, balanced parentheses, parenthesis
       counts reconciled with the original through the recorded deltas)
    2. Non-blocking checks (duplicated adjacent keywords, performance)
    3. Closed-form improvement model:
         improvement = mean(estimated impact of applied fixes), capped at 95%
         predicted latency = original latency × (1 − improvement / 100)
    4. Recommendation purely from improvement:
         ≥ 20% Keep (significant) · ≥ 10% Keep (moderate) · > 0 Monitor · else Rollback
    5. Optional advisory opinion, bounded by a timeout. It may downgrade
       semantic equivalence and add warnings, never turn an invalid
       rewrite valid. Any advisory failure keeps the rule-based verdict.

This is an estimate-only model: nothing is executed against a database.
"""
import asyncio
import logging
import re
from typing import List, Optional, Tuple

from sqlheal.core.config import ADVISORY_TIMEOUT_SECONDS
from sqlheal.core.constants import IMPROVEMENT_CAP, MODERATE_IMPROVEMENT, SIGNIFICANT_IMPROVEMENT
from sqlheal.llm.advisory import QueryAdvisor
from sqlheal.models.fix import AppliedFix
from sqlheal.models.healing import HealingPolicy
from sqlheal.models.query import QueryMetrics
from sqlheal.models.validation import Recommendation, ValidationCheck, ValidationVerdict
from sqlheal.parser.sql_text import count_parentheses, leading_verb, mask_sql

logger = logging.getLogger(__name__)

ADVISORY_UNAVAILABLE = "AI validation unavailable, using rule-based only"

_QUERY_VERBS = frozenset({"SELECT", "WITH", "INSERT", "UPDATE", "DELETE", "MERGE"})
_DUPLICATE_KEYWORD_RE = re.compile(
    r"\b(SELECT|FROM|WHERE|AND|OR|ON|JOIN|HAVING|GROUP\s+BY|ORDER\s+BY)\s+\1\b"
)


# ---------------------------------------------------------------------------
# Improvement model
# ---------------------------------------------------------------------------
def estimate_improvement(applied_fixes: List[AppliedFix]) -> float:
    """Mean estimated impact of the applied fixes, capped at 95%."""
    impacts = [a.fix.estimated_impact for a in applied_fixes if a.applied]
    if not impacts:
        return 0.0
    return min(IMPROVEMENT_CAP, sum(impacts) / len(impacts))


def recommend(improvement_percent: float) -> Tuple[Recommendation, str]:
    """Map an improvement percentage to (recommendation, reason)."""
    if improvement_percent >= SIGNIFICANT_IMPROVEMENT:
        return Recommendation.KEEP, f"Significant improvement of {improvement_percent:.1f}%"
    if improvement_percent >= MODERATE_IMPROVEMENT:
        return Recommendation.KEEP, f"Moderate improvement of {improvement_percent:.1f}%"
    if improvement_percent > 0:
        return Recommendation.MONITOR, f"Minor improvement of {improvement_percent:.1f}%, monitor before keeping"
    return Recommendation.ROLLBACK, "No measurable improvement"


def _paren_delta(applied_fixes: List[AppliedFix]) -> Tuple[int, int]:
    opened = closed = 0
    for record in applied_fixes:
        for delta in record.deltas:
            before_open, before_close = count_parentheses(mask_sql(delta.before))
            after_open, after_close = count_parentheses(mask_sql(delta.after))
            opened += after_open - before_open
            closed += after_close - before_close
    return opened, closed


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------
class Validator:
    """
    Rule-based rewrite validator with optional advisory enrichment.

    Parameters
    ----------
    advisor : QueryAdvisor or None
        Advisory collaborator; None keeps validation purely rule-based.
    advisory_timeout : float
        Default upper bound in seconds for one advisory call.
    """

    def __init__(
        self,
        advisor: Optional[QueryAdvisor] = None,
        advisory_timeout: float = ADVISORY_TIMEOUT_SECONDS,
    ) -> None:
        self.advisor = advisor
        self.advisory_timeout = advisory_timeout

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------
    async def validate(
        self,
        original: str,
        rewritten: str,
        metrics: Optional[QueryMetrics] = None,
        applied_fixes: Optional[List[AppliedFix]] = None,
        policy: Optional[HealingPolicy] = None,
        timeout: Optional[float] = None,
    ) -> ValidationVerdict:
        """
        Validate a rewrite, consulting the advisor when one is available.

        Parameters
        ----------
        original : str
            Query text before any fix.
        rewritten : str
            Query text after FixApplier.
        metrics : QueryMetrics or None
            Baseline telemetry for latency prediction.
        applied_fixes : list of AppliedFix or None
            Fixes that produced ``rewritten`` (drives improvement and
            parenthesis reconciliation).
        policy : HealingPolicy or None
            Supplies min-improvement / max-degradation thresholds.
        timeout : float or None
            Advisory timeout in seconds (defaults to ``advisory_timeout``).

        Returns
        -------
        ValidationVerdict
            Rule-based verdict, enriched by the advisor when it answered.
        """
        verdict = self.validate_rules(original, rewritten, metrics, applied_fixes, policy)

        if self.advisor is None or not self.advisor.is_available:
            return verdict
        if not verdict.is_valid or original.strip() == rewritten.strip():
            return verdict

        return await self._enrich_with_advisory(
            verdict, original, rewritten, self.advisory_timeout if timeout is None else timeout,
        )

    def validate_rules(
        self,
        original: str,
        rewritten: str,
        metrics: Optional[QueryMetrics] = None,
        applied_fixes: Optional[List[AppliedFix]] = None,
        policy: Optional[HealingPolicy] = None,
    ) -> ValidationVerdict:
        """Purely rule-based verdict (no I/O)."""
        metrics = metrics or QueryMetrics()
        applied_fixes = applied_fixes or []
        policy = policy or HealingPolicy()

        checks, warnings, errors = self._structural_checks(original or "", rewritten or "", applied_fixes)
        is_valid = all(c.passed for c in checks if c.blocking)

        improvement = estimate_improvement(applied_fixes)
        checks.extend([
            ValidationCheck(
                name="Performance Improvement",
                passed=improvement > 0,
                detail=f"Estimated improvement {improvement:.1f}%",
                blocking=False,
            ),
            ValidationCheck(
                name="No Degradation",
                passed=improvement >= -policy.max_degradation_percent,
                detail=f"Allowed degradation {policy.max_degradation_percent:.1f}%",
                blocking=False,
            ),
            ValidationCheck(
                name="Minimum Improvement",
                passed=improvement >= policy.min_improvement_percent,
                detail=f"Policy minimum {policy.min_improvement_percent:.1f}%",
                blocking=False,
            ),
        ])

        original_latency = metrics.avg_elapsed_time_ms
        predicted_latency = original_latency * (1 - improvement / 100)
        recommendation, reason = recommend(improvement)
        is_better = improvement > 0 and is_valid

        summary = (
            f"{'Valid' if is_valid else 'Invalid'} rewrite, "
            f"{improvement:.1f}% estimated improvement "
            f"({original_latency:.0f} ms → {predicted_latency:.0f} ms); "
            f"recommendation: {recommendation.value}"
        )
        return ValidationVerdict(
            is_valid=is_valid,
            is_semantically_equivalent=True,
            checks=checks,
            warnings=warnings,
            errors=errors,
            validation_method="rule-based",
            improvement_percent=improvement,
            original_latency_ms=original_latency,
            predicted_latency_ms=predicted_latency,
            time_reduction_ms=original_latency - predicted_latency,
            is_better=is_better,
            recommendation=recommendation,
            reason=reason,
            summary=summary,
        )

    # -------------------------------------------------------------------
    # Structural checks
    # -------------------------------------------------------------------
    def _structural_checks(
        self,
        original: str,
        rewritten: str,
        applied_fixes: List[AppliedFix],
    ) -> Tuple[List[ValidationCheck], List[str], List[str]]:
        checks: List[ValidationCheck] = []
        warnings: List[str] = []
        errors: List[str] = []

        # --- Non-empty ---
        if not rewritten.strip():
            errors.append("Rewritten query is empty")
            checks.append(ValidationCheck(name="Non-Empty Query", passed=False, detail="Query text is empty"))
            return checks, warnings, errors
        checks.append(ValidationCheck(name="Non-Empty Query", passed=True))

        masked_new = mask_sql(rewritten).upper()
        masked_old = mask_sql(original).upper()

        # --- Leading verb ---
        verb = leading_verb(masked_new)
        old_verb = leading_verb(masked_old)
        if verb not in _QUERY_VERBS:
            errors.append("Rewritten query has no recognizable leading query verb")
            checks.append(ValidationCheck(name="Query Verb", passed=False, detail=f"Found '{verb or '-'}'"))
        elif old_verb in _QUERY_VERBS and verb != old_verb:
            errors.append(f"Query verb changed from {old_verb} to {verb}")
            checks.append(ValidationCheck(name="Query Verb", passed=False, detail=f"{old_verb} → {verb}"))
        else:
            checks.append(ValidationCheck(name="Query Verb", passed=True, detail=verb))

        # --- Balanced parentheses ---
        opened, closed = count_parentheses(masked_new)
        if opened != closed:
            errors.append(f"Unbalanced parentheses: {opened} opening, {closed} closing")
        checks.append(ValidationCheck(
            name="Balanced Parentheses",
            passed=opened == closed,
            detail=f"{opened} opening, {closed} closing",
        ))

        # --- Parentheses reconciled with original ---
        old_open, old_close = count_parentheses(masked_old)
        delta_open, delta_close = _paren_delta(applied_fixes)
        expected = (old_open + delta_open, old_close + delta_close)
        reconciled = (opened, closed) == expected
        if not reconciled:
            errors.append(
                f"Parenthesis count differs from original: expected {expected[0]}/{expected[1]}, "
                f"found {opened}/{closed}"
            )
        checks.append(ValidationCheck(
            name="Parenthesis Count Preserved",
            passed=reconciled,
            detail=f"original {old_open}/{old_close}, rewritten {opened}/{closed}",
        ))

        # --- Duplicate keywords (warning only) ---
        duplicates = sorted({re.sub(r"\s+", " ", m.group(0)) for m in _DUPLICATE_KEYWORD_RE.finditer(masked_new)})
        for dup in duplicates:
            warnings.append(f"Duplicate keyword sequence: {dup}")
        checks.append(ValidationCheck(
            name="No Duplicate Keywords",
            passed=not duplicates,
            detail=", ".join(duplicates),
            blocking=False,
        ))
        return checks, warnings, errors

    # -------------------------------------------------------------------
    # Advisory enrichment
    # -------------------------------------------------------------------
    async def _enrich_with_advisory(
        self,
        verdict: ValidationVerdict,
        original: str,
        rewritten: str,
        timeout: float,
    ) -> ValidationVerdict:
        try:
            outcome = await asyncio.wait_for(self.advisor.compare_queries(original, rewritten), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Advisory validation timed out after %.1fs", timeout)
            return verdict.model_copy(update={"warnings": verdict.warnings + [ADVISORY_UNAVAILABLE]})
        except Exception as exc:
            logger.warning("Advisory validation failed: %s", exc)
            return verdict.model_copy(update={"warnings": verdict.warnings + [ADVISORY_UNAVAILABLE]})

        if not outcome.ok:
            logger.warning("Advisory validation unusable: %s", outcome.error)
            return verdict.model_copy(update={"warnings": verdict.warnings + [ADVISORY_UNAVAILABLE]})

        advisory = outcome.advisory
        warnings = list(verdict.warnings)
        equivalent = verdict.is_semantically_equivalent
        if advisory.flags_semantic_difference:
            equivalent = False
            detail = "; ".join(advisory.key_differences) or "advisor reports results may differ"
            warnings.append(f"Possible semantic difference: {detail}")

        summary = verdict.summary
        if advisory.summary:
            summary = f"{summary}. Advisor: {advisory.summary}"

        return verdict.model_copy(update={
            "is_semantically_equivalent": equivalent,
            "warnings": warnings,
            "validation_method": "advisory-enriched",
            "summary": summary,
        })
