"""
Validator Tests
===============
Covers:
    - Structural checks (empty, verb, balanced / reconciled parentheses)
    - Closed-form improvement model and recommendation thresholds
    - Advisory enrichment: timeout, failure, semantic downgrade, skip rules

No real LLM calls.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from sqlheal.agents.fix_applier import FixApplier
from sqlheal.agents.validator import (
    ADVISORY_UNAVAILABLE,
    Validator,
    estimate_improvement,
    recommend,
)
from sqlheal.llm.advisory import AdvisoryParseResult, ParsedAdvisory, QueryAdvisor
from sqlheal.models.fix import AppliedFix, Fix, FixSafety, FixType
from sqlheal.models.healing import HealingPolicy
from sqlheal.models.query import QueryMetrics
from sqlheal.models.validation import Recommendation


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _make_fix(fix_type: FixType = FixType.OR_TO_IN, impact: float = 30, safety=FixSafety.SAFE) -> Fix:
    return Fix(fix_type=fix_type, confidence=0.85, estimated_impact=impact, safety=safety)


def _applied(*impacts) -> list:
    return [AppliedFix(fix=_make_fix(impact=i)) for i in impacts]


def _heal(text: str, fixes):
    return FixApplier().apply(text, fixes)


def _make_advisor(advisory: ParsedAdvisory = None, error: str = "") -> MagicMock:
    advisor = MagicMock(spec=QueryAdvisor)
    advisor.is_available = True
    advisor.compare_queries = AsyncMock(
        return_value=AdvisoryParseResult(advisory=advisory, error=error, provider_name="groq")
    )
    return advisor


OR_QUERY = "SELECT * FROM CUSTTABLE WHERE NAME = 'A' OR NAME = 'B'"


# ===================================================================
# Improvement model
# ===================================================================
def test_improvement_is_mean_of_applied_impacts():
    assert estimate_improvement(_applied(30, 50)) == 40
    assert estimate_improvement([]) == 0.0


def test_improvement_is_capped():
    assert estimate_improvement(_applied(100, 100)) == 95.0


@pytest.mark.parametrize("improvement, expected", [
    (50, Recommendation.KEEP),
    (20, Recommendation.KEEP),
    (15, Recommendation.KEEP),
    (10, Recommendation.KEEP),
    (5, Recommendation.MONITOR),
    (0, Recommendation.ROLLBACK),
])
def test_recommendation_thresholds(improvement, expected):
    assert recommend(improvement)[0] == expected


def test_recommendation_reason_distinguishes_tiers():
    assert recommend(25)[1].startswith("Significant")
    assert recommend(12)[1].startswith("Moderate")


# ===================================================================
# Structural checks
# ===================================================================
def test_or_to_in_rewrite_is_valid_and_better():
    healed, applied = _heal(OR_QUERY, [_make_fix()])
    verdict = Validator().validate_rules(OR_QUERY, healed, QueryMetrics(avg_elapsed_time_ms=1000), applied)

    assert verdict.is_valid
    assert verdict.is_better
    assert verdict.is_semantically_equivalent
    assert verdict.improvement_percent == 30
    assert verdict.predicted_latency_ms == pytest.approx(700)
    assert verdict.time_reduction_ms == pytest.approx(300)
    assert verdict.recommendation == Recommendation.KEEP
    assert verdict.validation_method == "rule-based"


def test_year_rewrite_reconciles_parentheses():
    original = "SELECT Id FROM Orders WHERE YEAR(OrderDate) = 2024"
    healed, applied = _heal(original, [_make_fix(FixType.FUNCTION_IN_WHERE, 65, FixSafety.LOW)])
    verdict = Validator().validate_rules(original, healed, applied_fixes=applied)
    assert verdict.is_valid, verdict.errors


def test_unbalanced_parentheses_invalid():
    verdict = Validator().validate_rules("SELECT Id FROM T WHERE (A = 1)", "SELECT Id FROM T WHERE (A = 1")
    assert not verdict.is_valid
    assert not verdict.is_better
    assert any("Unbalanced" in e for e in verdict.errors)


def test_parenthesis_count_change_without_delta_invalid():
    verdict = Validator().validate_rules(
        "SELECT Id FROM T WHERE (A = 1)", "SELECT Id FROM T WHERE A = 1", applied_fixes=_applied(30),
    )
    assert not verdict.is_valid
    assert any("differs from original" in e for e in verdict.errors)


def test_parentheses_inside_literals_are_ignored():
    text = "SELECT Id FROM T WHERE Note = ':-(' OR Note = ':-)'"
    healed, applied = _heal(text, [_make_fix()])
    verdict = Validator().validate_rules(text, healed, applied_fixes=applied)
    assert verdict.is_valid


def test_empty_rewrite_invalid():
    verdict = Validator().validate_rules("SELECT 1", "   ")
    assert not verdict.is_valid
    assert verdict.errors == ["Rewritten query is empty"]


def test_changed_verb_invalid():
    verdict = Validator().validate_rules("SELECT Id FROM T", "DELETE FROM T", applied_fixes=_applied(30))
    assert not verdict.is_valid


def test_missing_verb_invalid():
    verdict = Validator().validate_rules("SELECT Id FROM T", "Id FROM T")
    assert not verdict.is_valid


def test_duplicate_keywords_only_warn():
    text = "SELECT Id FROM T WHERE WHERE A = 1"
    verdict = Validator().validate_rules(text, text, applied_fixes=_applied(30))
    assert verdict.is_valid
    assert any("Duplicate keyword" in w for w in verdict.warnings)


def test_no_applied_fixes_is_not_better():
    verdict = Validator().validate_rules(OR_QUERY, OR_QUERY)
    assert verdict.is_valid
    assert not verdict.is_better
    assert verdict.recommendation == Recommendation.ROLLBACK


def test_policy_thresholds_are_non_blocking():
    policy = HealingPolicy(min_improvement_percent=50)
    verdict = Validator().validate_rules(OR_QUERY, OR_QUERY, applied_fixes=_applied(30), policy=policy)
    minimum = next(c for c in verdict.checks if c.name == "Minimum Improvement")
    assert not minimum.passed
    assert not minimum.blocking
    assert verdict.is_better


def test_more_improvement_never_worse_recommendation():
    order = [Recommendation.ROLLBACK, Recommendation.MONITOR, Recommendation.KEEP]
    previous = 0
    for impact in range(0, 101, 5):
        applied = _applied(impact) if impact else []
        verdict = Validator().validate_rules(OR_QUERY, OR_QUERY, applied_fixes=applied)
        rank = order.index(verdict.recommendation)
        assert rank >= previous
        previous = rank


# ===================================================================
# Advisory enrichment
# ===================================================================
def test_advisory_timeout_keeps_rule_based_verdict():
    async def run_test():
        async def slow_compare(*args, **kwargs):
            await asyncio.sleep(1)

        advisor = _make_advisor()
        advisor.compare_queries = AsyncMock(side_effect=slow_compare)
        healed, applied = _heal(OR_QUERY, [_make_fix()])

        verdict = await Validator(advisor=advisor).validate(OR_QUERY, healed, applied_fixes=applied, timeout=0.01)

        assert verdict.is_valid
        assert verdict.is_semantically_equivalent
        assert ADVISORY_UNAVAILABLE in verdict.warnings
        assert verdict.validation_method == "rule-based"

    asyncio.run(run_test())


def test_advisory_error_keeps_rule_based_verdict():
    async def run_test():
        advisor = _make_advisor()
        advisor.compare_queries = AsyncMock(side_effect=RuntimeError("provider down"))
        healed, applied = _heal(OR_QUERY, [_make_fix()])

        verdict = await Validator(advisor=advisor).validate(OR_QUERY, healed, applied_fixes=applied)
        assert verdict.is_valid
        assert ADVISORY_UNAVAILABLE in verdict.warnings

    asyncio.run(run_test())


def test_unparseable_advisory_keeps_rule_based_verdict():
    async def run_test():
        advisor = _make_advisor(error="No JSON object in response")
        healed, applied = _heal(OR_QUERY, [_make_fix()])

        verdict = await Validator(advisor=advisor).validate(OR_QUERY, healed, applied_fixes=applied)
        assert verdict.is_semantically_equivalent
        assert ADVISORY_UNAVAILABLE in verdict.warnings

    asyncio.run(run_test())


def test_advisory_semantic_difference_downgrades_equivalence():
    async def run_test():
        advisory = ParsedAdvisory(
            semantically_equivalent=False,
            key_differences=["NULL handling differs"],
            summary="Results may differ for NULL names",
        )
        advisor = _make_advisor(advisory=advisory)
        healed, applied = _heal(OR_QUERY, [_make_fix()])

        verdict = await Validator(advisor=advisor).validate(OR_QUERY, healed, applied_fixes=applied)

        assert verdict.is_valid
        assert not verdict.is_semantically_equivalent
        assert verdict.validation_method == "advisory-enriched"
        assert any("NULL handling differs" in w for w in verdict.warnings)
        assert "Results may differ" in verdict.summary

    asyncio.run(run_test())


def test_advisory_never_consulted_for_invalid_or_unchanged_rewrite():
    async def run_test():
        advisor = _make_advisor(advisory=ParsedAdvisory(semantically_equivalent=True))
        validator = Validator(advisor=advisor)

        await validator.validate("SELECT Id FROM T WHERE (A = 1)", "SELECT Id FROM T WHERE (A = 1")
        await validator.validate(OR_QUERY, OR_QUERY)
        advisor.compare_queries.assert_not_awaited()

    asyncio.run(run_test())
