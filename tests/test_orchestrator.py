"""
Healing Orchestrator Tests
==========================
Tests the full Detect → Generate → Apply → Validate → Record loop.

Covers:
    - Status state machine (Disabled, NoActionNeeded, ValidationFailed,
      PendingApproval, Applied, Error)
    - Approval invariant: never Applied while approval is required
    - History recording, learning, rollback and auto-rollback
    - Same-hash concurrency and batch healing

No database, no real LLM calls.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from sqlheal.agents.orchestrator import HealingOrchestrator, impact_tier, predict_metrics
from sqlheal.core.constants import NO_HISTORY_REASON, NO_HISTORY_SUMMARY, ROLLBACK_REASON
from sqlheal.models.healing import HealingPolicy, HealingStatus, ImpactTier
from sqlheal.models.history import HealingHistory
from sqlheal.models.query import MissingIndex, Query, QueryMetrics
from sqlheal.models.validation import ValidationVerdict
from sqlheal.parser import rules
from sqlheal.parser.pattern_detector import BaseDetector
from sqlheal.services.history_store import InMemoryHistoryStore
from sqlheal.services.telemetry import StaticTelemetrySource, TelemetrySource


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
OR_QUERY = "SELECT * FROM CUSTTABLE WHERE NAME = 'A' OR NAME = 'B'"
HEALED_OR_QUERY = "SELECT * FROM CUSTTABLE WHERE NAME IN ('A', 'B')"
CLEAN_QUERY = "SELECT Id FROM T WHERE Id = 1"

AUTO_APPLY = HealingPolicy(auto_apply=True, require_approval=False)


def _make_query(text: str = OR_QUERY, query_hash: str = "", **metrics) -> Query:
    metrics.setdefault("avg_cpu_time_ms", 10)
    metrics.setdefault("avg_elapsed_time_ms", 200)
    return Query(query_hash=query_hash, query_text=text, metrics=QueryMetrics(**metrics))


@pytest.fixture
def orchestrator():
    return HealingOrchestrator(store=InMemoryHistoryStore())


# ===================================================================
# Projection helpers
# ===================================================================
@pytest.mark.parametrize("improvement, tier", [
    (0, ImpactTier.MINOR),
    (14.9, ImpactTier.MINOR),
    (15, ImpactTier.MODERATE),
    (30, ImpactTier.SIGNIFICANT),
    (50, ImpactTier.MAJOR),
    (95, ImpactTier.MAJOR),
])
def test_impact_tier(improvement, tier):
    assert impact_tier(improvement) == tier


def test_predict_metrics():
    metrics = QueryMetrics(
        execution_count=100, total_cpu_time_ms=1000, avg_cpu_time_ms=10,
        total_elapsed_time_ms=20_000, avg_elapsed_time_ms=200,
        avg_logical_reads=1000, avg_physical_reads=100,
    )
    predicted = predict_metrics(metrics, 50)
    assert predicted.execution_count == 100
    assert predicted.avg_cpu_time_ms == pytest.approx(5)
    assert predicted.avg_elapsed_time_ms == pytest.approx(100)
    assert predicted.total_elapsed_time_ms == pytest.approx(10_000)
    assert predicted.avg_logical_reads == pytest.approx(500)
    assert predicted.avg_physical_reads == pytest.approx(60)


# ===================================================================
# State machine
# ===================================================================
def test_auto_apply_heals_or_chain(orchestrator):
    """SELECT * + OR chain: OR→IN applied, SELECT * skipped on confidence."""
    async def run_test():
        query = _make_query()
        result = await orchestrator.heal(query, AUTO_APPLY)

        assert result.status == HealingStatus.APPLIED
        assert result.healed_query == HEALED_OR_QUERY
        assert [f.rule_id for f in result.candidate_fixes] == [rules.SELECT_STAR, rules.OR_CHAIN]
        assert [a.fix.fix_type.value for a in result.applied_fixes] == ["OrToIn"]
        assert result.improvement_percent == 30
        assert result.impact_tier == ImpactTier.SIGNIFICANT
        assert result.predicted_metrics.avg_elapsed_time_ms == pytest.approx(140)
        assert result.time_reduction_ms == pytest.approx(60)
        assert result.validation.is_valid

        history = await orchestrator.get_history(query.query_hash)
        assert history.total_healings == 1
        assert history.successful_healings == 1
        assert history.successful_patterns == {"OrToIn"}
        assert history.initial_avg_elapsed_ms == 200
        assert history.current_avg_elapsed_ms == pytest.approx(140)
        assert history.total_improvement_percent == pytest.approx(30)
        assert history.trend == "improving"
        assert history.last_entry.status == "Applied"
        assert history.last_entry.healed_query == HEALED_OR_QUERY

    asyncio.run(run_test())


def test_default_policy_waits_for_approval(orchestrator):
    async def run_test():
        query = _make_query()
        result = await orchestrator.heal(query)

        assert result.status == HealingStatus.PENDING_APPROVAL
        assert result.healed_query == HEALED_OR_QUERY

        history = await orchestrator.get_history(query.query_hash)
        assert history.total_healings == 0
        assert history.summary == NO_HISTORY_SUMMARY

    asyncio.run(run_test())


@pytest.mark.parametrize("policy", [
    HealingPolicy(auto_apply=True, require_approval=True),
    HealingPolicy(auto_apply=False, require_approval=False),
    HealingPolicy(auto_apply=True, require_approval=True, test_before_apply=False),
])
def test_never_applied_while_approval_required(orchestrator, policy):
    async def run_test():
        result = await orchestrator.heal(_make_query(), policy)
        assert result.status == HealingStatus.PENDING_APPROVAL

    asyncio.run(run_test())


def test_metric_only_finding_fails_validation(orchestrator):
    """High elapsed time with a clean query: no fix, no improvement."""
    async def run_test():
        query = _make_query(CLEAN_QUERY, avg_elapsed_time_ms=6000)
        result = await orchestrator.heal(query, AUTO_APPLY)

        assert result.status == HealingStatus.VALIDATION_FAILED
        assert result.applied_fixes == []
        assert result.improvement_percent == 0
        assert result.healed_query == CLEAN_QUERY

        history = await orchestrator.get_history(query.query_hash)
        assert history.total_healings == 1
        assert history.failed_healings == 1
        assert history.last_entry.success is False

    asyncio.run(run_test())


def test_skip_validation_still_requires_policy_to_apply(orchestrator):
    async def run_test():
        policy = HealingPolicy(auto_apply=True, require_approval=False, test_before_apply=False)
        result = await orchestrator.heal(_make_query(), policy)
        assert result.status == HealingStatus.APPLIED
        assert result.validation is None

    asyncio.run(run_test())


def test_disabled_query_skips_detection():
    async def run_test():
        detector = MagicMock(spec=BaseDetector)
        orchestrator = HealingOrchestrator(detector=detector)
        query = _make_query()

        orchestrator.set_enabled(query.query_hash, False)
        result = await orchestrator.heal(query, AUTO_APPLY)

        assert result.status == HealingStatus.DISABLED
        assert result.healed_query == query.query_text
        detector.detect.assert_not_called()

        orchestrator.set_enabled(query.query_hash, True)
        assert orchestrator.is_enabled(query.query_hash)

    asyncio.run(run_test())


def test_clean_query_needs_no_action(orchestrator):
    async def run_test():
        result = await orchestrator.heal(_make_query(CLEAN_QUERY), AUTO_APPLY)
        assert result.status == HealingStatus.NO_ACTION_NEEDED
        assert result.candidate_fixes == []

    asyncio.run(run_test())


def test_semantic_difference_fails_validation():
    async def run_test():
        validator = MagicMock()
        validator.validate = AsyncMock(return_value=ValidationVerdict(
            is_valid=True, is_better=True, is_semantically_equivalent=False, improvement_percent=30,
        ))
        orchestrator = HealingOrchestrator(validator=validator)

        result = await orchestrator.heal(_make_query(), AUTO_APPLY)
        assert result.status == HealingStatus.VALIDATION_FAILED
        assert "semantically equivalent" in result.message

    asyncio.run(run_test())


def test_unexpected_error_becomes_error_status():
    async def run_test():
        detector = MagicMock(spec=BaseDetector)
        detector.detect.side_effect = RuntimeError("boom")
        orchestrator = HealingOrchestrator(detector=detector)

        result = await orchestrator.heal(_make_query(), AUTO_APPLY)
        assert result.status == HealingStatus.ERROR
        assert "boom" in result.message
        assert result.healed_query == OR_QUERY

    asyncio.run(run_test())


# ===================================================================
# Telemetry
# ===================================================================
def test_missing_index_from_telemetry():
    telemetry = StaticTelemetrySource([
        MissingIndex(table_name="dbo.Orders", impact_score=40_000, equality_columns=["CustomerId"]),
    ])
    orchestrator = HealingOrchestrator(telemetry=telemetry)
    findings = orchestrator.detect_findings(_make_query("SELECT Id FROM dbo.Orders WHERE CustomerId = 1"))
    assert [f.rule_id for f in findings] == [rules.MISSING_INDEX]


def test_telemetry_failure_is_ignored():
    telemetry = MagicMock(spec=TelemetrySource)
    telemetry.get_missing_indexes.side_effect = ConnectionError("telemetry down")
    orchestrator = HealingOrchestrator(telemetry=telemetry)

    findings = orchestrator.detect_findings(_make_query())
    assert [f.rule_id for f in findings] == [rules.SELECT_STAR, rules.OR_CHAIN]


# ===================================================================
# Rollback
# ===================================================================
def test_rollback_without_history_fails(orchestrator):
    async def run_test():
        result = await orchestrator.rollback("unknown-hash")
        assert result.success is False
        assert result.reason == NO_HISTORY_REASON

    asyncio.run(run_test())


def test_rollback_after_apply(orchestrator):
    async def run_test():
        query = _make_query()
        await orchestrator.heal(query, AUTO_APPLY)

        result = await orchestrator.rollback(query.query_hash)
        assert result.success
        assert result.reason == ROLLBACK_REASON
        assert result.original_query == OR_QUERY
        assert result.rolled_back_query == HEALED_OR_QUERY

        history = await orchestrator.get_history(query.query_hash)
        assert history.rolled_back == 1
        assert history.last_entry.action == "Rollback"
        assert history.last_entry.status == "RolledBack"
        assert history.total_improvement_percent == 0
        assert len(history.entries) == 2

    asyncio.run(run_test())


def test_auto_rollback_on_later_validation_failure(orchestrator):
    async def run_test():
        await orchestrator.heal(_make_query(query_hash="h1"), AUTO_APPLY)
        failing = _make_query(CLEAN_QUERY, query_hash="h1", avg_elapsed_time_ms=6000)

        result = await orchestrator.heal(failing, AUTO_APPLY)
        assert result.status == HealingStatus.VALIDATION_FAILED
        assert "rolled back" in result.message

        history = await orchestrator.get_history("h1")
        assert history.rolled_back == 1
        assert [e.action for e in history.entries] == ["Heal", "Heal", "Rollback"]

        # Nothing left to roll back on the next failure
        await orchestrator.heal(failing, AUTO_APPLY)
        history = await orchestrator.get_history("h1")
        assert history.rolled_back == 1

    asyncio.run(run_test())


def test_auto_rollback_disabled(orchestrator):
    async def run_test():
        await orchestrator.heal(_make_query(query_hash="h1"), AUTO_APPLY)
        policy = HealingPolicy(auto_apply=True, require_approval=False, auto_rollback=False)
        await orchestrator.heal(_make_query(CLEAN_QUERY, query_hash="h1", avg_elapsed_time_ms=6000), policy)

        history = await orchestrator.get_history("h1")
        assert history.rolled_back == 0

    asyncio.run(run_test())


# ===================================================================
# Learning
# ===================================================================
def test_learned_failures_are_skipped():
    async def run_test():
        store = InMemoryHistoryStore()
        query = _make_query()
        await store.put(HealingHistory(query_hash=query.query_hash, failed_patterns={"OrToIn"}))
        orchestrator = HealingOrchestrator(store=store)

        result = await orchestrator.heal(query, AUTO_APPLY)
        assert result.applied_fixes == []
        assert result.status == HealingStatus.VALIDATION_FAILED

        no_learning = HealingPolicy(auto_apply=True, require_approval=False, enable_learning=False)
        result = await orchestrator.heal(query, no_learning)
        assert result.status == HealingStatus.APPLIED

    asyncio.run(run_test())


def test_success_outweighs_learned_failure():
    async def run_test():
        store = InMemoryHistoryStore()
        query = _make_query()
        await store.put(HealingHistory(
            query_hash=query.query_hash,
            failed_patterns={"OrToIn"},
            successful_patterns={"OrToIn"},
        ))
        result = await HealingOrchestrator(store=store).heal(query, AUTO_APPLY)
        assert result.status == HealingStatus.APPLIED

    asyncio.run(run_test())


# ===================================================================
# Concurrency
# ===================================================================
def test_concurrent_heals_of_same_hash_are_all_recorded(orchestrator):
    async def run_test():
        query = _make_query()
        results = await asyncio.gather(*(orchestrator.heal(query, AUTO_APPLY) for _ in range(10)))

        assert all(r.status == HealingStatus.APPLIED for r in results)
        history = await orchestrator.get_history(query.query_hash)
        assert history.total_healings == 10
        assert history.successful_healings == 10
        assert len(history.entries) == 10

    asyncio.run(run_test())


class _YieldingStore(InMemoryHistoryStore):
    """Gives other tasks a turn inside every read and write."""

    async def get(self, query_hash):
        await asyncio.sleep(0)
        return await super().get(query_hash)

    async def put(self, history):
        await asyncio.sleep(0)
        await super().put(history)


def test_same_hash_read_modify_write_is_serialized():
    async def run_test():
        orchestrator = HealingOrchestrator(store=_YieldingStore())
        query = _make_query()
        await asyncio.gather(*(orchestrator.heal(query, AUTO_APPLY) for _ in range(10)))

        history = await orchestrator.get_history(query.query_hash)
        assert history.total_healings == 10
        assert len(history.entries) == 10

    asyncio.run(run_test())


def test_heal_batch_isolates_queries(orchestrator):
    async def run_test():
        queries = [
            _make_query(),
            _make_query(CLEAN_QUERY),
            _make_query("SELECT Id FROM Orders WHERE YEAR(OrderDate) = 2024"),
        ]
        results = await orchestrator.heal_batch(queries, AUTO_APPLY)

        assert [r.status for r in results] == [
            HealingStatus.APPLIED,
            HealingStatus.NO_ACTION_NEEDED,
            HealingStatus.APPLIED,
        ]
        assert [r.query_hash for r in results] == [q.query_hash for q in queries]
        assert "OrderDate >= '2024-01-01'" in results[2].healed_query

    asyncio.run(run_test())


# ===================================================================
# Stage operations
# ===================================================================
def test_stage_operations_compose(orchestrator):
    async def run_test():
        query = _make_query()
        fixes = orchestrator.generate_fixes(query)
        healed, applied = orchestrator.apply_fixes(query.query_text, fixes)
        verdict = await orchestrator.validate(query.query_text, healed, query.metrics, applied)

        assert healed == HEALED_OR_QUERY
        assert verdict.is_better
        assert verdict.improvement_percent == 30

        history = await orchestrator.get_history(query.query_hash)
        assert history.total_healings == 0

    asyncio.run(run_test())
