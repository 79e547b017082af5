"""
Healing Orchestrator
====================
The central state machine of the self-healing core.
Drives the Detect → Generate → Apply → Validate → Record pipeline for one
query and owns the per-hash enable/disable switch, rollback and history.

State machine (HealingResult.status):
    1. Hash disabled                              → Disabled (nothing else runs)
    2. No findings                                → NoActionNeeded
    3. Generate candidates, apply eligible fixes, project metrics
    4. TestBeforeApply and not (better and equivalent) → ValidationFailed
       (recorded as a failed attempt; with AutoRollback a previous
       un-reverted Applied healing is rolled back)
    5. AutoApply and not RequireApproval          → Applied (recorded, learned)
    6. Otherwise                                  → PendingApproval
    Any unexpected exception                      → Error (message set, never retried)

Learning:
    With enable_learning, applied fix types are unioned into the per-hash
    successful / failed sets, and types that have only ever failed for a
    hash are skipped on later runs of that hash.

Concurrency:
    Detection, generation, application and rule validation are pure. History
    read-modify-write happens under the store's per-hash lock, so runs for
    different hashes never block each other. The optional ``timeout`` only
    bounds advisory calls; cancelling the awaiting task cancels the run.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from sqlheal.agents.fix_applier import ApplyOptions, FixApplier
from sqlheal.agents.fix_generator import FixGenerator
from sqlheal.agents.validator import Validator, estimate_improvement
from sqlheal.core.config import ADVISORY_TIMEOUT_SECONDS
from sqlheal.core.constants import (
    ACTION_HEAL,
    ACTION_ROLLBACK,
    MAJOR_IMPACT,
    MODERATE_IMPACT,
    NO_HISTORY_REASON,
    NO_HISTORY_SUMMARY,
    PHYSICAL_READS_FACTOR_WEIGHT,
    ROLLBACK_REASON,
    SIGNIFICANT_IMPACT,
)
from sqlheal.llm.advisory import QueryAdvisor
from sqlheal.models.finding import Finding
from sqlheal.models.fix import AppliedFix, Fix
from sqlheal.models.healing import HealingPolicy, HealingResult, HealingStatus, ImpactTier
from sqlheal.models.history import HealingHistory, HistoryEntry, RollbackResult
from sqlheal.models.query import MissingIndex, Query, QueryMetrics
from sqlheal.models.validation import ValidationVerdict
from sqlheal.parser.pattern_detector import BaseDetector, PatternDetector
from sqlheal.parser.sql_text import mask_sql, referenced_tables
from sqlheal.services.history_store import HistoryStore, InMemoryHistoryStore
from sqlheal.services.telemetry import TelemetrySource
from sqlheal.utils.skip_reasons import LEARNED_FAILURE

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Projection helpers
# ---------------------------------------------------------------------------
def impact_tier(improvement_percent: float) -> ImpactTier:
    """Bucket an improvement percentage into an impact tier."""
    if improvement_percent >= MAJOR_IMPACT:
        return ImpactTier.MAJOR
    if improvement_percent >= SIGNIFICANT_IMPACT:
        return ImpactTier.SIGNIFICANT
    if improvement_percent >= MODERATE_IMPACT:
        return ImpactTier.MODERATE
    return ImpactTier.MINOR


def predict_metrics(metrics: QueryMetrics, improvement_percent: float) -> QueryMetrics:
    """
    Project metrics after healing.

    CPU, elapsed time and logical reads scale by (1 − improvement/100);
    physical reads shrink by 80% of the improvement. Execution count is
    unchanged.
    """
    factor = 1 - improvement_percent / 100
    physical_factor = 1 - improvement_percent * PHYSICAL_READS_FACTOR_WEIGHT / 100
    return QueryMetrics(
        execution_count=metrics.execution_count,
        total_cpu_time_ms=metrics.total_cpu_time_ms * factor,
        avg_cpu_time_ms=metrics.avg_cpu_time_ms * factor,
        total_elapsed_time_ms=metrics.total_elapsed_time_ms * factor,
        avg_elapsed_time_ms=metrics.avg_elapsed_time_ms * factor,
        avg_logical_reads=metrics.avg_logical_reads * factor,
        avg_physical_reads=metrics.avg_physical_reads * physical_factor,
        last_execution_time=metrics.last_execution_time,
    )


def _summarize_result(
    applied: List[AppliedFix],
    candidates: List[Fix],
    improvement: float,
    tier: ImpactTier,
    original: QueryMetrics,
    predicted: QueryMetrics,
) -> str:
    if not applied:
        return f"No fix applied out of {len(candidates)} candidate(s)."
    types = ", ".join(a.fix.fix_type.value for a in applied)
    return (
        f"Applied {len(applied)} of {len(candidates)} candidate fix(es) [{types}]; "
        f"estimated improvement {improvement:.1f}% ({tier.value}), "
        f"avg elapsed {original.avg_elapsed_time_ms:.0f} ms → {predicted.avg_elapsed_time_ms:.0f} ms."
    )


def _summarize_history(history: HealingHistory) -> str:
    return (
        f"{history.total_healings} healing attempt(s): {history.successful_healings} successful, "
        f"{history.failed_healings} failed, {history.rolled_back} rolled back. "
        f"Avg elapsed {history.initial_avg_elapsed_ms:.0f} ms → {history.current_avg_elapsed_ms:.0f} ms "
        f"({history.total_improvement_percent:+.1f}%, {history.trend})."
    )


def _update_improvement(history: HealingHistory) -> None:
    initial = history.initial_avg_elapsed_ms
    if initial > 0:
        history.total_improvement_percent = (initial - history.current_avg_elapsed_ms) / initial * 100
    else:
        history.total_improvement_percent = 0.0


def _last_unreverted_apply(history: HealingHistory) -> Optional[HistoryEntry]:
    """Most recent Applied heal entry not followed by a rollback."""
    for entry in reversed(history.entries):
        if entry.action == ACTION_ROLLBACK:
            return None
        if entry.action == ACTION_HEAL and entry.status == HealingStatus.APPLIED.value:
            return entry
    return None


# ---------------------------------------------------------------------------
# Healing Orchestrator
# ---------------------------------------------------------------------------
class HealingOrchestrator:
    """
    Orchestrates healing runs, history and rollback for captured queries.

    Parameters
    ----------
    detector : BaseDetector or None
        Finding source (defaults to PatternDetector).
    generator : FixGenerator or None
        Candidate fix source.
    applier : FixApplier or None
        Text rewriter; receives ``advisor`` when auto-created.
    validator : Validator or None
        Rewrite validator; receives ``advisor`` when auto-created.
    store : HistoryStore or None
        History persistence (defaults to a fresh InMemoryHistoryStore).
    telemetry : TelemetrySource or None
        Missing-index advisories; None disables the missing-index rule.
    advisor : QueryAdvisor or None
        Optional advisory collaborator.
    advisory_timeout : float
        Upper bound in seconds for a single advisory call.
    """

    def __init__(
        self,
        detector: Optional[BaseDetector] = None,
        generator: Optional[FixGenerator] = None,
        applier: Optional[FixApplier] = None,
        validator: Optional[Validator] = None,
        store: Optional[HistoryStore] = None,
        telemetry: Optional[TelemetrySource] = None,
        advisor: Optional[QueryAdvisor] = None,
        advisory_timeout: float = ADVISORY_TIMEOUT_SECONDS,
    ) -> None:
        self.detector = detector or PatternDetector()
        self.generator = generator or FixGenerator(detector=self.detector)
        self.applier = applier or FixApplier(advisor=advisor)
        self.validator = validator or Validator(advisor=advisor, advisory_timeout=advisory_timeout)
        self.store = store if store is not None else InMemoryHistoryStore()
        self.telemetry = telemetry
        self.advisory_timeout = advisory_timeout
        self._enabled: Dict[str, bool] = {}

    # -------------------------------------------------------------------
    # Enable / disable
    # -------------------------------------------------------------------
    def set_enabled(self, query_hash: str, enabled: bool) -> None:
        """Switch auto-healing on or off for one query hash."""
        self._enabled[query_hash] = enabled
        logger.info("Auto-healing %s for %s", "enabled" if enabled else "disabled", query_hash)

    def is_enabled(self, query_hash: str) -> bool:
        return self._enabled.get(query_hash, True)

    # -------------------------------------------------------------------
    # Stage operations
    # -------------------------------------------------------------------
    def detect_findings(self, query: Query) -> List[Finding]:
        """Run the detector, including missing-index advisories when telemetry is wired."""
        return self.detector.detect(query, self._missing_indexes(query))

    def generate_fixes(self, query: Query) -> List[Fix]:
        """Preview candidate fixes for a query. No history is touched."""
        return self.generator.generate(self.detect_findings(query), query.query_hash)

    def apply_fixes(
        self,
        query_text: str,
        fixes: List[Fix],
        options: Optional[ApplyOptions] = None,
    ) -> Tuple[str, List[AppliedFix]]:
        return self.applier.apply(query_text, fixes, options)

    async def validate(
        self,
        original: str,
        rewritten: str,
        metrics: Optional[QueryMetrics] = None,
        applied_fixes: Optional[List[AppliedFix]] = None,
        policy: Optional[HealingPolicy] = None,
    ) -> ValidationVerdict:
        return await self.validator.validate(original, rewritten, metrics, applied_fixes, policy)

    # -------------------------------------------------------------------
    # Heal
    # -------------------------------------------------------------------
    async def heal(
        self,
        query: Query,
        policy: Optional[HealingPolicy] = None,
        timeout: Optional[float] = None,
    ) -> HealingResult:
        """
        Run one healing pass for a query.

        Parameters
        ----------
        query : Query
            Captured statement and telemetry.
        policy : HealingPolicy or None
            Caller policy (defaults: require approval, test before apply).
        timeout : float or None
            Overall time limit in seconds; only advisory calls are bounded by it.

        Returns
        -------
        HealingResult
            Terminal result; status is never Applied under require_approval.
        """
        policy = policy or HealingPolicy()
        started = time.monotonic()
        query_hash = query.query_hash
        fields = {
            "query_hash": query_hash,
            "healing_date": datetime.now(timezone.utc),
            "original_query": query.query_text,
            "healed_query": query.query_text,
            "original_metrics": query.metrics,
        }

        # ===========================================================
        # 1. Enable switch
        # ===========================================================
        if not self.is_enabled(query_hash):
            logger.info("Healing skipped for %s: disabled", query_hash)
            return HealingResult(
                **fields,
                status=HealingStatus.DISABLED,
                message="Auto-healing is disabled for this query",
            )

        try:
            # ===========================================================
            # 2. Detect
            # ===========================================================
            findings = self.detect_findings(query)
            logger.info("Step 1: %d finding(s) for %s", len(findings), query_hash)
            if not findings:
                return HealingResult(
                    **fields,
                    status=HealingStatus.NO_ACTION_NEEDED,
                    message="No optimization opportunities detected",
                    summary="Query shows no known anti-patterns or metric anomalies.",
                )

            # ===========================================================
            # 3. Generate + apply
            # ===========================================================
            candidates = self.generator.generate(findings, query_hash)
            eligible = candidates
            if policy.enable_learning:
                eligible = await self._drop_learned_failures(query_hash, candidates)

            options = ApplyOptions(
                min_confidence=policy.min_confidence,
                aggressive_mode=policy.aggressive_mode,
                use_advisor=policy.use_advisor_rewrite,
            )
            if options.use_advisor:
                healed, applied = await self.applier.apply_async(
                    query.query_text, eligible, options, timeout=self._remaining(started, timeout),
                )
            else:
                healed, applied = self.applier.apply(query.query_text, eligible, options)
            logger.info("Step 2: applied %d of %d candidate fix(es)", len(applied), len(candidates))

            improvement = estimate_improvement(applied)
            predicted = predict_metrics(query.metrics, improvement)
            tier = impact_tier(improvement)
            fields.update({
                "healed_query": healed,
                "predicted_metrics": predicted,
                "candidate_fixes": candidates,
                "applied_fixes": applied,
                "improvement_percent": improvement,
                "time_reduction_ms": query.metrics.avg_elapsed_time_ms - predicted.avg_elapsed_time_ms,
                "impact_tier": tier,
                "summary": _summarize_result(applied, candidates, improvement, tier, query.metrics, predicted),
            })

            # ===========================================================
            # 4. Validate
            # ===========================================================
            if policy.test_before_apply:
                verdict = await self.validator.validate(
                    query.query_text, healed, query.metrics, applied, policy,
                    timeout=self._remaining(started, timeout),
                )
                fields["validation"] = verdict
                logger.info(
                    "Step 3: validation valid=%s better=%s recommendation=%s",
                    verdict.is_valid, verdict.is_better, verdict.recommendation.value,
                )
                if not verdict.is_better or not verdict.is_semantically_equivalent:
                    return await self._fail_validation(query, policy, fields, verdict)

            # ===========================================================
            # 5. Decide
            # ===========================================================
            if policy.auto_apply and not policy.require_approval:
                result = HealingResult(
                    **fields,
                    status=HealingStatus.APPLIED,
                    message=f"Healing applied with {improvement:.1f}% estimated improvement",
                )
                await self._record(query, result, policy)
            else:
                result = HealingResult(
                    **fields,
                    status=HealingStatus.PENDING_APPROVAL,
                    message="Healing ready, awaiting approval",
                )
            logger.info("Healing for %s finished: %s", query_hash, result.status.value)
            return result

        except Exception as e:
            logger.error("Healing for %s failed: %s", query_hash, e, exc_info=True)
            fields["healed_query"] = query.query_text
            return HealingResult(
                **fields,
                status=HealingStatus.ERROR,
                message=f"Healing failed: {e}",
            )

    async def heal_batch(
        self,
        queries: List[Query],
        policy: Optional[HealingPolicy] = None,
        timeout: Optional[float] = None,
    ) -> List[HealingResult]:
        """Heal queries concurrently; one query's failure never affects the others."""
        return list(await asyncio.gather(*(self.heal(q, policy, timeout) for q in queries)))

    # -------------------------------------------------------------------
    # Rollback / history
    # -------------------------------------------------------------------
    async def rollback(self, query_hash: str) -> RollbackResult:
        """
        Record a rollback for the latest healing of a query hash.

        Bookkeeping only: reverting a change deployed elsewhere is the
        caller's responsibility.

        Returns
        -------
        RollbackResult
            success=False with reason "No healing history found" when the
            hash has no history.
        """
        now = datetime.now(timezone.utc)
        async with self.store.lock(query_hash):
            history = await self.store.get(query_hash)
            if history is None or not history.entries:
                logger.info("Rollback for %s: no history", query_hash)
                return RollbackResult(
                    query_hash=query_hash,
                    rollback_date=now,
                    success=False,
                    reason=NO_HISTORY_REASON,
                    message="Rollback failed: no healing history found",
                )

            applied = _last_unreverted_apply(history)
            source = applied or history.entries[-1]
            history.entries.append(HistoryEntry(
                date=now,
                action=ACTION_ROLLBACK,
                success=True,
                status=HealingStatus.ROLLED_BACK.value,
                details=ROLLBACK_REASON,
                original_query=source.original_query,
                healed_query=source.healed_query,
            ))
            history.rolled_back += 1
            if applied:
                history.current_avg_elapsed_ms = history.initial_avg_elapsed_ms
                _update_improvement(history)
            history.summary = _summarize_history(history)
            await self.store.put(history)

        logger.info("Rollback recorded for %s", query_hash)
        return RollbackResult(
            query_hash=query_hash,
            rollback_date=now,
            success=True,
            original_query=source.original_query,
            rolled_back_query=source.healed_query,
            reason=ROLLBACK_REASON,
            message=f"Rolled back healing from {source.date.isoformat()}",
        )

    async def get_history(self, query_hash: str) -> HealingHistory:
        """History for a hash, or an empty (unsaved) one when none exists."""
        history = await self.store.get(query_hash)
        if history is None:
            return HealingHistory(query_hash=query_hash, summary=NO_HISTORY_SUMMARY)
        return history

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------
    def _missing_indexes(self, query: Query) -> List[MissingIndex]:
        if self.telemetry is None or not query.query_text:
            return []
        tables = referenced_tables(mask_sql(query.query_text).upper())
        if not tables:
            return []
        try:
            return self.telemetry.get_missing_indexes(tables)
        except Exception as exc:
            logger.warning("Missing-index lookup failed for %s: %s", query.query_hash, exc)
            return []

    def _remaining(self, started: float, timeout: Optional[float]) -> float:
        if timeout is None:
            return self.advisory_timeout
        return max(0.0, min(self.advisory_timeout, timeout - (time.monotonic() - started)))

    async def _drop_learned_failures(self, query_hash: str, fixes: List[Fix]) -> List[Fix]:
        history = await self.store.get(query_hash)
        if history is None:
            return fixes
        learned = history.failed_patterns - history.successful_patterns
        kept = []
        for fix in fixes:
            if fix.fix_type.value in learned:
                logger.info("Fix %s not applied: %s", fix.fix_type.value, LEARNED_FAILURE)
                continue
            kept.append(fix)
        return kept

    async def _fail_validation(
        self,
        query: Query,
        policy: HealingPolicy,
        fields: dict,
        verdict: ValidationVerdict,
    ) -> HealingResult:
        if not verdict.is_valid:
            message = "Validation failed: " + "; ".join(verdict.errors)
        elif not verdict.is_semantically_equivalent:
            message = "Validation failed: rewrite may not be semantically equivalent"
        else:
            message = f"Validation failed: {verdict.reason}"

        result = HealingResult(**fields, status=HealingStatus.VALIDATION_FAILED, message=message)
        history = await self._record(query, result, policy)

        if policy.auto_rollback and _last_unreverted_apply(history):
            rollback = await self.rollback(query.query_hash)
            if rollback.success:
                result = result.model_copy(update={"message": f"{message}. Previous healing rolled back."})
        return result

    async def _record(self, query: Query, result: HealingResult, policy: HealingPolicy) -> HealingHistory:
        """Append a healing run to the hash's history under its lock."""
        query_hash = query.query_hash
        async with self.store.lock(query_hash):
            history = await self.store.get(query_hash) or HealingHistory(query_hash=query_hash)
            if history.total_healings == 0:
                history.initial_avg_elapsed_ms = query.metrics.avg_elapsed_time_ms
                history.current_avg_elapsed_ms = query.metrics.avg_elapsed_time_ms

            success = result.status == HealingStatus.APPLIED
            fix_types = {a.fix.fix_type.value for a in result.applied_fixes}
            history.total_healings += 1
            if success:
                history.successful_healings += 1
                if result.predicted_metrics is not None:
                    history.current_avg_elapsed_ms = result.predicted_metrics.avg_elapsed_time_ms
                if policy.enable_learning:
                    history.successful_patterns |= fix_types
            else:
                history.failed_healings += 1
                if policy.enable_learning:
                    history.failed_patterns |= fix_types
            _update_improvement(history)

            history.entries.append(HistoryEntry(
                date=result.healing_date,
                action=ACTION_HEAL,
                success=success,
                improvement_percent=result.improvement_percent,
                status=result.status.value,
                details=result.message,
                original_query=result.original_query,
                healed_query=result.healed_query,
            ))
            history.summary = _summarize_history(history)
            await self.store.put(history)
        return history
