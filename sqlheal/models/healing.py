"""
Healing Models
==============
Pydantic models for a single healing run: the caller's policy and the
immutable result the orchestrator returns.

Status lifecycle (HealingStatus):
    Disabled          — auto-healing switched off for this query hash
    NoActionNeeded    — detector produced no findings
    ValidationFailed  — TestBeforeApply rejected the rewrite (terminal)
    PendingApproval   — rewrite ready, waiting on a human / policy decision
    Applied           — rewrite accepted under AutoApply without approval
    RolledBack        — history entry status written by rollback()
    Error             — unexpected fault, message carries the cause

Invariant:
    status is never Applied while policy.require_approval is True.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from sqlheal.models.fix import AppliedFix, Fix
from sqlheal.models.query import QueryMetrics
from sqlheal.models.validation import ValidationVerdict
from sqlheal.core.config import DEFAULT_MIN_CONFIDENCE


class HealingStatus(str, Enum):
    PENDING_APPROVAL = "PendingApproval"
    APPLIED = "Applied"
    DISABLED = "Disabled"
    NO_ACTION_NEEDED = "NoActionNeeded"
    VALIDATION_FAILED = "ValidationFailed"
    ROLLED_BACK = "RolledBack"
    ERROR = "Error"


class ImpactTier(str, Enum):
    MINOR = "Minor"
    MODERATE = "Moderate"
    SIGNIFICANT = "Significant"
    MAJOR = "Major"


class HealingPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    auto_apply: bool = False
    require_approval: bool = True
    auto_rollback: bool = True
    max_degradation_percent: float = 5.0
    min_improvement_percent: float = 10.0
    enable_learning: bool = True
    test_before_apply: bool = True
    min_confidence: float = Field(default=DEFAULT_MIN_CONFIDENCE, ge=0.0, le=1.0)
    aggressive_mode: bool = False
    use_advisor_rewrite: bool = False


class HealingResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    query_hash: str
    healing_date: datetime
    original_query: str = ""
    healed_query: str = ""
    original_metrics: QueryMetrics = QueryMetrics()
    predicted_metrics: Optional[QueryMetrics] = None
    candidate_fixes: List[Fix] = []
    applied_fixes: List[AppliedFix] = []
    improvement_percent: float = 0.0
    time_reduction_ms: float = 0.0
    impact_tier: ImpactTier = ImpactTier.MINOR
    status: HealingStatus = HealingStatus.PENDING_APPROVAL
    message: str = ""
    summary: str = ""
    validation: Optional[ValidationVerdict] = None
