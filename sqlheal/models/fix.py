"""
Fix Models
==========
Pydantic models for candidate rewrites and their application record.

Fix fields:
    fix_id              — deterministic id (query hash + type + rule)
    fix_type            — closed set, see FixType
    rule_id             — detector rule the fix answers
    title / description — human-readable explanation
    confidence          — 0.0–1.0, how sure the rule is that the rewrite helps
    estimated_impact    — 0–100 expected gain
    safety              — risk tier, see FixSafety
    before_snippet      — evidence taken from the query
    after_snippet       — illustrative shape of the rewrite
    requires_validation — rewrite must pass the Validator before it is kept
    has_transform       — a deterministic text transform exists for fix_type

AppliedFix fields:
    fix                 — the candidate that was applied
    applied             — True only when the text actually changed
    deltas              — (before, after) fragments replaced in the query text
"""
from enum import Enum
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field


class FixType(str, Enum):
    SELECT_STAR_REPLACEMENT = "SelectStarReplacement"
    OR_TO_IN = "OrToIn"
    OR_TO_UNION = "OrToUnion"
    FUNCTION_IN_WHERE = "FunctionInWhere"
    NOT_IN_TO_NOT_EXISTS = "NotInToNotExists"
    LEADING_WILDCARD_REMOVAL = "LeadingWildcardRemoval"
    DISTINCT_REVIEW = "DistinctReview"
    IMPLICIT_CONVERSION_FIX = "ImplicitConversionFix"
    SUBQUERY_REWRITE = "SubqueryRewrite"
    JOIN_REORDERING = "JoinReordering"


class FixSafety(str, Enum):
    SAFE = "safe"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    REVIEW_REQUIRED = "review-required"


# Lower rank = safer. REVIEW_REQUIRED is never auto-applied.
SAFETY_RANK: Dict[FixSafety, int] = {
    FixSafety.SAFE: 0,
    FixSafety.LOW: 1,
    FixSafety.MEDIUM: 2,
    FixSafety.HIGH: 3,
    FixSafety.REVIEW_REQUIRED: 99,
}


def safety_rank(safety: FixSafety) -> int:
    """Return the risk rank of a safety tier (lower = safer)."""
    return SAFETY_RANK.get(safety, 99)


class Fix(BaseModel):
    model_config = ConfigDict(frozen=True)

    fix_id: str = ""
    fix_type: FixType
    rule_id: str = ""
    title: str = ""
    description: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    estimated_impact: float = Field(default=0.0, ge=0.0, le=100.0)
    safety: FixSafety = FixSafety.REVIEW_REQUIRED
    before_snippet: str = ""
    after_snippet: str = ""
    requires_validation: bool = True
    has_transform: bool = False


class TextDelta(BaseModel):
    model_config = ConfigDict(frozen=True)

    before: str
    after: str


class AppliedFix(BaseModel):
    model_config = ConfigDict(frozen=True)

    fix: Fix
    applied: bool = True
    deltas: List[TextDelta] = []
