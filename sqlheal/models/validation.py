"""
Validation Verdict Model
========================
Pydantic model describing whether a rewrite is structurally sound,
semantically equivalent (best effort) and predicted to be faster.

Blocking vs non-blocking checks:
    - Blocking checks (non-empty, query verb, parentheses) decide is_valid
    - Non-blocking checks (duplicate keywords, performance) only inform
"""
from enum import Enum
from typing import List

from pydantic import BaseModel, ConfigDict


class Recommendation(str, Enum):
    KEEP = "Keep"
    MONITOR = "Monitor"
    ROLLBACK = "Rollback"


class ValidationCheck(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    passed: bool
    detail: str = ""
    blocking: bool = True


class ValidationVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_valid: bool
    is_semantically_equivalent: bool = True
    checks: List[ValidationCheck] = []
    warnings: List[str] = []
    errors: List[str] = []
    validation_method: str = "rule-based"
    improvement_percent: float = 0.0
    original_latency_ms: float = 0.0
    predicted_latency_ms: float = 0.0
    time_reduction_ms: float = 0.0
    is_better: bool = False
    recommendation: Recommendation = Recommendation.ROLLBACK
    reason: str = ""
    summary: str = ""
