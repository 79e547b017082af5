"""
Finding Model
=============
Pydantic model for one detected anti-pattern or metric anomaly.
This is the contract between PatternDetector and FixGenerator.

Fields:
    rule_id             — detector rule that produced the finding (key into the fix table)
    category            — indexing / query-rewrite / caching / statistics / configuration / table-design
    severity            — info / warning / critical
    title               — short human-readable label
    description         — what was observed and why it costs performance
    recommended_action  — what to change
    example_code        — optional DDL or rewritten SQL illustrating the action
    estimated_impact    — 0–100 expected gain if addressed
    evidence            — snippet of the query (or metric values) that triggered the rule
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class Category(str, Enum):
    INDEXING = "indexing"
    QUERY_REWRITE = "query-rewrite"
    CACHING = "caching"
    STATISTICS = "statistics"
    CONFIGURATION = "configuration"
    TABLE_DESIGN = "table-design"


class Finding(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: str
    category: Category
    severity: Severity
    title: str
    description: str = ""
    recommended_action: str = ""
    example_code: Optional[str] = None
    estimated_impact: float = Field(default=0.0, ge=0.0, le=100.0)
    evidence: str = ""
