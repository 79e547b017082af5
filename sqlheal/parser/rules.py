"""
Detector Rules
==============
Rule identifiers shared by PatternDetector (which emits them on
findings) and FixGenerator (which maps them to candidate fixes).

Text rules look at the statement; metric rules look at the telemetry
snapshot; the missing-index rule looks at advisory payloads.
"""

# ---------------------------------------------------------------------------
# Text rules
# ---------------------------------------------------------------------------
SELECT_STAR = "select_star"
OR_CHAIN = "or_chain"
OR_IN_WHERE = "or_in_where"
FUNCTION_IN_WHERE = "function_in_where"
NOT_IN = "not_in"
LEADING_WILDCARD = "leading_wildcard"
DISTINCT = "distinct"
IMPLICIT_CONVERSION = "implicit_conversion"
CORRELATED_SUBQUERY = "correlated_subquery"
JOINS_WITHOUT_WHERE = "joins_without_where"

# ---------------------------------------------------------------------------
# Metric rules
# ---------------------------------------------------------------------------
HIGH_CPU = "high_cpu"
HIGH_LOGICAL_READS = "high_logical_reads"
HIGH_PHYSICAL_READS = "high_physical_reads"
FREQUENT_EXECUTION = "frequent_execution"
HIGH_ELAPSED_TIME = "high_elapsed_time"

# ---------------------------------------------------------------------------
# Advisory rules
# ---------------------------------------------------------------------------
MISSING_INDEX = "missing_index"

TEXT_RULES = frozenset({
    SELECT_STAR,
    OR_CHAIN,
    OR_IN_WHERE,
    FUNCTION_IN_WHERE,
    NOT_IN,
    LEADING_WILDCARD,
    DISTINCT,
    IMPLICIT_CONVERSION,
    CORRELATED_SUBQUERY,
    JOINS_WITHOUT_WHERE,
})

METRIC_RULES = frozenset({
    HIGH_CPU,
    HIGH_LOGICAL_READS,
    HIGH_PHYSICAL_READS,
    FREQUENT_EXECUTION,
    HIGH_ELAPSED_TIME,
    MISSING_INDEX,
})
