"""
Constants
Centralised thresholds for detection, improvement estimation and verdicts.
"""
# Metric thresholds (PatternDetector)
CPU_WARNING_MS = 100
CPU_CRITICAL_MS = 500
LOGICAL_READS_WARNING = 10_000
LOGICAL_READS_CRITICAL = 100_000
PHYSICAL_READS_WARNING = 1_000
FREQUENT_EXECUTIONS = 1_000
FREQUENT_CPU_MS = 50
ELAPSED_CRITICAL_MS = 5_000
MAX_JOINS_WITHOUT_WHERE = 3

# Impact caps
CPU_IMPACT_CAP = 90
MISSING_INDEX_IMPACT_CAP = 95
IMPROVEMENT_CAP = 95.0

# Evidence snippets
SNIPPET_CONTEXT_CHARS = 50

# Recommendation thresholds (Validator)
SIGNIFICANT_IMPROVEMENT = 20.0
MODERATE_IMPROVEMENT = 10.0

# Impact tiers (HealingResult)
MAJOR_IMPACT = 50.0
SIGNIFICANT_IMPACT = 30.0
MODERATE_IMPACT = 15.0

# Physical reads shrink less than the other metrics
PHYSICAL_READS_FACTOR_WEIGHT = 0.8

# History entry actions
ACTION_HEAL = "Heal"
ACTION_ROLLBACK = "Rollback"

NO_HISTORY_SUMMARY = "No healing history available for this query"
NO_HISTORY_REASON = "No healing history found"
ROLLBACK_REASON = "Healing did not provide expected improvement"
