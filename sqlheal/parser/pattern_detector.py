"""
Pattern Detector
================
Turns a captured query (text + telemetry) into a ranked list of Findings.

Detection Strategy:
    1. METRIC RULES FIRST — thresholds on the telemetry snapshot
    2. TEXT RULES SECOND — regex patterns on the masked statement
    3. MISSING-INDEX ADVISORIES LAST — only for tables the query references
    4. NEVER a SQL grammar, an execution plan or an LLM

Every rule is independent; the union of their findings is returned sorted
by estimated impact (descending, ties keep detection order). The detector
is a pure function of its inputs and holds no state between calls.

Text rules run against a masked copy of the query (see sql_text.mask_sql)
so that keywords inside string literals and comments never match. Rules
that need literal contents (leading wildcard) scan the raw text and check
that the match starts in code.
"""
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlheal.core.constants import (
    CPU_CRITICAL_MS,
    CPU_IMPACT_CAP,
    CPU_WARNING_MS,
    ELAPSED_CRITICAL_MS,
    FREQUENT_CPU_MS,
    FREQUENT_EXECUTIONS,
    LOGICAL_READS_CRITICAL,
    LOGICAL_READS_WARNING,
    MAX_JOINS_WITHOUT_WHERE,
    MISSING_INDEX_IMPACT_CAP,
    PHYSICAL_READS_WARNING,
)
from sqlheal.models.finding import Category, Finding, Severity
from sqlheal.models.query import MissingIndex, Query, QueryMetrics
from sqlheal.parser import rules
from sqlheal.parser.sql_text import (
    OR_CHAIN_RE,
    extract_snippet,
    mask_sql,
    normalize_table_name,
    referenced_tables,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Detector interface
# ---------------------------------------------------------------------------
class BaseDetector(ABC):
    """Capability interface: anything that turns a Query into Findings."""

    @abstractmethod
    def detect(
        self,
        query: Query,
        missing_indexes: Optional[List[MissingIndex]] = None,
    ) -> List[Finding]:
        ...


# ---------------------------------------------------------------------------
# Simple text rules
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class _TextRule:
    """One regex rule emitting at most one finding per query."""
    rule_id: str
    pattern: re.Pattern
    category: Category
    severity: Severity
    impact: float
    title: str
    description: str
    action: str
    example: Optional[str] = None
    scan_raw: bool = False


_TEXT_RULES: List[_TextRule] = [
    _TextRule(
        rules.SELECT_STAR,
        re.compile(r"\bSELECT\s+\*"),
        Category.QUERY_REWRITE, Severity.WARNING, 40,
        "SELECT * usage",
        "Query returns every column, which increases I/O and network transfer "
        "and prevents covering indexes from being used.",
        "Replace SELECT * with the explicit list of columns the caller needs.",
        "SELECT Col1, Col2, Col3 FROM TableName",
    ),
    _TextRule(
        rules.NOT_IN,
        re.compile(r"\bNOT\s+IN\s*\("),
        Category.QUERY_REWRITE, Severity.INFO, 45,
        "NOT IN with subquery or list",
        "NOT IN returns no rows when the list contains NULL and is often "
        "planned as a scan; NULL handling makes it hard to optimise.",
        "Rewrite as NOT EXISTS or LEFT JOIN ... WHERE key IS NULL.",
        "WHERE NOT EXISTS (SELECT 1 FROM Other o WHERE o.Id = t.Id)",
    ),
    _TextRule(
        rules.LEADING_WILDCARD,
        re.compile(r"\bLIKE\s+N?'%"),
        Category.INDEXING, Severity.WARNING, 55,
        "LIKE with leading wildcard",
        "A pattern starting with % cannot seek an index and forces a scan.",
        "Drop the leading wildcard, or use full-text search for infix matching.",
        "WHERE Name LIKE 'abc%'",
        scan_raw=True,
    ),
    _TextRule(
        rules.IMPLICIT_CONVERSION,
        re.compile(r"=\s*N'|=\s*CAST\s*\("),
        Category.QUERY_REWRITE, Severity.WARNING, 65,
        "Possible implicit conversion",
        "Comparing a column with a value of a different type (Unicode literal "
        "or CAST) can force a conversion on every row and block index seeks.",
        "Match the literal or parameter type to the column's data type.",
        "WHERE VarcharColumn = 'value'",
    ),
]

_NON_FUNCTIONS = frozenset({"IN", "EXISTS", "AND", "OR", "NOT", "VALUES", "WHERE", "ON", "ANY", "ALL"})
_FUNC_COMPARE_RE = re.compile(r"\b([A-Z_]\w*)\s*\(([^()]*)\)\s*(?:=|<>|!=|<=|>=|<|>)")
_WHERE_RE = re.compile(r"\bWHERE\b")
_WHERE_END_RE = re.compile(r"\bGROUP\s+BY\b|\bHAVING\b|\bORDER\s+BY\b")
_OR_RE = re.compile(r"\bOR\b")
_DISTINCT_RE = re.compile(r"\bSELECT\s+DISTINCT\b")
_JOIN_RE = re.compile(r"\bJOIN\b")
_SUBSELECT_RE = re.compile(r"\(\s*SELECT\b")
_SELECT_RE = re.compile(r"\bSELECT\b")
_FROM_RE = re.compile(r"\bFROM\b")


def _make_finding(rule: _TextRule, evidence: str) -> Finding:
    return Finding(
        rule_id=rule.rule_id,
        category=rule.category,
        severity=rule.severity,
        title=rule.title,
        description=rule.description,
        recommended_action=rule.action,
        example_code=rule.example,
        estimated_impact=rule.impact,
        evidence=evidence,
    )


def _in_code(raw_upper: str, masked: str, pos: int) -> bool:
    """True when ``pos`` is outside any literal or comment."""
    return pos < len(masked) and masked[pos] == raw_upper[pos]


def generate_create_index_script(advisory: MissingIndex) -> str:
    """
    Build a CREATE NONCLUSTERED INDEX script from a missing-index advisory.

    Key columns are equality columns followed by inequality columns;
    included columns go to the INCLUDE list.

    Parameters
    ----------
    advisory : MissingIndex
        Telemetry payload for one missing index.

    Returns
    -------
    str
        Multi-line DDL script.
    """
    table = advisory.table_name
    key_columns = list(advisory.equality_columns) + list(advisory.inequality_columns)
    name_parts = [normalize_table_name(table).title()] + [
        c.replace("[", "").replace("]", "") for c in key_columns[:2]
    ]
    lines = [
        f"CREATE NONCLUSTERED INDEX [IX_{'_'.join(name_parts)}]",
        f"ON {table} ({', '.join(key_columns)})",
    ]
    if advisory.included_columns:
        lines.append(f"INCLUDE ({', '.join(advisory.included_columns)})")
    lines.append("WITH (ONLINE = ON, FILLFACTOR = 90);")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Pattern Detector
# ---------------------------------------------------------------------------
class PatternDetector(BaseDetector):
    """
    Rule-based anti-pattern detector.

    Usage:
        detector = PatternDetector()
        findings = detector.detect(query, missing_indexes=advisories)
    """

    def detect(
        self,
        query: Query,
        missing_indexes: Optional[List[MissingIndex]] = None,
    ) -> List[Finding]:
        """
        Run every rule against a query and return the ranked findings.

        Parameters
        ----------
        query : Query
            Captured statement and telemetry snapshot.
        missing_indexes : list of MissingIndex or None
            Advisories from telemetry; only those for referenced tables are used.

        Returns
        -------
        list of Finding
            Sorted by estimated impact, highest first.
        """
        findings: List[Finding] = []
        findings.extend(self._metric_findings(query.metrics))

        text = query.query_text or ""
        if text.strip():
            raw_upper = text.upper()
            masked = mask_sql(text).upper()
            findings.extend(self._text_findings(text, raw_upper, masked))
            if missing_indexes:
                findings.extend(self._missing_index_findings(masked, missing_indexes))

        ranked = sorted(findings, key=lambda f: -f.estimated_impact)
        logger.debug(
            "Query %s: %d finding(s) [%s]",
            query.query_hash, len(ranked), ", ".join(f.rule_id for f in ranked),
        )
        return ranked

    # -------------------------------------------------------------------
    # Metric rules
    # -------------------------------------------------------------------
    def _metric_findings(self, metrics: QueryMetrics) -> List[Finding]:
        out: List[Finding] = []
        cpu = metrics.avg_cpu_time_ms

        if cpu > CPU_WARNING_MS:
            out.append(Finding(
                rule_id=rules.HIGH_CPU,
                category=Category.QUERY_REWRITE,
                severity=Severity.CRITICAL if cpu > CPU_CRITICAL_MS else Severity.WARNING,
                title="High CPU time",
                description=f"Average CPU time of {cpu:.1f} ms per execution exceeds "
                            f"the {CPU_WARNING_MS} ms threshold.",
                recommended_action="Review the plan for scans, sorts and expensive "
                                   "operators; rewrite or index the hot predicates.",
                estimated_impact=min(CPU_IMPACT_CAP, cpu / 10),
                evidence=f"avg_cpu_time_ms={cpu:.1f}",
            ))

        reads = metrics.avg_logical_reads
        if reads > LOGICAL_READS_WARNING:
            out.append(Finding(
                rule_id=rules.HIGH_LOGICAL_READS,
                category=Category.INDEXING,
                severity=Severity.CRITICAL if reads > LOGICAL_READS_CRITICAL else Severity.WARNING,
                title="Excessive logical reads",
                description=f"Average of {reads:,.0f} logical reads per execution "
                            "suggests table or index scans.",
                recommended_action="Add or adjust indexes so the query can seek "
                                   "instead of scan.",
                example_code="SELECT * FROM sys.dm_db_missing_index_details "
                             "WHERE database_id = DB_ID();",
                estimated_impact=85,
                evidence=f"avg_logical_reads={reads:,.0f}",
            ))

        physical = metrics.avg_physical_reads
        if physical > PHYSICAL_READS_WARNING:
            out.append(Finding(
                rule_id=rules.HIGH_PHYSICAL_READS,
                category=Category.CACHING,
                severity=Severity.WARNING,
                title="High physical reads",
                description=f"Average of {physical:,.0f} physical reads per execution "
                            "means data is repeatedly read from disk.",
                recommended_action="Check buffer pool memory pressure and narrow the "
                                   "data the query touches.",
                estimated_impact=60,
                evidence=f"avg_physical_reads={physical:,.0f}",
            ))

        if metrics.execution_count > FREQUENT_EXECUTIONS and cpu > FREQUENT_CPU_MS:
            total_cpu = metrics.total_cpu_time_ms or cpu * metrics.execution_count
            out.append(Finding(
                rule_id=rules.FREQUENT_EXECUTION,
                category=Category.CACHING,
                severity=Severity.CRITICAL,
                title="Frequently executed expensive query",
                description=f"Executed {metrics.execution_count:,} times at "
                            f"{cpu:.1f} ms CPU each ({total_cpu / 1000:,.1f} s CPU total).",
                recommended_action="Cache the result in the application layer or "
                                   "reduce call frequency.",
                estimated_impact=95,
                evidence=f"execution_count={metrics.execution_count}, avg_cpu_time_ms={cpu:.1f}",
            ))

        elapsed = metrics.avg_elapsed_time_ms
        if elapsed > ELAPSED_CRITICAL_MS:
            out.append(Finding(
                rule_id=rules.HIGH_ELAPSED_TIME,
                category=Category.INDEXING,
                severity=Severity.CRITICAL,
                title="High elapsed time - likely missing index",
                description=f"Average elapsed time of {elapsed:,.0f} ms exceeds "
                            f"{ELAPSED_CRITICAL_MS:,} ms.",
                recommended_action="Check missing-index advisories for the referenced "
                                   "tables and create the highest-impact index.",
                estimated_impact=60,
                evidence=f"avg_elapsed_time_ms={elapsed:,.0f}",
            ))
        return out

    # -------------------------------------------------------------------
    # Text rules
    # -------------------------------------------------------------------
    def _text_findings(self, text: str, raw_upper: str, masked: str) -> List[Finding]:
        out: List[Finding] = []

        for rule in _TEXT_RULES:
            haystack = raw_upper if rule.scan_raw else masked
            for match in rule.pattern.finditer(haystack):
                if rule.scan_raw and not _in_code(raw_upper, masked, match.start()):
                    continue
                out.append(_make_finding(rule, extract_snippet(text, match.start(), match.end())))
                break

        out.extend(self._or_findings(text, masked))

        finding = self._function_in_where(text, masked)
        if finding:
            out.append(finding)

        finding = self._distinct(text, masked)
        if finding:
            out.append(finding)

        finding = self._correlated_subquery(text, masked)
        if finding:
            out.append(finding)

        finding = self._joins_without_where(masked)
        if finding:
            out.append(finding)
        return out

    def _or_findings(self, text: str, masked: str) -> List[Finding]:
        chain = OR_CHAIN_RE.search(masked)
        if chain:
            return [Finding(
                rule_id=rules.OR_CHAIN,
                category=Category.QUERY_REWRITE,
                severity=Severity.INFO,
                title="OR chain on a single column",
                description="Several equality predicates on the same column joined "
                            "by OR are harder to optimise than a single IN list.",
                recommended_action="Combine the predicates into col IN (v1, v2, ...).",
                example_code="WHERE Status IN ('A', 'B', 'C')",
                estimated_impact=30,
                evidence=extract_snippet(text, chain.start(), chain.end()),
            )]

        where = _WHERE_RE.search(masked)
        if where:
            disjunct = _OR_RE.search(masked, where.end())
            if disjunct:
                return [Finding(
                    rule_id=rules.OR_IN_WHERE,
                    category=Category.QUERY_REWRITE,
                    severity=Severity.INFO,
                    title="OR in WHERE clause",
                    description="OR across different columns often prevents index "
                                "seeks and leads to scans.",
                    recommended_action="Consider splitting into UNION ALL branches that "
                                       "can each use an index.",
                    estimated_impact=20,
                    evidence=extract_snippet(text, disjunct.start(), disjunct.end()),
                )]
        return []

    def _function_in_where(self, text: str, masked: str) -> Optional[Finding]:
        where = _WHERE_RE.search(masked)
        if not where:
            return None
        end = _WHERE_END_RE.search(masked, where.end())
        region_end = end.start() if end else len(masked)

        for match in _FUNC_COMPARE_RE.finditer(masked, where.end(), region_end):
            name, args = match.group(1), match.group(2)
            if name in _NON_FUNCTIONS or not re.search(r"[A-Z]", args):
                continue
            return Finding(
                rule_id=rules.FUNCTION_IN_WHERE,
                category=Category.QUERY_REWRITE,
                severity=Severity.WARNING,
                title="Function on column in WHERE clause",
                description=f"{name}() wrapped around a column makes the predicate "
                            "non-sargable, so indexes on that column cannot be used.",
                recommended_action="Rewrite the predicate so the bare column is compared "
                                   "against a computed range or prefix.",
                example_code="WHERE OrderDate >= '2024-01-01' AND OrderDate < '2025-01-01'",
                estimated_impact=70,
                evidence=extract_snippet(text, match.start(), match.end()),
            )
        return None

    def _distinct(self, text: str, masked: str) -> Optional[Finding]:
        match = _DISTINCT_RE.search(masked)
        if not match:
            return None
        with_join = bool(_JOIN_RE.search(masked))
        return Finding(
            rule_id=rules.DISTINCT,
            category=Category.QUERY_REWRITE,
            severity=Severity.INFO,
            title="DISTINCT usage",
            description="DISTINCT adds a sort or hash step; combined with joins it "
                        "often hides duplicate rows produced by a missing join condition."
                        if with_join else
                        "DISTINCT adds a sort or hash step that may be unnecessary.",
            recommended_action="Confirm duplicates are possible; otherwise remove "
                               "DISTINCT or fix the join producing them.",
            estimated_impact=35 if with_join else 10,
            evidence=extract_snippet(text, match.start(), match.end()),
        )

    def _correlated_subquery(self, text: str, masked: str) -> Optional[Finding]:
        for match in _SUBSELECT_RE.finditer(masked):
            head = masked[:match.start()]
            selects = list(_SELECT_RE.finditer(head))
            if not selects:
                continue
            projection = head[selects[-1].end():]
            if _FROM_RE.search(projection):
                continue
            return Finding(
                rule_id=rules.CORRELATED_SUBQUERY,
                category=Category.QUERY_REWRITE,
                severity=Severity.WARNING,
                title="Subquery in SELECT list",
                description="A subquery in the projection is evaluated once per "
                            "output row.",
                recommended_action="Rewrite as a JOIN or APPLY against a grouped "
                                   "derived table.",
                example_code="SELECT o.Id, c.Total FROM Orders o "
                             "JOIN (SELECT OrderId, SUM(Qty) AS Total FROM Lines "
                             "GROUP BY OrderId) c ON c.OrderId = o.Id",
                estimated_impact=70,
                evidence=extract_snippet(text, match.start(), match.end()),
            )
        return None

    def _joins_without_where(self, masked: str) -> Optional[Finding]:
        joins = len(_JOIN_RE.findall(masked))
        if joins <= MAX_JOINS_WITHOUT_WHERE or _WHERE_RE.search(masked):
            return None
        return Finding(
            rule_id=rules.JOINS_WITHOUT_WHERE,
            category=Category.QUERY_REWRITE,
            severity=Severity.WARNING,
            title="Multiple joins without WHERE clause",
            description=f"{joins} joins with no filtering predicate can produce very "
                        "large intermediate results.",
            recommended_action="Add filtering predicates or reduce the number of joined tables.",
            estimated_impact=60,
            evidence=f"join_count={joins}",
        )

    # -------------------------------------------------------------------
    # Missing-index advisories
    # -------------------------------------------------------------------
    def _missing_index_findings(
        self,
        masked: str,
        advisories: Iterable[MissingIndex],
    ) -> List[Finding]:
        tables = set(referenced_tables(masked))
        relevant = [a for a in advisories if normalize_table_name(a.table_name) in tables]
        relevant.sort(key=lambda a: -a.impact_score)

        out: List[Finding] = []
        for advisory in relevant:
            key_columns = list(advisory.equality_columns) + list(advisory.inequality_columns)
            out.append(Finding(
                rule_id=rules.MISSING_INDEX,
                category=Category.INDEXING,
                severity=Severity.CRITICAL,
                title=f"Missing index on {advisory.table_name}",
                description=f"Telemetry reports a missing index on {advisory.table_name} "
                            f"({', '.join(key_columns) or 'no key columns'}) with impact "
                            f"score {advisory.impact_score:,.0f}.",
                recommended_action="Create the suggested index after reviewing write "
                                   "overhead on the table.",
                example_code=generate_create_index_script(advisory),
                estimated_impact=min(MISSING_INDEX_IMPACT_CAP, advisory.impact_score / 1000),
                evidence=f"impact_score={advisory.impact_score:,.0f}",
            ))
        return out
