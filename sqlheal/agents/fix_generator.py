"""
Fix Generator
=============
Maps detector findings to candidate fixes through a static rule table.

Core Philosophy:
    - One finding rule → zero or more fix specs (fixed confidence, safety, impact)
    - Metric-only findings (CPU, reads, elapsed, missing index) produce no text fix
    - Fixes without a deterministic transform are still emitted so callers
      can see them; FixApplier skips them
    - No LLM and no schema access here

The FixGenerator does NOT:
    - Rewrite text (that's FixApplier's job)
    - Decide whether a fix is safe enough to apply (that's the policy's job)
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from sqlheal.agents.transforms import QueryTransformer, default_transformers
from sqlheal.models.finding import Finding
from sqlheal.models.fix import Fix, FixSafety, FixType
from sqlheal.models.query import Query
from sqlheal.parser import rules
from sqlheal.parser.pattern_detector import BaseDetector, PatternDetector
from sqlheal.utils.query_hash import compute_query_hash, generate_fix_id

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Fix table
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class _FixSpec:
    fix_type: FixType
    confidence: float
    safety: FixSafety
    title: str
    after: str
    impact: Optional[float] = None  # None → inherit the finding's impact


_FIX_TABLE: Dict[str, List[_FixSpec]] = {
    rules.SELECT_STAR: [
        _FixSpec(FixType.SELECT_STAR_REPLACEMENT, 0.60, FixSafety.MEDIUM,
                 "Replace SELECT * with explicit columns",
                 "SELECT Col1, Col2, ... FROM ...", impact=35),
    ],
    rules.OR_CHAIN: [
        _FixSpec(FixType.OR_TO_IN, 0.85, FixSafety.SAFE,
                 "Convert OR chain to IN list",
                 "WHERE col IN (v1, v2, ...)"),
    ],
    rules.OR_IN_WHERE: [
        _FixSpec(FixType.OR_TO_UNION, 0.50, FixSafety.REVIEW_REQUIRED,
                 "Split OR across columns into UNION ALL branches",
                 "SELECT ... WHERE a = 1 UNION ALL SELECT ... WHERE b = 2"),
    ],
    rules.FUNCTION_IN_WHERE: [
        _FixSpec(FixType.FUNCTION_IN_WHERE, 0.75, FixSafety.LOW,
                 "Make function-wrapped predicate sargable",
                 "WHERE col >= '2024-01-01' AND col < '2025-01-01'", impact=65),
    ],
    rules.NOT_IN: [
        _FixSpec(FixType.NOT_IN_TO_NOT_EXISTS, 0.90, FixSafety.REVIEW_REQUIRED,
                 "Rewrite NOT IN as NOT EXISTS",
                 "WHERE NOT EXISTS (SELECT 1 FROM ... WHERE ...)", impact=50),
    ],
    rules.LEADING_WILDCARD: [
        _FixSpec(FixType.LEADING_WILDCARD_REMOVAL, 0.65, FixSafety.MEDIUM,
                 "Remove leading wildcard from LIKE",
                 "WHERE col LIKE 'abc%'"),
    ],
    rules.DISTINCT: [
        _FixSpec(FixType.DISTINCT_REVIEW, 0.70, FixSafety.MEDIUM,
                 "Review whether DISTINCT is needed",
                 "SELECT col FROM ... (without DISTINCT)"),
    ],
    rules.IMPLICIT_CONVERSION: [
        _FixSpec(FixType.IMPLICIT_CONVERSION_FIX, 0.80, FixSafety.LOW,
                 "Match literal type to column type",
                 "WHERE VarcharColumn = 'value'", impact=60),
    ],
    rules.CORRELATED_SUBQUERY: [
        _FixSpec(FixType.SUBQUERY_REWRITE, 0.75, FixSafety.MEDIUM,
                 "Rewrite projection subquery as a JOIN",
                 "SELECT ... FROM t JOIN (SELECT ... GROUP BY ...) s ON ..."),
    ],
    rules.JOINS_WITHOUT_WHERE: [
        _FixSpec(FixType.JOIN_REORDERING, 0.50, FixSafety.REVIEW_REQUIRED,
                 "Add filtering or reduce joined tables",
                 "SELECT ... FROM a JOIN b ON ... WHERE ..."),
    ],
}


# ---------------------------------------------------------------------------
# Fix Generator
# ---------------------------------------------------------------------------
class FixGenerator:
    """
    Produces candidate Fixes from Findings.

    Parameters
    ----------
    transformers : dict or None
        Registry used only to flag which fix types have a deterministic
        transform (defaults to the built-in registry).
    detector : BaseDetector or None
        Used by preview() to detect findings from raw text.
    """

    def __init__(
        self,
        transformers: Optional[Dict[FixType, QueryTransformer]] = None,
        detector: Optional[BaseDetector] = None,
    ) -> None:
        self.transformers = transformers if transformers is not None else default_transformers()
        self.detector = detector or PatternDetector()

    def generate(self, findings: List[Finding], query_hash: str = "") -> List[Fix]:
        """
        Map findings to candidate fixes.

        Parameters
        ----------
        findings : list of Finding
            Detector output (any order).
        query_hash : str
            Used to derive stable fix ids.

        Returns
        -------
        list of Fix
            Sorted by estimated impact, highest first.
        """
        fixes: List[Fix] = []
        seen: Set[tuple] = set()

        for finding in findings:
            for spec in _FIX_TABLE.get(finding.rule_id, []):
                key = (spec.fix_type, finding.rule_id)
                if key in seen:
                    continue
                seen.add(key)
                fixes.append(self._build_fix(spec, finding, query_hash))

        fixes.sort(key=lambda f: -f.estimated_impact)
        logger.debug("Generated %d candidate fix(es) from %d finding(s)", len(fixes), len(findings))
        return fixes

    def preview(self, query_text: str) -> List[Fix]:
        """Detect and generate fixes for raw text, without metrics or side effects."""
        query = Query(query_text=query_text)
        findings = self.detector.detect(query)
        return self.generate(findings, query.query_hash or compute_query_hash(query_text))

    def _build_fix(self, spec: _FixSpec, finding: Finding, query_hash: str) -> Fix:
        transformer = self.transformers.get(spec.fix_type)
        has_transform = bool(transformer and transformer.rewrites)
        impact = spec.impact if spec.impact is not None else finding.estimated_impact
        return Fix(
            fix_id=generate_fix_id(query_hash, spec.fix_type.value, finding.rule_id),
            fix_type=spec.fix_type,
            rule_id=finding.rule_id,
            title=spec.title,
            description=finding.recommended_action or finding.description,
            confidence=spec.confidence,
            estimated_impact=impact,
            safety=spec.safety,
            before_snippet=finding.evidence,
            after_snippet=spec.after,
            requires_validation=spec.safety != FixSafety.SAFE,
            has_transform=has_transform,
        )
