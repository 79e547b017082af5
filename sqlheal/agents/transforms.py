"""
Query Transforms
================
Deterministic text rewrites, one per fix type that has a safe transform.

Transform contract:
    - Input: raw query text. Output: TransformResult(text, deltas)
    - Unchanged text means "not applicable"; the caller records it as not applied
    - Every replacement is recorded as a TextDelta (before, after)
    - Applying a transform to its own output changes nothing (idempotent)

Precedence safety:
    Matches are located on the masked text and rejected when the
    surrounding tokens could change meaning after the rewrite. An OR chain
    glued to an AND on either side is left alone, since AND binds tighter
    than OR. YEAR/LEFT comparisons are rewritten only when they sit
    between boolean connectives (never after NOT, never next to arithmetic
    or concatenation).

Registered transforms:
    OrToIn            — col = a OR col = b  →  col IN (a, b)
    FunctionInWhere   — YEAR(col) = 2024    →  col >= '2024-01-01' AND col < '2025-01-01'
                        LEFT(col, 3) = 'abc' →  col LIKE 'abc%'
    NotInToNotExists  — pass-through; the rewrite needs schema knowledge
                        (NULL-ability of the subquery column) so it is
                        surfaced as a candidate but never applied
"""
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List

from sqlheal.models.fix import FixType, TextDelta
from sqlheal.parser.sql_text import OR_CHAIN_RE, OR_VALUE, mask_sql, next_token, previous_token

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Transform Result
# ---------------------------------------------------------------------------
@dataclass
class TransformResult:
    """Rewritten text plus the replacements that produced it."""
    text: str
    deltas: List[TextDelta] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.deltas)


# ---------------------------------------------------------------------------
# Transformer interface
# ---------------------------------------------------------------------------
class QueryTransformer(ABC):
    """Capability interface for one deterministic rewrite."""

    fix_type: FixType
    # False for pass-through transforms that never rewrite text.
    rewrites: bool = True

    @abstractmethod
    def transform(self, query_text: str) -> TransformResult:
        ...


def _splice(text: str, replacements: List[tuple]) -> TransformResult:
    """Apply (start, end, new_text) replacements right-to-left."""
    deltas: List[TextDelta] = []
    for start, end, new_text in sorted(replacements, key=lambda r: r[0], reverse=True):
        deltas.append(TextDelta(before=text[start:end], after=new_text))
        text = text[:start] + new_text + text[end:]
    deltas.reverse()
    return TransformResult(text=text, deltas=deltas)


# ---------------------------------------------------------------------------
# OR chain → IN
# ---------------------------------------------------------------------------
_OR_SAFE_BEFORE = frozenset({"WHERE", "(", "OR", "ON", "HAVING", "WHEN"})
_OR_SAFE_AFTER = frozenset({"", ")", ";", "OR", "GROUP", "ORDER", "HAVING", "UNION",
                            "EXCEPT", "INTERSECT", "OPTION", "THEN", "LIMIT", "FOR"})


class OrToInTransformer(QueryTransformer):
    """Collapse same-column equality OR chains into an IN list."""

    fix_type = FixType.OR_TO_IN

    def transform(self, query_text: str) -> TransformResult:
        masked = mask_sql(query_text)
        replacements = []

        for chain in OR_CHAIN_RE.finditer(masked):
            if previous_token(masked, chain.start()) not in _OR_SAFE_BEFORE:
                logger.debug("OR chain at %d skipped: preceded by AND/NOT", chain.start())
                continue
            if next_token(masked, chain.end()) not in _OR_SAFE_AFTER:
                logger.debug("OR chain at %d skipped: followed by AND", chain.start())
                continue

            column = query_text[chain.start("col"):chain.end("col")]
            value_re = re.compile(
                r"(?<![\w.@:])" + re.escape(chain.group("col")) + r"\s*=\s*(" + OR_VALUE + r")",
                re.IGNORECASE,
            )
            values: List[str] = []
            for term in value_re.finditer(masked, chain.start(), chain.end()):
                value = query_text[term.start(1):term.end(1)]
                if value not in values:
                    values.append(value)

            if len(values) < 2:
                continue
            replacements.append((chain.start(), chain.end(), f"{column} IN ({', '.join(values)})"))

        return _splice(query_text, replacements)


# ---------------------------------------------------------------------------
# Function-wrapped column → sargable predicate
# ---------------------------------------------------------------------------
_YEAR_RE = re.compile(r"\bYEAR\s*\(\s*([A-Za-z_][\w.]*)\s*\)\s*=\s*(\d{4})(?![\w.])", re.IGNORECASE)
_LEFT_RE = re.compile(
    r"\bLEFT\s*\(\s*([A-Za-z_][\w.]*)\s*,\s*(\d+)\s*\)\s*=\s*'((?:[^']|'')*)'",
    re.IGNORECASE,
)
_LIKE_SPECIAL = ("%", "_", "[", "'")
# year + 1 must still be a four-digit date literal
_MAX_YEAR = 9998
_PREDICATE_BEFORE = frozenset({"", "WHERE", "(", "AND", "OR", "ON", "HAVING", "WHEN"})
_PREDICATE_AFTER = _OR_SAFE_AFTER | {"AND", "ELSE", "END"}


def _isolated_predicate(masked: str, match: re.Match) -> bool:
    """True when the comparison sits between boolean connectives, not inside an expression."""
    return (
        previous_token(masked, match.start()) in _PREDICATE_BEFORE
        and next_token(masked, match.end()) in _PREDICATE_AFTER
    )


class SargablePredicateTransformer(QueryTransformer):
    """Move functions off the column side of a comparison."""

    fix_type = FixType.FUNCTION_IN_WHERE

    def transform(self, query_text: str) -> TransformResult:
        masked = mask_sql(query_text)
        replacements = []

        for match in _YEAR_RE.finditer(masked):
            if not _isolated_predicate(masked, match):
                logger.debug("YEAR predicate at %d skipped: part of a larger expression", match.start())
                continue
            column = query_text[match.start(1):match.end(1)]
            year = int(query_text[match.start(2):match.end(2)])
            if year > _MAX_YEAR:
                continue
            replacements.append((
                match.start(), match.end(),
                f"{column} >= '{year}-01-01' AND {column} < '{year + 1}-01-01'",
            ))

        for match in _LEFT_RE.finditer(masked):
            if not _isolated_predicate(masked, match):
                logger.debug("LEFT predicate at %d skipped: part of a larger expression", match.start())
                continue
            length = int(match.group(2))
            value = query_text[match.start(3):match.end(3)]
            # LEFT(col, n) = 'v' equals a prefix match only when len(v) == n.
            if len(value) != length or any(ch in value for ch in _LIKE_SPECIAL):
                continue
            column = query_text[match.start(1):match.end(1)]
            replacements.append((match.start(), match.end(), f"{column} LIKE '{value}%'"))

        return _splice(query_text, replacements)


# ---------------------------------------------------------------------------
# NOT IN → NOT EXISTS (pass-through)
# ---------------------------------------------------------------------------
class NotInPassThroughTransformer(QueryTransformer):
    """Recognised but intentionally never rewritten."""

    fix_type = FixType.NOT_IN_TO_NOT_EXISTS
    rewrites = False

    def transform(self, query_text: str) -> TransformResult:
        return TransformResult(text=query_text)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------
def default_transformers() -> Dict[FixType, QueryTransformer]:
    """Fresh registry of the built-in transforms keyed by fix type."""
    return {
        t.fix_type: t
        for t in (
            OrToInTransformer(),
            SargablePredicateTransformer(),
            NotInPassThroughTransformer(),
        )
    }
