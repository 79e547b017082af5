"""
Query Hash Utility
==================
Generates stable identities for captured queries and fixes.

Query Hash:
    The normalised statement shape: comments removed, string and numeric
    literals replaced by ``?``, whitespace collapsed, upper-cased.
    Two executions of the same statement with different parameter values
    share a hash, so history accumulates per statement shape.

Fix Id:
    query_hash + fix_type + source rule.
    Identifies the same candidate fix across runs.
"""
import hashlib
import re

_COMMENT_RE = re.compile(r"--[^\n]*|/\*.*?\*/", re.DOTALL)
_STRING_RE = re.compile(r"N?'(?:[^']|'')*'")
_NUMBER_RE = re.compile(r"(?<![\w.])[-+]?\d+(?:\.\d+)?\b")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_query_shape(query_text: str) -> str:
    """Reduce a statement to its literal-free, whitespace-stable shape."""
    if not query_text:
        return ""
    shape = _COMMENT_RE.sub(" ", query_text)
    shape = _STRING_RE.sub("?", shape)
    shape = _NUMBER_RE.sub("?", shape)
    shape = _WHITESPACE_RE.sub(" ", shape)
    return shape.strip().upper()


def compute_query_hash(query_text: str) -> str:
    """
    Generate a stable hash for a query's shape.

    Parameters
    ----------
    query_text : str
        Raw SQL text.

    Returns
    -------
    str
        16-character hex digest. Empty if the text is empty.
    """
    shape = normalize_query_shape(query_text)
    if not shape:
        return ""
    return hashlib.sha256(shape.encode("utf-8")).hexdigest()[:16]


def generate_fix_id(query_hash: str, fix_type: str, rule_id: str) -> str:
    """Deterministic id for a candidate fix of a given query."""
    raw = f"{query_hash}:{fix_type}:{rule_id}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:12]
