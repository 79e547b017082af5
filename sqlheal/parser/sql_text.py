"""
SQL Text Helpers
================
Lexical helpers shared by the detector, the transforms and the Validator.

There is deliberately no SQL grammar here. Everything works on the raw
text plus a *masked* copy of it in which string-literal contents and
comments are blanked out while every character keeps its offset. Rules
search the masked copy so keywords inside literals or comments never
trigger them, then read literal values back from the original text using
the same offsets.
"""
import re
from typing import List, Tuple

from sqlheal.core.constants import SNIPPET_CONTEXT_CHARS

_WORD_RE = re.compile(r"[A-Za-z_][\w]*")

# A comparison value: quoted literal, number, parameter or identifier.
OR_VALUE = r"(?:N?'(?:[^']|'')*'|[-+]?\d+(?:\.\d+)?|[@:]?[A-Za-z_][\w.]*)"

# ``col = v1 OR col = v2 [OR col = v3 ...]`` on one column.
OR_CHAIN_RE = re.compile(
    r"(?<![\w.@:])(?P<col>[A-Za-z_][\w.]*)\s*=\s*" + OR_VALUE
    + r"(?:\s+OR\s+(?P=col)\s*=\s*" + OR_VALUE + r")+",
    re.IGNORECASE,
)
_TABLE_REF_RE = re.compile(r"\b(?:FROM|JOIN|UPDATE|INTO)\s+([\[\]\"\w.]+)", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")


def mask_sql(text: str) -> str:
    """
    Blank out string-literal contents and comments, preserving offsets.

    ``'abc'`` becomes ``'___'`` (quotes kept), ``-- note`` and ``/* x */``
    become spaces. Escaped quotes (``''``) inside literals are masked too.

    Parameters
    ----------
    text : str
        Raw SQL text.

    Returns
    -------
    str
        Masked text, same length as the input.
    """
    out: List[str] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == "'":
            out.append(ch)
            i += 1
            while i < n:
                if text[i] == "'":
                    if i + 1 < n and text[i + 1] == "'":
                        out.append("__")
                        i += 2
                        continue
                    out.append("'")
                    i += 1
                    break
                out.append("\n" if text[i] == "\n" else "_")
                i += 1
        elif ch == "-" and text.startswith("--", i):
            end = text.find("\n", i)
            end = n if end == -1 else end
            out.append(" " * (end - i))
            i = end
        elif ch == "/" and text.startswith("/*", i):
            end = text.find("*/", i + 2)
            end = n if end == -1 else end + 2
            out.append("".join("\n" if c == "\n" else " " for c in text[i:end]))
            i = end
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def extract_snippet(text: str, start: int, end: int, context: int = SNIPPET_CONTEXT_CHARS) -> str:
    """Return text[start:end] with ``context`` chars either side and ``...`` on truncated sides."""
    lo = max(0, start - context)
    hi = min(len(text), end + context)
    snippet = _WHITESPACE_RE.sub(" ", text[lo:hi]).strip()
    if lo > 0:
        snippet = "..." + snippet
    if hi < len(text):
        snippet = snippet + "..."
    return snippet


def count_parentheses(masked: str) -> Tuple[int, int]:
    """Return (open, close) parenthesis counts of an already-masked text."""
    return masked.count("("), masked.count(")")


def leading_verb(masked: str) -> str:
    """First keyword of the statement, skipping whitespace and opening parens."""
    match = _WORD_RE.search(masked.lstrip().lstrip("(").lstrip())
    return match.group(0).upper() if match else ""


def previous_token(masked: str, pos: int) -> str:
    """Upper-cased token immediately before ``pos`` (``(`` counts as a token)."""
    head = masked[:pos].rstrip()
    if not head:
        return ""
    if head.endswith("("):
        return "("
    match = re.search(r"([A-Za-z_]\w*)$", head)
    return match.group(1).upper() if match else head[-1]


def next_token(masked: str, pos: int) -> str:
    """Upper-cased token immediately after ``pos`` (``)`` counts as a token)."""
    tail = masked[pos:].lstrip()
    if not tail:
        return ""
    if tail[0] in "();,":
        return tail[0]
    match = _WORD_RE.match(tail)
    return match.group(0).upper() if match else tail[0]


def normalize_table_name(name: str) -> str:
    """``[dbo].[CustTable]`` → ``CUSTTABLE``."""
    cleaned = name.replace("[", "").replace("]", "").replace('"', "")
    return cleaned.split(".")[-1].upper()


def referenced_tables(masked: str) -> List[str]:
    """Tables named after FROM / JOIN / UPDATE / INTO, normalised, in first-seen order."""
    seen: List[str] = []
    for match in _TABLE_REF_RE.finditer(masked):
        table = normalize_table_name(match.group(1))
        if table and table not in seen:
            seen.append(table)
    return seen
