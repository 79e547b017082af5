"""
LLM Prompts
===========
Centralised store for the advisory system and user prompts.

Prompt Design Rules:
    - The advisor gives an opinion, never a decision
    - Output is a single JSON object, no prose around it
    - Comparison asks explicitly whether results could differ (semantic risk)
    - Rewrites must keep every selected column, filter and join semantics

Response Schemas:
    compare → {"semanticallyEquivalent", "keyDifferences", "estimatedSpeedup",
               "improvementAreas", "summary"}
    rewrite → {"rewrittenQuery", "confidence", "explanation"}
"""
from sqlheal.models.fix import Fix


# ---------------------------------------------------------------------------
# System Prompts
# ---------------------------------------------------------------------------
COMPARE_SYSTEM_PROMPT = """You are a senior SQL Server performance engineer reviewing a query rewrite.

Compare the ORIGINAL and REWRITTEN queries and answer with ONE JSON object:
{
  "semanticallyEquivalent": true | false,
  "keyDifferences": ["..."],
  "estimatedSpeedup": <number, e.g. 1.5 for 50% faster>,
  "improvementAreas": ["..."],
  "summary": "<one sentence>"
}

Rules:
- Set semanticallyEquivalent to false if the rewrite can return different rows,
  different columns, different ordering guarantees or different NULL behaviour.
- Mention the word "semantic" in keyDifferences for every difference that can
  change results.
- Do not include any text outside the JSON object."""

REWRITE_SYSTEM_PROMPT = """You are a senior SQL Server performance engineer.

Rewrite the query to address exactly ONE issue, described below. Keep every
selected column, every filter and the join semantics unchanged. Do not add
hints, do not reformat unrelated clauses.

Answer with ONE JSON object:
{
  "rewrittenQuery": "<full rewritten SQL>",
  "confidence": <0.0-1.0>,
  "explanation": "<one sentence>"
}

Do not include any text outside the JSON object."""


# ---------------------------------------------------------------------------
# User Prompts
# ---------------------------------------------------------------------------
def build_compare_prompt(original: str, rewritten: str) -> str:
    """Build the user prompt for a semantic comparison."""
    return (
        "ORIGINAL QUERY:\n"
        f"{original.strip()}\n\n"
        "REWRITTEN QUERY:\n"
        f"{rewritten.strip()}\n"
    )


def build_rewrite_prompt(query_text: str, fix: Fix) -> str:
    """Build the user prompt asking for a single targeted rewrite."""
    parts = [
        f"ISSUE: {fix.title}",
        f"DETAIL: {fix.description}" if fix.description else "",
        f"EVIDENCE: {fix.before_snippet}" if fix.before_snippet else "",
        f"TARGET SHAPE: {fix.after_snippet}" if fix.after_snippet else "",
        "",
        "QUERY:",
        query_text.strip(),
    ]
    return "\n".join(p for p in parts if p is not None)
