"""
Skip Reasons
============
Standardised constants for why a candidate fix was not applied.

Logged by FixApplier and the orchestrator so operators get clean,
machine-readable reasons next to each skipped fix.
"""


# ---------------------------------------------------------------------------
# Skip Reason Constants
# ---------------------------------------------------------------------------
LOW_CONFIDENCE = "LOW_CONFIDENCE"
RISK_EXCEEDED = "RISK_EXCEEDED"
REVIEW_REQUIRED = "REVIEW_REQUIRED"
NO_TRANSFORM = "NO_TRANSFORM"
NO_CHANGE = "NO_CHANGE"
TRANSFORM_ERROR = "TRANSFORM_ERROR"
ADVISOR_REJECTED = "ADVISOR_REJECTED"
LEARNED_FAILURE = "LEARNED_FAILURE"

# All valid reasons (for validation)
ALL_SKIP_REASONS = frozenset({
    LOW_CONFIDENCE,
    RISK_EXCEEDED,
    REVIEW_REQUIRED,
    NO_TRANSFORM,
    NO_CHANGE,
    TRANSFORM_ERROR,
    ADVISOR_REJECTED,
    LEARNED_FAILURE,
})


# ---------------------------------------------------------------------------
# Reason Descriptions (maps reason → operator-facing text)
# ---------------------------------------------------------------------------
REASON_DESCRIPTIONS = {
    LOW_CONFIDENCE: "confidence below policy floor",
    RISK_EXCEEDED: "safety tier exceeds risk tolerance",
    REVIEW_REQUIRED: "requires manual review",
    NO_TRANSFORM: "no deterministic transform",
    NO_CHANGE: "transform left the text unchanged",
    TRANSFORM_ERROR: "transform raised an error",
    ADVISOR_REJECTED: "advisory rewrite rejected",
    LEARNED_FAILURE: "fix type previously failed for this query",
}


def describe_reason(reason: str) -> str:
    """
    Map a skip reason constant to operator-facing text.

    Parameters
    ----------
    reason : str
        One of the skip reason constants.

    Returns
    -------
    str
        Short description, or the reason itself when unknown.
    """
    return REASON_DESCRIPTIONS.get(reason, reason)
