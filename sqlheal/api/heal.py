"""
Healing Endpoints
=================
POST /heal          — run one healing pass for a captured query
POST /heal/batch    — heal several queries concurrently
POST /preview       — findings and candidate fixes only, no history touched

The orchestrator lives on ``request.app.state.orchestrator``; the policy
defaults to "require approval", so nothing is ever Applied unless the
caller asks for it explicitly.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field, field_validator

from sqlheal.models.finding import Finding
from sqlheal.models.fix import Fix
from sqlheal.models.healing import HealingPolicy, HealingResult
from sqlheal.models.query import Query, QueryMetrics

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Healing"])

# Hard ceiling for caller-supplied timeouts (seconds)
_MAX_TIMEOUT = 120


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------
class QueryPayload(BaseModel):
    query_text: str
    query_hash: Optional[str] = None
    metrics: QueryMetrics = QueryMetrics()

    @field_validator("query_text")
    @classmethod
    def validate_query_text(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("query_text must not be empty")
        return v

    def to_query(self) -> Query:
        return Query(query_hash=self.query_hash or "", query_text=self.query_text, metrics=self.metrics)


class HealRequest(QueryPayload):
    policy: HealingPolicy = HealingPolicy()
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


class BatchHealRequest(BaseModel):
    queries: List[QueryPayload] = Field(min_length=1)
    policy: HealingPolicy = HealingPolicy()
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


class PreviewResponse(BaseModel):
    query_hash: str
    findings: List[Finding]
    fixes: List[Fix]


def _orchestrator(request: Request):
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Healing orchestrator not initialized")
    return orchestrator


def _capped_timeout(timeout_seconds: Optional[float]) -> Optional[float]:
    return min(timeout_seconds, _MAX_TIMEOUT) if timeout_seconds else None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@router.post("/heal", response_model=HealingResult)
async def heal(body: HealRequest, request: Request):
    orchestrator = _orchestrator(request)
    query = body.to_query()
    logger.info("Heal requested for %s", query.query_hash)
    return await orchestrator.heal(query, body.policy, timeout=_capped_timeout(body.timeout_seconds))


@router.post("/heal/batch", response_model=List[HealingResult])
async def heal_batch(body: BatchHealRequest, request: Request):
    orchestrator = _orchestrator(request)
    queries = [q.to_query() for q in body.queries]
    logger.info("Batch heal requested for %d queries", len(queries))
    return await orchestrator.heal_batch(queries, body.policy, timeout=_capped_timeout(body.timeout_seconds))


@router.post("/preview", response_model=PreviewResponse)
async def preview(body: QueryPayload, request: Request):
    orchestrator = _orchestrator(request)
    query = body.to_query()
    findings = orchestrator.detect_findings(query)
    fixes = orchestrator.generator.generate(findings, query.query_hash)
    return PreviewResponse(query_hash=query.query_hash, findings=findings, fixes=fixes)
