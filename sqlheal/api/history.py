"""
History Endpoints
=================
GET  /history/{query_hash}           — healing history (empty record when none)
POST /rollback/{query_hash}          — record a rollback of the latest healing
PUT  /queries/{query_hash}/enabled   — switch auto-healing on or off
"""
import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from sqlheal.models.history import HealingHistory, RollbackResult

logger = logging.getLogger(__name__)

router = APIRouter(tags=["History"])


class EnabledRequest(BaseModel):
    enabled: bool


class EnabledResponse(BaseModel):
    query_hash: str
    enabled: bool


def _orchestrator(request: Request):
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Healing orchestrator not initialized")
    return orchestrator


@router.get("/history/{query_hash}", response_model=HealingHistory)
async def get_history(query_hash: str, request: Request):
    return await _orchestrator(request).get_history(query_hash)


@router.post("/rollback/{query_hash}", response_model=RollbackResult)
async def rollback(query_hash: str, request: Request):
    result = await _orchestrator(request).rollback(query_hash)
    if not result.success:
        logger.info("Rollback rejected for %s: %s", query_hash, result.reason)
    return result


@router.put("/queries/{query_hash}/enabled", response_model=EnabledResponse)
async def set_enabled(query_hash: str, body: EnabledRequest, request: Request):
    orchestrator = _orchestrator(request)
    orchestrator.set_enabled(query_hash, body.enabled)
    return EnabledResponse(query_hash=query_hash, enabled=orchestrator.is_enabled(query_hash))
