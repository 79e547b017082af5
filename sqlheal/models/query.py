"""
Query Model
===========
Pydantic models for a captured SQL statement and its telemetry.

This is the contract between the telemetry collaborator and every
downstream stage (detector, fix generator, validator, orchestrator).

Fields (Query):
    query_hash      — stable identity; derived from the query shape when omitted
    query_text      — raw SQL text as captured
    metrics         — QueryMetrics snapshot observed at capture time

Fields (MissingIndex):
    table_name          — table the advisory applies to (schema prefix allowed)
    impact_score        — raw advisory score (normalised to 0–95 by the detector)
    equality_columns    — columns used in equality predicates
    inequality_columns  — columns used in range predicates
    included_columns    — covering columns for the INCLUDE list
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, model_validator

from sqlheal.utils.query_hash import compute_query_hash


class QueryMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    execution_count: int = 0
    total_cpu_time_ms: float = 0.0
    avg_cpu_time_ms: float = 0.0
    total_elapsed_time_ms: float = 0.0
    avg_elapsed_time_ms: float = 0.0
    avg_logical_reads: float = 0.0
    avg_physical_reads: float = 0.0
    last_execution_time: Optional[datetime] = None


class Query(BaseModel):
    model_config = ConfigDict(frozen=True)

    query_hash: str = ""
    query_text: str = ""
    metrics: QueryMetrics = QueryMetrics()

    @model_validator(mode="before")
    @classmethod
    def fill_query_hash(cls, data):
        if isinstance(data, dict) and not data.get("query_hash"):
            data = dict(data)
            data["query_hash"] = compute_query_hash(data.get("query_text", ""))
        return data


class MissingIndex(BaseModel):
    model_config = ConfigDict(frozen=True)

    table_name: str
    impact_score: float = 0.0
    equality_columns: List[str] = []
    inequality_columns: List[str] = []
    included_columns: List[str] = []
