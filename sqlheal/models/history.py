"""
Healing History Models
======================
Per-query-hash record of every healing attempt and rollback.

HealingHistory is the only mutable model: the orchestrator mutates it
while holding the history store's per-hash lock, then writes it back.

Trend:
    improving  — cumulative improvement > 0
    degrading  — cumulative improvement < 0
    stable     — otherwise (including no successful heal yet)
"""
from datetime import datetime
from typing import List, Optional, Set

from pydantic import BaseModel, ConfigDict


class HistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: datetime
    action: str
    success: bool
    improvement_percent: float = 0.0
    status: str = ""
    details: str = ""
    original_query: str = ""
    healed_query: str = ""


class HealingHistory(BaseModel):
    query_hash: str
    total_healings: int = 0
    successful_healings: int = 0
    failed_healings: int = 0
    rolled_back: int = 0
    initial_avg_elapsed_ms: float = 0.0
    current_avg_elapsed_ms: float = 0.0
    total_improvement_percent: float = 0.0
    entries: List[HistoryEntry] = []
    successful_patterns: Set[str] = set()
    failed_patterns: Set[str] = set()
    summary: str = ""

    @property
    def trend(self) -> str:
        if self.total_improvement_percent > 0:
            return "improving"
        if self.total_improvement_percent < 0:
            return "degrading"
        return "stable"

    @property
    def last_entry(self) -> Optional[HistoryEntry]:
        return self.entries[-1] if self.entries else None


class RollbackResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    query_hash: str
    rollback_date: datetime
    success: bool
    original_query: str = ""
    rolled_back_query: str = ""
    reason: str = ""
    message: str = ""
