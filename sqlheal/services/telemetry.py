"""
Telemetry Source
================
Interface to the component that captures missing-index advisories.

Only the boundary lives here. Collecting query statistics from a live
server is someone else's job; the healing core asks for advisories by
table name and treats any failure as "no advisories".
"""
import logging
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from sqlheal.models.query import MissingIndex
from sqlheal.parser.sql_text import normalize_table_name

logger = logging.getLogger(__name__)


class TelemetrySource(ABC):
    """Supplies missing-index advisories for a set of tables."""

    @abstractmethod
    def get_missing_indexes(self, tables: List[str]) -> List[MissingIndex]:
        ...


class StaticTelemetrySource(TelemetrySource):
    """
    Advisories held in memory (fixtures, offline snapshots, tests).

    Usage:
        source = StaticTelemetrySource([MissingIndex(table_name="dbo.Orders", ...)])
        source.get_missing_indexes(["ORDERS"])
    """

    def __init__(self, advisories: Optional[Iterable[MissingIndex]] = None) -> None:
        self._advisories: List[MissingIndex] = list(advisories or [])

    def add(self, advisory: MissingIndex) -> None:
        self._advisories.append(advisory)

    def get_missing_indexes(self, tables: List[str]) -> List[MissingIndex]:
        wanted = {normalize_table_name(t) for t in tables}
        return [a for a in self._advisories if normalize_table_name(a.table_name) in wanted]
