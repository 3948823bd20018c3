from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from ..orchestration.enums import SessionMode, SessionStatus
from ..orchestration.state import Edge, LogEntry, Node, RoundRecord


class SessionStartRequest(BaseModel):
    goal: str = Field(..., min_length=1)
    mode: SessionMode = SessionMode.REFINEMENT
    departments: list[str] | None = Field(default=None, min_length=1)


class ConcurrencyUpdateRequest(BaseModel):
    max_concurrency: int = Field(..., ge=1, le=64)


class RateLimitUpdateRequest(BaseModel):
    requests_per_minute: int | None = Field(default=None, ge=1)
    requests_per_day: int | None = Field(default=None, ge=1)
    enabled: bool | None = None


class QueueMetricsModel(BaseModel):
    pending: int = 0
    active: int = 0
    runnable: int = 0
    blocked_by_dependency: int = 0
    complete: int = 0
    error: int = 0


class RateLimitStatusModel(BaseModel):
    enabled: bool
    requests_this_minute: int
    requests_today: int
    max_per_minute: int
    max_per_day: int
    seconds_until_minute_reset: float
    seconds_until_day_reset: float


class SessionResponse(BaseModel):
    session_id: str
    goal: str
    mode: SessionMode
    status: SessionStatus
    is_processing: bool
    document: str
    cycle_count: int
    message: str | None = None
    max_concurrency: int
    gate_in_use: int = 0
    gate_waiting: int = 0
    queue: QueueMetricsModel = Field(default_factory=QueueMetricsModel)
    rate_limit: RateLimitStatusModel
    last_report: dict[str, Any] | None = None
    updated_at: datetime


class GraphResponse(BaseModel):
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    rounds: list[RoundRecord] = Field(default_factory=list)


class LogsResponse(BaseModel):
    entries: list[LogEntry] = Field(default_factory=list)


__all__ = [
    "ConcurrencyUpdateRequest",
    "GraphResponse",
    "LogsResponse",
    "QueueMetricsModel",
    "RateLimitStatusModel",
    "RateLimitUpdateRequest",
    "SessionResponse",
    "SessionStartRequest",
]
