from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Mapping
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from .enums import (
    ActivePhase,
    ConsensusDecision,
    LogLevel,
    NodeKind,
    NodeStatus,
    SessionMode,
    SessionStatus,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RoundId(BaseModel):
    """Identity of one expansion cycle; compared by value, never parsed from node ids."""

    model_config = ConfigDict(frozen=True)

    cycle: int = Field(ge=1)
    token: str = Field(min_length=1)

    def __str__(self) -> str:
        return f"r{self.cycle}-{self.token}"


def new_round(cycle: int) -> RoundId:
    return RoundId(cycle=cycle, token=uuid4().hex[:6])


class ArtifactSet(BaseModel):
    specification: str | None = None
    implementation_plan: str | None = None
    justification: str | None = None

    def is_empty(self) -> bool:
        return not (self.specification or self.implementation_plan or self.justification)


class Node(BaseModel):
    id: str = Field(min_length=1)
    kind: NodeKind
    label: str = ""
    persona: str = ""
    instruction: str = ""
    dependencies: list[str] = Field(default_factory=list)
    status: NodeStatus = NodeStatus.PENDING
    phase: ActivePhase | None = None
    output: str | None = None
    score: float = Field(0.0, ge=0.0, le=100.0)
    artifacts: ArtifactSet | None = None
    round_id: RoundId | None = None
    depth: int = Field(0, ge=0)
    failure_count: int = Field(0, ge=0)
    retry_count: int = Field(0, ge=0)
    temperature: float | None = Field(None, ge=0.0, le=2.0)
    data: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_runnable(self, nodes: Mapping[str, "Node"]) -> bool:
        if self.status != NodeStatus.PENDING:
            return False
        for dep in self.dependencies:
            upstream = nodes.get(dep)
            if upstream is None or upstream.status != NodeStatus.COMPLETE:
                return False
        return True

    @property
    def is_terminal(self) -> bool:
        return self.status in {NodeStatus.COMPLETE, NodeStatus.ERROR}


class Edge(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str = Field(min_length=1)
    target: str = Field(min_length=1)

    @property
    def key(self) -> str:
        return f"{self.source}->{self.target}"


class RoundRecord(BaseModel):
    """Bookkeeping for one judged round: which artifact is under review and how it was decided."""

    round_id: RoundId
    anchor_id: str
    judge_target: int = Field(ge=1)
    decision: ConsensusDecision | None = None
    average_score: float | None = None
    variance: float | None = None
    veto_reason: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> str:
        return str(self.round_id)

    @property
    def settled(self) -> bool:
        return self.decision is not None and self.decision != ConsensusDecision.ESCALATE


class GraphMutation(BaseModel):
    """A batch of graph changes applied atomically by the store."""

    nodes: list[Node] = Field(default_factory=list)
    updates: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    rounds: list[RoundRecord] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.nodes or self.updates or self.edges or self.rounds)


class GraphSnapshot(BaseModel):
    nodes: dict[str, Node] = Field(default_factory=dict)
    edges: list[Edge] = Field(default_factory=list)
    rounds: dict[str, RoundRecord] = Field(default_factory=dict)

    def by_status(self, status: NodeStatus) -> list[Node]:
        return [node for node in self.nodes.values() if node.status == status]

    def round_nodes(self, round_id: RoundId, kind: NodeKind | None = None) -> list[Node]:
        return [
            node
            for node in self.nodes.values()
            if node.round_id == round_id and (kind is None or node.kind == kind)
        ]

    def latest_round(self) -> RoundRecord | None:
        if not self.rounds:
            return None
        return max(self.rounds.values(), key=lambda record: (record.round_id.cycle, record.created_at))


class SessionState(BaseModel):
    session_id: str = Field(default_factory=lambda: uuid4().hex)
    goal: str = ""
    mode: SessionMode = SessionMode.REFINEMENT
    status: SessionStatus = SessionStatus.IDLE
    document: str = ""
    cycle_count: int = Field(0, ge=0)
    message: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_processing(self) -> bool:
        return self.status == SessionStatus.RUNNING


class LogEntry(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    timestamp: datetime = Field(default_factory=utcnow)
    level: LogLevel = LogLevel.INFO
    message: str
    node_id: str | None = None


def edges_for(nodes: Iterable[Node]) -> list[Edge]:
    return [Edge(source=dep, target=node.id) for node in nodes for dep in node.dependencies]


__all__ = [
    "ArtifactSet",
    "Edge",
    "GraphMutation",
    "GraphSnapshot",
    "LogEntry",
    "Node",
    "RoundId",
    "RoundRecord",
    "SessionState",
    "edges_for",
    "new_round",
    "utcnow",
]
