from __future__ import annotations

from enum import Enum


class NodeKind(str, Enum):
    ANALYST = "analyst"
    LEAD = "lead"
    SYNTHESIZER = "synthesizer"
    EVALUATOR = "evaluator"
    ARCHITECT = "architect"
    PLANNER = "planner"


class NodeStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETE = "complete"
    ERROR = "error"


class ActivePhase(str, Enum):
    ANALYZING = "analyzing"
    SYNTHESIZING = "synthesizing"
    EVALUATING = "evaluating"
    PLANNING = "planning"


class SessionMode(str, Enum):
    REFINEMENT = "refinement"
    PLANNING = "planning"


class SessionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    DEADLOCKED = "deadlocked"
    HUMAN_REVIEW = "human_review"
    CANCELLED = "cancelled"


class RunOutcome(str, Enum):
    COMPLETE = "complete"
    FAILED = "failed"
    DEADLOCK = "deadlock"
    HUMAN_REVIEW = "human_review"
    CANCELLED = "cancelled"


class ConsensusDecision(str, Enum):
    ACCEPT = "accept"
    REJECT_VETO = "reject_veto"
    SOFT_FAIL = "soft_fail"
    ESCALATE = "escalate"
    HUMAN_REVIEW = "human_review"


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    SUCCESS = "success"
    SYSTEM = "system"


PHASE_BY_KIND: dict[NodeKind, ActivePhase] = {
    NodeKind.ANALYST: ActivePhase.ANALYZING,
    NodeKind.LEAD: ActivePhase.SYNTHESIZING,
    NodeKind.SYNTHESIZER: ActivePhase.SYNTHESIZING,
    NodeKind.EVALUATOR: ActivePhase.EVALUATING,
    NodeKind.ARCHITECT: ActivePhase.PLANNING,
    NodeKind.PLANNER: ActivePhase.PLANNING,
}


__all__ = [
    "ActivePhase",
    "ConsensusDecision",
    "LogLevel",
    "NodeKind",
    "NodeStatus",
    "PHASE_BY_KIND",
    "RunOutcome",
    "SessionMode",
    "SessionStatus",
]
