"""
Orchestration Package

Core components of the self-refining task graph:
- Graph state, persistence and integrity checks
- Concurrency gate and event-driven scheduler
- Node execution with quota backoff and output validation
- Judge consensus with variance escalation
- Failure decomposition and round remediation
"""

from .consensus import ConsensusOutcome, ConsensusVotingSystem, JudgeVerdict
from .decomposition import ControllerAction, ControllerActionKind, DecompositionController
from .enums import (
    ConsensusDecision,
    LogLevel,
    NodeKind,
    NodeStatus,
    RunOutcome,
    SessionMode,
    SessionStatus,
)
from .executor import ExecutionOutcome, NodeExecutor
from .gate import ConcurrencyGate
from .scheduler import GraphScheduler, RunContext, RunReport
from .session import OrchestrationSession
from .state import GraphMutation, GraphSnapshot, LogEntry, Node, RoundId, RoundRecord, SessionState
from .store import GraphStore
from .validation import OutputValidator

__all__ = [
    "ConcurrencyGate",
    "ConsensusDecision",
    "ConsensusOutcome",
    "ConsensusVotingSystem",
    "ControllerAction",
    "ControllerActionKind",
    "DecompositionController",
    "ExecutionOutcome",
    "GraphMutation",
    "GraphScheduler",
    "GraphSnapshot",
    "GraphStore",
    "JudgeVerdict",
    "LogEntry",
    "LogLevel",
    "Node",
    "NodeExecutor",
    "NodeKind",
    "NodeStatus",
    "OrchestrationSession",
    "OutputValidator",
    "RoundId",
    "RoundRecord",
    "RunContext",
    "RunOutcome",
    "RunReport",
    "SessionMode",
    "SessionState",
    "SessionStatus",
]
