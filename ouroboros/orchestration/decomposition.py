from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, stop_never

from ..core.cancellation import CancellationToken
from ..core.config import Settings
from ..core.errors import QuotaExceededError, RunCancelledError
from ..core.logging import get_logger
from ..core.metrics import increment_graph_expansion
from ..core.rate_limit import RequestRateLimiter
from ..services.llm import GenerationOptions, TextGenerator, is_quota_error, resolve_model
from ..utils.json_extraction import extract_json, extract_list
from .consensus import ConsensusOutcome, ConsensusVotingSystem
from .enums import ConsensusDecision, NodeStatus
from .executor import quota_wait_strategy
from .gate import ConcurrencyGate
from .state import GraphSnapshot, Node, RoundRecord, new_round
from .store import GraphStore
from .topology import build_remediation_round, build_subtasks, parse_task_specs

logger = get_logger(name=__name__)


class ControllerActionKind(str, Enum):
    RETRY = "retry"
    DECOMPOSED = "decomposed"
    CORRECTED = "corrected"
    HUMAN_REVIEW = "human_review"


@dataclass(slots=True)
class ControllerAction:
    kind: ControllerActionKind
    message: str
    node_id: str | None = None
    created: int = 0

    @property
    def requires_review(self) -> bool:
        return self.kind == ControllerActionKind.HUMAN_REVIEW


class DecompositionController:
    """Turns failures into new graph structure, bounded by a node-count ceiling.

    Execution failures are retried locally until ``max_failures`` in a row,
    then split into sub-tasks. Rejected rounds are corrected (veto) or
    decomposed (low score) into a follow-up round. Whenever expansion is
    impossible or produces nothing, the action asks for human review.
    """

    def __init__(
        self,
        *,
        store: GraphStore,
        gate: ConcurrencyGate,
        limiter: RequestRateLimiter,
        generator: TextGenerator,
        settings: Settings,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._store = store
        self._gate = gate
        self._limiter = limiter
        self._generator = generator
        self._settings = settings
        self._sleep = sleep

    @property
    def max_graph_nodes(self) -> int:
        return self._settings.decomposition.max_graph_nodes

    def has_capacity(self, snapshot: GraphSnapshot) -> bool:
        return len(snapshot.nodes) < self.max_graph_nodes

    async def on_execution_failure(self, node_id: str, *, cancel: CancellationToken, goal: str = "") -> ControllerAction:
        node = await self._store.get(node_id)
        if node is None:
            return ControllerAction(ControllerActionKind.RETRY, f"node {node_id} no longer exists", node_id=node_id)
        failures = node.failure_count + 1
        threshold = self._settings.decomposition.max_failures
        if failures < threshold:
            await self._store.update_node(node_id, status=NodeStatus.PENDING, phase=None, failure_count=failures)
            logger.info("node_retry_scheduled", node_id=node_id, failures=failures, threshold=threshold)
            return ControllerAction(
                ControllerActionKind.RETRY,
                f"{node.label or node_id} failed ({failures}/{threshold}); retrying",
                node_id=node_id,
            )

        await self._store.update_node(node_id, failure_count=failures)
        snapshot = await self._store.get_all()
        if not self.has_capacity(snapshot):
            return self._review(
                f"Graph reached {self.max_graph_nodes} nodes; {node.label or node_id} needs human review",
                node_id,
            )

        raw = await self._ask(self._decomposition_prompt(node, goal), cancel)
        tasks = parse_task_specs(
            _task_list(raw),
            limit=self._settings.decomposition.max_subtasks,
            fallback_prefix="step",
        )
        if not tasks:
            return self._review(f"Decomposition of {node.label or node_id} yielded no sub-tasks", node_id)

        anchors = [snapshot.nodes[dep] for dep in node.dependencies if dep in snapshot.nodes]
        mutation = build_subtasks(node, anchors, tasks, taken=snapshot.nodes.keys())
        mutation.updates = [
            update.model_copy(
                update={
                    "status": NodeStatus.PENDING,
                    "phase": None,
                    "failure_count": 0,
                    "output": None,
                    "error": None,
                }
            )
            for update in mutation.updates
        ]
        await self._store.commit(mutation)
        increment_graph_expansion("decomposition")
        logger.warning("node_decomposed", node_id=node_id, subtasks=[task.id for task in mutation.nodes])
        return ControllerAction(
            ControllerActionKind.DECOMPOSED,
            f"{node.label or node_id} split into {len(mutation.nodes)} sub-tasks",
            node_id=node_id,
            created=len(mutation.nodes),
        )

    async def on_consensus_rejection(
        self,
        snapshot: GraphSnapshot,
        record: RoundRecord,
        outcome: ConsensusOutcome,
        *,
        cancel: CancellationToken,
        cycle: int,
        goal: str = "",
    ) -> ControllerAction:
        settled = ConsensusVotingSystem.settle(record, outcome)
        if not self.has_capacity(snapshot):
            await self._store.upsert_round(settled)
            return self._review(
                f"Graph reached {self.max_graph_nodes} nodes without consensus; human review required",
                record.anchor_id,
            )
        anchor = snapshot.nodes[record.anchor_id]
        veto = outcome.decision == ConsensusDecision.REJECT_VETO
        prompt = self._correction_prompt(anchor, outcome, goal) if veto else self._improvement_prompt(anchor, outcome, goal)
        raw = await self._ask(prompt, cancel)
        tasks = parse_task_specs(
            _task_list(raw),
            limit=self._settings.decomposition.max_subtasks,
            fallback_prefix="fix",
        )
        if not tasks:
            await self._store.upsert_round(settled)
            return self._review("Consensus rejection produced no remediation tasks; human review required", anchor.id)

        directive = _correction_plan(raw) if veto else None
        directive = directive or (
            f"Tribunal veto: {outcome.veto_reason}" if veto else f"Tribunal average {outcome.stats.average:.1f} was below the bar."
        )
        mutation = build_remediation_round(
            anchor,
            new_round(cycle),
            tasks,
            judge_count=self._settings.refinement.initial_judge_count,
            directive=directive,
            taken=snapshot.nodes.keys(),
        )
        mutation.rounds.insert(0, settled)
        await self._store.commit(mutation)
        path = "correction" if veto else "decomposition"
        increment_graph_expansion(path)
        logger.warning(
            "round_remediated",
            round=str(record.round_id),
            path=path,
            tasks=[task.slug for task in tasks],
            next_cycle=cycle,
        )
        return ControllerAction(
            ControllerActionKind.CORRECTED if veto else ControllerActionKind.DECOMPOSED,
            f"{'Veto correction' if veto else 'Soft failure decomposition'}: cycle {cycle} with {len(tasks)} tasks",
            node_id=anchor.id,
            created=len(mutation.nodes),
        )

    async def _ask(self, prompt: str, cancel: CancellationToken) -> str | None:
        model = resolve_model("decomposer", self._settings.models)
        max_retries = self._settings.scheduling.quota_max_retries
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(QuotaExceededError),
            wait=quota_wait_strategy(self._settings),
            stop=stop_never if max_retries is None else stop_after_attempt(max_retries + 1),
            sleep=self._sleep or cancel.sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    async with self._gate.slot(cancel):
                        await self._limiter.acquire(cancel)
                        try:
                            result = await self._generator.generate(
                                model,
                                prompt,
                                GenerationOptions(temperature=0.4, json_mode=True),
                            )
                        except (QuotaExceededError, RunCancelledError):
                            raise
                        except Exception as exc:
                            if is_quota_error(exc):
                                raise QuotaExceededError(str(exc)) from exc
                            raise
        except (RunCancelledError, asyncio.CancelledError):
            raise
        except Exception as exc:
            logger.warning("remediation_call_failed", model=model, error=str(exc))
            return None
        cancel.raise_if_cancelled()
        return result.text

    def _review(self, message: str, node_id: str | None) -> ControllerAction:
        logger.warning("human_review_required", reason=message, node_id=node_id)
        return ControllerAction(ControllerActionKind.HUMAN_REVIEW, message, node_id=node_id)

    def _decomposition_prompt(self, node: Node, goal: str) -> str:
        settings = self._settings.decomposition
        return (
            "You are a Technical Lead rescuing a task that keeps failing.\n"
            f"GOAL: {goal}\n"
            f"FAILING TASK: {node.label}\n{node.instruction[:4000]}\n"
            f"LAST ERROR: {node.error or 'unknown'}\n\n"
            f"Break it into {settings.min_subtasks}-{settings.max_subtasks} atomic, independently executable micro-tasks.\n"
            'Return a JSON array: [{"id": "snake_case_id", "title": "Short Title", "description": "Instruction"}]'
        )

    def _improvement_prompt(self, anchor: Node, outcome: ConsensusOutcome, goal: str) -> str:
        critiques = "\n".join(
            f"- {verdict.focus or verdict.judge_id} ({verdict.score:.0f}): {verdict.reasoning[:600]}"
            for verdict in outcome.verdicts
        )
        settings = self._settings.decomposition
        return (
            "The tribunal did not accept the specification.\n"
            f"GOAL: {goal}\n"
            f"SPECIFICATION:\n{(anchor.output or '')[:8000]}\n\n"
            f"CRITIQUES:\n{critiques}\n\n"
            f"Propose {settings.min_subtasks}-{settings.max_subtasks} focused improvement tasks.\n"
            'Return a JSON array: [{"id": "snake_case_id", "title": "Short Title", "description": "Instruction"}]'
        )

    def _correction_prompt(self, anchor: Node, outcome: ConsensusOutcome, goal: str) -> str:
        return (
            "A judge vetoed the specification. Analyse the veto and plan a correction.\n"
            f"GOAL: {goal}\n"
            f"SPECIFICATION:\n{(anchor.output or '')[:8000]}\n\n"
            f"VETO REASON: {outcome.veto_reason}\n\n"
            'Return JSON: {"correction_plan": string, '
            '"tasks": [{"id": "snake_case_id", "title": "Short Title", "description": "Instruction"}]}'
        )


def _task_list(raw: str | None) -> list[object]:
    for key in ("tasks", "subtasks", "items"):
        tasks = extract_list(raw, key=key)
        if tasks:
            return tasks
    return []


def _correction_plan(raw: str | None) -> str | None:
    data = extract_json(raw, default={}).data
    if isinstance(data, dict):
        plan = data.get("correction_plan")
        if isinstance(plan, str) and plan.strip():
            return plan.strip()
    return None


__all__ = ["ControllerAction", "ControllerActionKind", "DecompositionController"]
