from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from ..core.cancellation import CancellationToken
from ..core.errors import RunCancelledError
from ..core.logging import get_logger
from ..core.metrics import record_run_outcome
from .consensus import ConsensusVotingSystem
from .decomposition import ControllerAction, DecompositionController
from .enums import ConsensusDecision, LogLevel, NodeStatus, RunOutcome, SessionMode
from .executor import ExecutionOutcome, NodeExecutor
from .state import GraphMutation, GraphSnapshot, Node, RoundRecord
from .store import GraphStore
from .topology import build_children

logger = get_logger(name=__name__)

EventSink = Callable[[LogLevel, str, str | None], Awaitable[None]]


@dataclass(slots=True)
class RunContext:
    """Mutable per-run values shared between the session and the scheduler."""

    goal: str
    mode: SessionMode = SessionMode.REFINEMENT
    document: str = ""
    cycle: int = 1


@dataclass(slots=True)
class QueueMetrics:
    pending: int = 0
    active: int = 0
    runnable: int = 0
    blocked_by_dependency: int = 0
    complete: int = 0
    error: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "active": self.active,
            "runnable": self.runnable,
            "blocked_by_dependency": self.blocked_by_dependency,
            "complete": self.complete,
            "error": self.error,
        }


@dataclass(slots=True)
class RunReport:
    outcome: RunOutcome
    message: str
    dispatched: int = 0
    stuck: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "outcome": self.outcome.value,
            "message": self.message,
            "dispatched": self.dispatched,
            "stuck": list(self.stuck),
            "failed": list(self.failed),
        }


def runnable_nodes(snapshot: GraphSnapshot, in_flight: set[str] | frozenset[str] = frozenset()) -> list[Node]:
    return [
        node
        for node in snapshot.nodes.values()
        if node.id not in in_flight and node.is_runnable(snapshot.nodes)
    ]


def compute_queue_metrics(snapshot: GraphSnapshot, in_flight: set[str] | frozenset[str] = frozenset()) -> QueueMetrics:
    metrics = QueueMetrics()
    runnable = {node.id for node in runnable_nodes(snapshot, in_flight)}
    for node in snapshot.nodes.values():
        if node.status == NodeStatus.PENDING:
            metrics.pending += 1
            if node.id in runnable:
                metrics.runnable += 1
            else:
                metrics.blocked_by_dependency += 1
        elif node.status == NodeStatus.ACTIVE:
            metrics.active += 1
        elif node.status == NodeStatus.COMPLETE:
            metrics.complete += 1
        elif node.status == NodeStatus.ERROR:
            metrics.error += 1
    return metrics


class GraphScheduler:
    """Drives the graph until quiescence, completion, human review or cancellation.

    Node tasks are awaited with ``FIRST_COMPLETED`` so the runnable set is
    recomputed right after every completion. A finished execution that
    failed is handed to the controller inside its own task, which keeps the
    node counted as in flight until its retry or split is committed.
    """

    def __init__(
        self,
        *,
        store: GraphStore,
        executor: NodeExecutor,
        controller: DecompositionController,
        consensus: ConsensusVotingSystem,
        on_event: EventSink | None = None,
    ) -> None:
        self._store = store
        self._executor = executor
        self._controller = controller
        self._consensus = consensus
        self._on_event = on_event

    async def run(self, context: RunContext, cancel: CancellationToken) -> RunReport:
        in_flight: dict[str, asyncio.Task[tuple[ExecutionOutcome, ControllerAction | None]]] = {}
        dispatched = 0
        review: str | None = None
        try:
            while True:
                if cancel.cancelled:
                    await self._drain(in_flight)
                    return await self._finish(context, RunOutcome.CANCELLED, "Run aborted", dispatched)

                snapshot = await self._store.get_all()
                if await self._propagate_failures(snapshot, set(in_flight)):
                    snapshot = await self._store.get_all()

                if review is None:
                    for node in runnable_nodes(snapshot, set(in_flight)):
                        in_flight[node.id] = asyncio.create_task(
                            self._run_node(node.id, context, cancel),
                            name=f"ouroboros-node-{node.id}",
                        )
                        dispatched += 1

                if in_flight:
                    finished = await self._wait_any(in_flight, cancel)
                    for node_id in finished:
                        task = in_flight.pop(node_id)
                        outcome, action = task.result()
                        review = await self._absorb(outcome, action, context) or review
                    continue

                if review is not None:
                    return await self._finish(context, RunOutcome.HUMAN_REVIEW, review, dispatched)

                stuck = [node.id for node in snapshot.by_status(NodeStatus.PENDING)]
                orphaned = [node.id for node in snapshot.by_status(NodeStatus.ACTIVE)]
                if stuck or orphaned:
                    message = f"Deadlock: {len(stuck)} pending node(s) can never become runnable"
                    return await self._finish(context, RunOutcome.DEADLOCK, message, dispatched, stuck=stuck + orphaned)

                settled = await self._settle_consensus(snapshot, context, cancel)
                if settled is True:
                    continue
                if isinstance(settled, str):
                    return await self._finish(context, RunOutcome.HUMAN_REVIEW, settled, dispatched)

                failed = [node.id for node in snapshot.by_status(NodeStatus.ERROR)]
                if failed:
                    message = f"Run finished with {len(failed)} failed node(s)"
                    return await self._finish(context, RunOutcome.FAILED, message, dispatched, failed=failed)
                return await self._finish(context, RunOutcome.COMPLETE, "All nodes complete", dispatched)
        except RunCancelledError:
            # raised by a controller call that was waiting on the gate, the limiter or a backoff
            await self._drain(in_flight)
            return await self._finish(context, RunOutcome.CANCELLED, "Run aborted", dispatched)
        finally:
            await self._drain(in_flight)

    async def _run_node(
        self,
        node_id: str,
        context: RunContext,
        cancel: CancellationToken,
    ) -> tuple[ExecutionOutcome, ControllerAction | None]:
        outcome = await self._executor.execute(node_id, cancel=cancel, goal=context.goal, document=context.document)
        action: ControllerAction | None = None
        if outcome.status == NodeStatus.ERROR and not cancel.cancelled:
            await self._emit(LogLevel.ERROR, f"{node_id} failed: {outcome.error}", node_id)
            try:
                action = await self._controller.on_execution_failure(node_id, cancel=cancel, goal=context.goal)
            except (RunCancelledError, asyncio.CancelledError):
                # the failure was never handled, so the node runs again on resume
                await self._store.update_node(node_id, status=NodeStatus.PENDING, phase=None)
                raise
        return outcome, action

    async def _wait_any(
        self,
        in_flight: dict[str, asyncio.Task[tuple[ExecutionOutcome, ControllerAction | None]]],
        cancel: CancellationToken,
    ) -> list[str]:
        cancel_waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({*in_flight.values(), cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_waiter.cancel()
        return [node_id for node_id, task in in_flight.items() if task.done()]

    async def _drain(
        self,
        in_flight: dict[str, asyncio.Task[tuple[ExecutionOutcome, ControllerAction | None]]],
    ) -> None:
        # cancelled executions roll their node back to pending
        for task in in_flight.values():
            task.cancel()
        if in_flight:
            await asyncio.gather(*in_flight.values(), return_exceptions=True)
        in_flight.clear()

    async def _absorb(
        self,
        outcome: ExecutionOutcome,
        action: ControllerAction | None,
        context: RunContext,
    ) -> str | None:
        if outcome.status == NodeStatus.COMPLETE:
            if outcome.document is not None:
                context.document = outcome.document
            if outcome.spawn is not None:
                await self._spawn_children(outcome)
            await self._emit(LogLevel.SUCCESS, f"{outcome.node_id} complete", outcome.node_id)
        if action is None:
            return None
        level = LogLevel.ERROR if action.requires_review else LogLevel.WARN
        await self._emit(level, action.message, action.node_id)
        return action.message if action.requires_review else None

    async def _spawn_children(self, outcome: ExecutionOutcome) -> None:
        spawn = outcome.spawn
        snapshot = await self._store.get_all()
        parent = snapshot.nodes.get(outcome.node_id)
        if spawn is None or parent is None:
            return
        capacity = self._controller.max_graph_nodes - len(snapshot.nodes)
        items = spawn.items[: max(capacity, 0)]
        if len(items) < len(spawn.items):
            await self._emit(
                LogLevel.WARN,
                f"Graph size ceiling reached; {len(spawn.items) - len(items)} child node(s) of {parent.id} not created",
                parent.id,
            )
        if not items:
            return
        children = build_children(
            parent,
            spawn.kind,
            items,
            prefix=spawn.prefix,
            persona=spawn.persona,
            taken=snapshot.nodes.keys(),
        )
        await self._store.commit(GraphMutation(nodes=children))
        logger.info("children_spawned", parent=parent.id, kind=spawn.kind.value, count=len(children))

    async def _propagate_failures(self, snapshot: GraphSnapshot, in_flight: set[str]) -> bool:
        """Mark pending nodes whose dependencies failed; repeats until no more cascade."""
        nodes = dict(snapshot.nodes)
        failed_ids = {
            node_id for node_id, node in nodes.items() if node.status == NodeStatus.ERROR and node_id not in in_flight
        }
        changed = False
        progress = True
        while progress:
            progress = False
            for node in list(nodes.values()):
                if node.status != NodeStatus.PENDING or node.id in in_flight:
                    continue
                broken = [dep for dep in node.dependencies if dep in failed_ids]
                if not broken:
                    continue
                message = f"Upstream dependency failed: {', '.join(broken)}"
                nodes[node.id] = await self._store.update_node(
                    node.id,
                    status=NodeStatus.ERROR,
                    output=message,
                    error=message,
                )
                failed_ids.add(node.id)
                changed = progress = True
                await self._emit(LogLevel.ERROR, f"{node.id} skipped: {message}", node.id)
        return changed

    async def _settle_consensus(
        self,
        snapshot: GraphSnapshot,
        context: RunContext,
        cancel: CancellationToken,
    ) -> bool | str:
        """Decide the latest round. ``True`` means new work was added, a string asks for human review."""
        record = snapshot.latest_round()
        if record is None or record.settled:
            return False
        outcome = self._consensus.evaluate_round(snapshot, record)
        if outcome is None:
            return False
        await self._emit(LogLevel.SYSTEM, self._consensus.format_report(outcome), record.anchor_id)

        decision = outcome.decision
        if decision == ConsensusDecision.ACCEPT:
            await self._store.upsert_round(self._consensus.settle(record, outcome))
            await self._emit(LogLevel.SUCCESS, f"Consensus reached for cycle {record.round_id.cycle}", record.anchor_id)
            return False
        if decision == ConsensusDecision.HUMAN_REVIEW:
            await self._store.upsert_round(self._consensus.settle(record, outcome))
            return (
                f"Judges still disagree at {outcome.stats.count} votes "
                f"(variance {outcome.stats.variance:.1f}); human review required"
            )
        if decision == ConsensusDecision.ESCALATE:
            if not self._controller.has_capacity(snapshot):
                await self._store.upsert_round(_needs_review(self._consensus.settle(record, outcome)))
                return f"Graph reached {self._controller.max_graph_nodes} nodes during escalation; human review required"
            escalation = self._consensus.escalation(snapshot, record, outcome)
            if not escalation.nodes:
                await self._store.upsert_round(_needs_review(self._consensus.settle(record, outcome)))
                return f"No judges could be added to reach {outcome.next_judge_count}; human review required"
            await self._store.commit(escalation)
            await self._emit(
                LogLevel.WARN,
                f"High variance ({outcome.stats.variance:.1f}); escalating to {outcome.next_judge_count} judges",
                record.anchor_id,
            )
            return True

        context.cycle += 1
        try:
            action = await self._controller.on_consensus_rejection(
                snapshot,
                record,
                outcome,
                cancel=cancel,
                cycle=context.cycle,
                goal=context.goal,
            )
        except RunCancelledError:
            context.cycle -= 1
            raise
        if action.requires_review:
            context.cycle -= 1
            return action.message
        await self._emit(LogLevel.WARN, action.message, action.node_id)
        return True

    async def _finish(
        self,
        context: RunContext,
        outcome: RunOutcome,
        message: str,
        dispatched: int,
        *,
        stuck: list[str] | None = None,
        failed: list[str] | None = None,
    ) -> RunReport:
        record_run_outcome(context.mode.value, outcome.value)
        level = {
            RunOutcome.COMPLETE: LogLevel.SUCCESS,
            RunOutcome.CANCELLED: LogLevel.WARN,
        }.get(outcome, LogLevel.ERROR)
        await self._emit(level, message, None)
        logger.info("run_finished", outcome=outcome.value, message=message, dispatched=dispatched)
        return RunReport(outcome=outcome, message=message, dispatched=dispatched, stuck=stuck or [], failed=failed or [])

    async def _emit(self, level: LogLevel, message: str, node_id: str | None) -> None:
        if self._on_event is None:
            return
        try:
            await self._on_event(level, message, node_id)
        except Exception as exc:
            logger.warning("scheduler_event_sink_failed", error=str(exc))


def _needs_review(record: RoundRecord) -> RoundRecord:
    return record.model_copy(update={"decision": ConsensusDecision.HUMAN_REVIEW})


__all__ = [
    "GraphScheduler",
    "QueueMetrics",
    "RunContext",
    "RunReport",
    "compute_queue_metrics",
    "runnable_nodes",
]
