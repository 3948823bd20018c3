from __future__ import annotations

import asyncio

import pytest

from ouroboros.core.cancellation import CancellationToken
from ouroboros.core.errors import QuotaExceededError
from ouroboros.db.document_store import InMemoryDocumentStore
from ouroboros.orchestration.enums import (
    ConsensusDecision,
    NodeKind,
    NodeStatus,
    RunOutcome,
    SessionMode,
    SessionStatus,
)
from ouroboros.orchestration.scheduler import RunContext, compute_queue_metrics, runnable_nodes
from ouroboros.orchestration.session import OrchestrationSession
from ouroboros.orchestration.state import GraphMutation, GraphSnapshot, Node, RoundRecord, new_round

from tests.helpers.stubs import SYNTHESIZER_REPLY, ScriptedGenerator, judge_reply, make_session, make_settings


def _first_index(generator: ScriptedGenerator, kind: str) -> int:
    return next(index for index, call in enumerate(generator.calls) if call.kind == kind)


def _last_index(generator: ScriptedGenerator, kind: str) -> int:
    return max(index for index, call in enumerate(generator.calls) if call.kind == kind)


def test_runnable_requires_every_dependency_complete() -> None:
    nodes = {
        "a": Node(id="a", kind=NodeKind.ANALYST, status=NodeStatus.COMPLETE),
        "b": Node(id="b", kind=NodeKind.ANALYST, status=NodeStatus.ERROR),
        "c": Node(id="c", kind=NodeKind.LEAD, dependencies=["a"]),
        "d": Node(id="d", kind=NodeKind.LEAD, dependencies=["a", "b"]),
        "e": Node(id="e", kind=NodeKind.SYNTHESIZER, dependencies=["c"]),
    }
    snapshot = GraphSnapshot(nodes=nodes)
    assert [node.id for node in runnable_nodes(snapshot)] == ["c"]
    assert runnable_nodes(snapshot, {"c"}) == []
    metrics = compute_queue_metrics(snapshot)
    assert metrics.pending == 3
    assert metrics.runnable == 1
    assert metrics.blocked_by_dependency == 2
    assert metrics.error == 1


@pytest.mark.asyncio
async def test_refinement_round_runs_to_acceptance() -> None:
    generator = ScriptedGenerator()
    session = make_session(generator)

    await session.start("Offline-first notes app", departments=["strategy", "ux"])
    report = await session.wait()

    assert report is not None and report.outcome == RunOutcome.COMPLETE
    assert session.state.status == SessionStatus.COMPLETE
    assert session.state.document == SYNTHESIZER_REPLY
    snapshot = await session.snapshot()
    assert len(snapshot.nodes) == 10
    assert all(node.status == NodeStatus.COMPLETE for node in snapshot.nodes.values())
    record = snapshot.latest_round()
    assert record is not None and record.decision == ConsensusDecision.ACCEPT
    assert _last_index(generator, "lead") < _first_index(generator, "synthesizer")
    assert _last_index(generator, "synthesizer") < _first_index(generator, "evaluator")


@pytest.mark.asyncio
async def test_concurrency_never_exceeds_gate_capacity() -> None:
    generator = ScriptedGenerator(latency=0.01)
    session = make_session(generator, settings=make_settings(scheduling={"max_concurrency": 2}))

    await session.start("Payments platform", departments=["strategy", "marketing", "ux", "engineering", "security"])
    snapshot = await session.snapshot()
    assert len(runnable_nodes(snapshot)) == 10
    report = await session.wait()

    assert report is not None and report.outcome == RunOutcome.COMPLETE
    assert generator.peak == 2
    assert session.gate.in_use == 0


@pytest.mark.asyncio
async def test_high_variance_escalates_then_accepts() -> None:
    generator = ScriptedGenerator(
        {"evaluator": [judge_reply(95), judge_reply(60), judge_reply(95), judge_reply(95), judge_reply(95)]}
    )
    session = make_session(generator)

    await session.start("Team chat", departments=["engineering"])
    report = await session.wait()

    assert report is not None and report.outcome == RunOutcome.COMPLETE
    snapshot = await session.snapshot()
    record = snapshot.latest_round()
    assert record is not None
    assert record.decision == ConsensusDecision.ACCEPT
    assert record.judge_target == 5
    assert len(snapshot.round_nodes(record.round_id, NodeKind.EVALUATOR)) == 5


@pytest.mark.asyncio
async def test_disagreement_at_seven_judges_requests_human_review() -> None:
    scores = [95, 93, 30, 90, 91, 92, 94]
    generator = ScriptedGenerator({"evaluator": [judge_reply(score) for score in scores]})
    session = make_session(generator)

    await session.start("Team chat", departments=["engineering"])
    report = await session.wait()

    assert report is not None and report.outcome == RunOutcome.HUMAN_REVIEW
    assert session.state.status == SessionStatus.HUMAN_REVIEW
    assert session.state.is_processing is False
    snapshot = await session.snapshot()
    record = snapshot.latest_round()
    assert record is not None and record.decision == ConsensusDecision.HUMAN_REVIEW
    assert len(snapshot.round_nodes(record.round_id, NodeKind.EVALUATOR)) == 7


@pytest.mark.asyncio
async def test_veto_triggers_correction_cycle() -> None:
    evaluator_replies = [
        judge_reply(0, veto=True, reasoning="Tokens stored in plaintext"),
        judge_reply(90),
        judge_reply(90),
        judge_reply(92),
    ]
    generator = ScriptedGenerator({"evaluator": evaluator_replies, "synthesizer": ["# Spec v1", "# Spec v2"]})
    session = make_session(generator)

    await session.start("Password manager", departments=["security"])
    report = await session.wait()

    assert report is not None and report.outcome == RunOutcome.COMPLETE
    assert session.state.cycle_count == 2
    assert session.state.document == "# Spec v2"
    snapshot = await session.snapshot()
    decisions = sorted((record.round_id.cycle, record.decision) for record in snapshot.rounds.values())
    assert decisions == [(1, ConsensusDecision.REJECT_VETO), (2, ConsensusDecision.ACCEPT)]
    assert len(generator.calls_for("correction")) == 1
    assert any(node.id.startswith("fix_vault_") for node in snapshot.nodes.values())


@pytest.mark.asyncio
async def test_planning_mode_spawns_children() -> None:
    generator = ScriptedGenerator()
    session = make_session(generator)

    await session.start("Build the sync engine", mode=SessionMode.PLANNING)
    report = await session.wait()

    assert report is not None and report.outcome == RunOutcome.COMPLETE
    snapshot = await session.snapshot()
    assert set(snapshot.nodes) == {
        "architect",
        "module_sync_core",
        "module_conflict_inbox",
        "module_sync_core_task_schema",
        "module_sync_core_task_transport",
        "module_conflict_inbox_task_schema",
        "module_conflict_inbox_task_transport",
    }
    assert snapshot.nodes["module_sync_core_task_schema"].dependencies == ["module_sync_core"]
    assert snapshot.nodes["module_sync_core"].kind == NodeKind.PLANNER
    assert snapshot.rounds == {}


@pytest.mark.asyncio
async def test_spawning_stops_at_node_ceiling() -> None:
    generator = ScriptedGenerator()
    session = make_session(generator, settings=make_settings(decomposition={"max_graph_nodes": 3}))

    await session.start("Build the sync engine", mode=SessionMode.PLANNING)
    report = await session.wait()

    assert report is not None and report.outcome == RunOutcome.COMPLETE
    assert await session.store.count() == 3
    logs = await session.logs()
    assert any("ceiling" in entry.message for entry in logs)


@pytest.mark.asyncio
async def test_repeated_failures_end_in_human_review() -> None:
    generator = ScriptedGenerator({"architect": RuntimeError("malformed output"), "decomposer": "[]"})
    session = make_session(generator)

    await session.start("Build the sync engine", mode=SessionMode.PLANNING)
    report = await session.wait()

    assert report is not None and report.outcome == RunOutcome.HUMAN_REVIEW
    assert len(generator.calls_for("architect")) == 3
    assert len(generator.calls_for("decomposer")) == 1


@pytest.mark.asyncio
async def test_failed_dependency_propagates_and_run_fails() -> None:
    session = make_session()
    await session.store.commit(
        GraphMutation(
            nodes=[
                Node(id="a", kind=NodeKind.ANALYST, status=NodeStatus.ERROR, error="boom"),
                Node(id="b", kind=NodeKind.LEAD, dependencies=["a"]),
                Node(id="c", kind=NodeKind.SYNTHESIZER, dependencies=["b"]),
            ]
        )
    )

    report = await session.scheduler.run(RunContext(goal="g"), CancellationToken())

    assert report.outcome == RunOutcome.FAILED
    assert sorted(report.failed) == ["a", "b", "c"]
    node = await session.store.get("c")
    assert node is not None and "Upstream dependency failed" in (node.error or "")


@pytest.mark.asyncio
async def test_orphaned_active_node_is_reported_as_deadlock() -> None:
    session = make_session()
    await session.store.commit(
        GraphMutation(
            nodes=[
                Node(id="a", kind=NodeKind.ANALYST, status=NodeStatus.ACTIVE),
                Node(id="b", kind=NodeKind.LEAD, dependencies=["a"]),
            ]
        )
    )

    report = await session.scheduler.run(RunContext(goal="g"), CancellationToken())

    assert report.outcome == RunOutcome.DEADLOCK
    assert sorted(report.stuck) == ["a", "b"]


@pytest.mark.asyncio
async def test_abort_stops_dispatch_and_rolls_back_active_nodes() -> None:
    generator = ScriptedGenerator(latency=0.2)
    session = make_session(generator)

    await session.start("Payments platform")
    await asyncio.sleep(0.05)
    state = await session.abort()

    assert state.status == SessionStatus.CANCELLED
    snapshot = await session.snapshot()
    assert snapshot.by_status(NodeStatus.ACTIVE) == []
    assert session.gate.in_use == 0
    assert session.is_running is False


async def _wait_for_call(generator: ScriptedGenerator, kind: str) -> None:
    for _ in range(500):
        if generator.calls_for(kind):
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"no {kind} call was made")


def _session_with_real_backoff(generator: ScriptedGenerator) -> OrchestrationSession:
    return OrchestrationSession(settings=make_settings(), generator=generator, documents=InMemoryDocumentStore())


@pytest.mark.asyncio
async def test_abort_during_throttled_improvement_call_is_a_cancellation() -> None:
    generator = ScriptedGenerator({"evaluator": judge_reply(50), "improvement": QuotaExceededError("429")})
    session = _session_with_real_backoff(generator)

    await session.start("Team chat", departments=["engineering"])
    await _wait_for_call(generator, "improvement")
    state = await session.abort()

    assert state.status == SessionStatus.CANCELLED
    assert session.last_report is not None and session.last_report.outcome == RunOutcome.CANCELLED
    assert state.cycle_count == 1
    snapshot = await session.snapshot()
    record = snapshot.latest_round()
    assert record is not None and record.decision is None
    assert session.gate.in_use == 0


@pytest.mark.asyncio
async def test_abort_during_throttled_decomposition_leaves_node_pending() -> None:
    generator = ScriptedGenerator({"architect": RuntimeError("malformed output"), "decomposer": QuotaExceededError("429")})
    session = _session_with_real_backoff(generator)

    await session.start("Build the sync engine", mode=SessionMode.PLANNING)
    await _wait_for_call(generator, "decomposer")
    state = await session.abort()

    assert state.status == SessionStatus.CANCELLED
    node = await session.store.get("architect")
    assert node is not None
    assert node.status == NodeStatus.PENDING
    assert node.failure_count == 3


@pytest.mark.asyncio
async def test_errored_judge_still_counts_toward_panel_escalation() -> None:
    generator = ScriptedGenerator()
    session = make_session(generator)
    round_id = new_round(1)
    synthesizer = Node(id="synth", kind=NodeKind.SYNTHESIZER, status=NodeStatus.COMPLETE, output="# Spec", round_id=round_id)

    def judge(node_id: str, **fields) -> Node:
        return Node(id=node_id, kind=NodeKind.EVALUATOR, dependencies=["synth"], round_id=round_id, **fields)

    await session.store.commit(
        GraphMutation(
            nodes=[
                synthesizer,
                judge("judge_a", status=NodeStatus.COMPLETE, score=95, output="Solid"),
                judge("judge_b", status=NodeStatus.COMPLETE, score=20, output="Weak"),
                judge("judge_c", status=NodeStatus.ERROR, error="provider offline"),
            ],
            rounds=[RoundRecord(round_id=round_id, anchor_id="synth", judge_target=3)],
        )
    )

    report = await asyncio.wait_for(session.scheduler.run(RunContext(goal="g"), CancellationToken()), timeout=5)

    assert report.outcome == RunOutcome.HUMAN_REVIEW
    snapshot = await session.snapshot()
    assert len(snapshot.round_nodes(round_id, NodeKind.EVALUATOR)) == 7
    assert len(generator.calls_for("evaluator")) == 4
    record = snapshot.latest_round()
    assert record is not None and record.decision == ConsensusDecision.HUMAN_REVIEW
