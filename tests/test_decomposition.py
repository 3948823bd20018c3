from __future__ import annotations

import pytest

from ouroboros.core.cancellation import CancellationToken
from ouroboros.core.rate_limit import RequestRateLimiter
from ouroboros.orchestration.consensus import ConsensusVotingSystem, JudgeVerdict
from ouroboros.orchestration.decomposition import ControllerActionKind, DecompositionController
from ouroboros.orchestration.enums import ConsensusDecision, NodeKind, NodeStatus
from ouroboros.orchestration.gate import ConcurrencyGate
from ouroboros.orchestration.state import GraphMutation, Node, RoundRecord, new_round
from ouroboros.orchestration.store import GraphStore

from tests.helpers.stubs import RecordingSleep, ScriptedGenerator, make_settings


async def _controller(generator: ScriptedGenerator, **overrides) -> tuple[DecompositionController, GraphStore]:
    settings = make_settings(**overrides)
    store = GraphStore()
    controller = DecompositionController(
        store=store,
        gate=ConcurrencyGate(settings.scheduling.max_concurrency),
        limiter=RequestRateLimiter.from_settings(settings.rate_limit),
        generator=generator,
        settings=settings,
        sleep=RecordingSleep(),
    )
    return controller, store


async def _failing_lead(store: GraphStore) -> None:
    await store.commit(
        GraphMutation(
            nodes=[
                Node(id="analyst_a", kind=NodeKind.ANALYST, status=NodeStatus.COMPLETE, output="insight"),
                Node(
                    id="lead_ux",
                    kind=NodeKind.LEAD,
                    label="UX Lead",
                    dependencies=["analyst_a"],
                    status=NodeStatus.ERROR,
                    error="model returned garbage",
                    depth=1,
                ),
            ]
        )
    )


@pytest.mark.asyncio
async def test_failures_below_threshold_are_retried_locally() -> None:
    generator = ScriptedGenerator()
    controller, store = await _controller(generator)
    await _failing_lead(store)

    first = await controller.on_execution_failure("lead_ux", cancel=CancellationToken())
    await store.update_node("lead_ux", status=NodeStatus.ERROR)
    second = await controller.on_execution_failure("lead_ux", cancel=CancellationToken())

    assert first.kind == ControllerActionKind.RETRY
    assert second.kind == ControllerActionKind.RETRY
    node = await store.get("lead_ux")
    assert node is not None
    assert node.status == NodeStatus.PENDING
    assert node.failure_count == 2
    assert generator.calls == []


@pytest.mark.asyncio
async def test_third_failure_splits_node_into_subtasks() -> None:
    generator = ScriptedGenerator()
    controller, store = await _controller(generator)
    await _failing_lead(store)
    await store.update_node("lead_ux", failure_count=2)

    action = await controller.on_execution_failure("lead_ux", cancel=CancellationToken(), goal="Design onboarding")

    assert action.kind == ControllerActionKind.DECOMPOSED
    assert action.created == 3
    assert len(generator.calls_for("decomposer")) == 1
    assert "model returned garbage" in generator.calls[0].prompt

    snapshot = await store.get_all()
    subtasks = [node_id for node_id in snapshot.nodes if node_id.startswith("lead_ux_task_")]
    assert sorted(subtasks) == ["lead_ux_task_draft", "lead_ux_task_outline", "lead_ux_task_review"]
    for node_id in subtasks:
        assert snapshot.nodes[node_id].dependencies == ["analyst_a"]
        assert snapshot.nodes[node_id].status == NodeStatus.PENDING
    lead = snapshot.nodes["lead_ux"]
    assert lead.status == NodeStatus.PENDING
    assert lead.failure_count == 0
    assert set(lead.dependencies) == {"analyst_a", *subtasks}


@pytest.mark.asyncio
async def test_empty_decomposition_asks_for_human_review() -> None:
    generator = ScriptedGenerator({"decomposer": "[]"})
    controller, store = await _controller(generator)
    await _failing_lead(store)
    await store.update_node("lead_ux", failure_count=2)

    action = await controller.on_execution_failure("lead_ux", cancel=CancellationToken())

    assert action.kind == ControllerActionKind.HUMAN_REVIEW
    assert action.requires_review is True
    assert await store.count() == 2


@pytest.mark.asyncio
async def test_decomposer_provider_failure_asks_for_human_review() -> None:
    generator = ScriptedGenerator({"decomposer": RuntimeError("model offline")})
    controller, store = await _controller(generator)
    await _failing_lead(store)
    await store.update_node("lead_ux", failure_count=2)

    action = await controller.on_execution_failure("lead_ux", cancel=CancellationToken())

    assert action.kind == ControllerActionKind.HUMAN_REVIEW


@pytest.mark.asyncio
async def test_node_ceiling_blocks_expansion() -> None:
    generator = ScriptedGenerator()
    controller, store = await _controller(generator, decomposition={"max_graph_nodes": 2})
    await _failing_lead(store)
    await store.update_node("lead_ux", failure_count=2)

    action = await controller.on_execution_failure("lead_ux", cancel=CancellationToken())

    assert action.kind == ControllerActionKind.HUMAN_REVIEW
    assert generator.calls == []


async def _judged_round(store: GraphStore) -> RoundRecord:
    round_id = new_round(1)
    synthesizer = Node(
        id=f"synthesizer_{round_id}",
        kind=NodeKind.SYNTHESIZER,
        status=NodeStatus.COMPLETE,
        output="# Spec\nTokens are stored in plaintext.",
        round_id=round_id,
        depth=2,
    )
    record = RoundRecord(round_id=round_id, anchor_id=synthesizer.id, judge_target=3)
    await store.commit(GraphMutation(nodes=[synthesizer], rounds=[record]))
    return record


@pytest.mark.asyncio
async def test_veto_builds_correction_round() -> None:
    generator = ScriptedGenerator()
    controller, store = await _controller(generator)
    record = await _judged_round(store)
    outcome = ConsensusVotingSystem(make_settings().consensus).decide(
        [JudgeVerdict("judge_risk", 0, reasoning="Plaintext tokens"), JudgeVerdict("judge_tech", 90)]
    )
    assert outcome.decision == ConsensusDecision.REJECT_VETO

    snapshot = await store.get_all()
    action = await controller.on_consensus_rejection(snapshot, record, outcome, cancel=CancellationToken(), cycle=2)

    assert action.kind == ControllerActionKind.CORRECTED
    assert "Plaintext tokens" in generator.calls_for("correction")[0].prompt
    snapshot = await store.get_all()
    assert snapshot.rounds[record.key].decision == ConsensusDecision.REJECT_VETO
    latest = snapshot.latest_round()
    assert latest is not None and latest.round_id.cycle == 2
    fixes = [node for node in snapshot.nodes.values() if node.id.startswith("fix_")]
    assert {node.data["task"] for node in fixes} == {"vault", "audit"}
    assert all(node.dependencies == [record.anchor_id] for node in fixes)
    assert all("encrypted vault" in node.instruction for node in fixes)
    new_synth = snapshot.nodes[latest.anchor_id]
    assert set(new_synth.dependencies) == {record.anchor_id, *(node.id for node in fixes)}
    judges = snapshot.round_nodes(latest.round_id, NodeKind.EVALUATOR)
    assert len(judges) == 3


@pytest.mark.asyncio
async def test_soft_failure_builds_improvement_round() -> None:
    generator = ScriptedGenerator()
    controller, store = await _controller(generator)
    record = await _judged_round(store)
    outcome = ConsensusVotingSystem(make_settings().consensus).decide(
        [JudgeVerdict("judge_tech", 70, reasoning="Thin on scaling"), JudgeVerdict("judge_product", 72)]
    )
    assert outcome.decision == ConsensusDecision.SOFT_FAIL

    snapshot = await store.get_all()
    action = await controller.on_consensus_rejection(snapshot, record, outcome, cancel=CancellationToken(), cycle=2)

    assert action.kind == ControllerActionKind.DECOMPOSED
    assert "Thin on scaling" in generator.calls_for("improvement")[0].prompt
    snapshot = await store.get_all()
    assert snapshot.rounds[record.key].decision == ConsensusDecision.SOFT_FAIL
    assert len([node for node in snapshot.nodes.values() if node.id.startswith("fix_")]) == 3
