from __future__ import annotations

import json

import pytest

from ouroboros.core.cancellation import CancellationToken
from ouroboros.core.errors import QuotaExceededError
from ouroboros.core.rate_limit import RequestRateLimiter
from ouroboros.db.document_store import InMemoryDocumentStore
from ouroboros.orchestration.enums import NodeKind, NodeStatus
from ouroboros.orchestration.executor import NodeExecutor
from ouroboros.orchestration.gate import ConcurrencyGate
from ouroboros.orchestration.state import GraphMutation, Node
from ouroboros.orchestration.store import GraphStore
from ouroboros.services.knowledge import KnowledgeGraphRecorder
from ouroboros.services.memory import AgentMemoryManager, MemoryRecord

from tests.helpers.stubs import ANALYST_REPLY, RecordingSleep, ScriptedGenerator, make_settings


async def _setup(generator: ScriptedGenerator, *, sleep=None, documents=None, **overrides):
    settings = make_settings(**overrides)
    documents = documents or InMemoryDocumentStore()
    store = GraphStore(documents)
    gate = ConcurrencyGate(settings.scheduling.max_concurrency)
    executor = NodeExecutor(
        store=store,
        gate=gate,
        limiter=RequestRateLimiter.from_settings(settings.rate_limit),
        generator=generator,
        settings=settings,
        memory=AgentMemoryManager(documents, settings.memory),
        knowledge=KnowledgeGraphRecorder(documents, settings.knowledge),
        sleep=sleep or RecordingSleep(),
    )
    await store.commit(
        GraphMutation(
            nodes=[
                Node(
                    id="analyst_1",
                    kind=NodeKind.ANALYST,
                    label="The Pragmatist",
                    persona="The Pragmatist",
                    instruction="Find the MVP.",
                )
            ]
        )
    )
    return executor, store, gate


@pytest.mark.asyncio
async def test_quota_errors_back_off_exponentially_and_release_the_gate() -> None:
    generator = ScriptedGenerator({"analyst": [QuotaExceededError("429 Too Many Requests")] * 5 + [ANALYST_REPLY]})
    held_during_sleep: list[int] = []
    delays: list[float] = []
    gate_ref: list[ConcurrencyGate] = []

    async def sleep(delay: float) -> None:
        delays.append(delay)
        held_during_sleep.append(gate_ref[0].in_use)

    executor, store, gate = await _setup(generator, sleep=sleep)
    gate_ref.append(gate)

    outcome = await executor.execute("analyst_1", cancel=CancellationToken(), goal="Build a ledger")

    assert outcome.status == NodeStatus.COMPLETE
    assert delays == [3, 6, 12, 24, 30]
    assert held_during_sleep == [0, 0, 0, 0, 0]
    node = await store.get("analyst_1")
    assert node is not None
    assert node.status == NodeStatus.COMPLETE
    assert node.retry_count == 5
    assert gate.in_use == 0


@pytest.mark.asyncio
async def test_node_is_pending_while_backing_off() -> None:
    generator = ScriptedGenerator({"analyst": [RuntimeError("RESOURCE_EXHAUSTED: quota"), ANALYST_REPLY]})
    observed: list[NodeStatus] = []
    store_ref: list[GraphStore] = []

    async def sleep(delay: float) -> None:
        node = await store_ref[0].get("analyst_1")
        observed.append(node.status)

    executor, store, _ = await _setup(generator, sleep=sleep)
    store_ref.append(store)
    await executor.execute("analyst_1", cancel=CancellationToken())
    assert observed == [NodeStatus.PENDING]


@pytest.mark.asyncio
async def test_exhausted_quota_retries_fail_the_node() -> None:
    generator = ScriptedGenerator({"analyst": QuotaExceededError("rate limit")})
    sleep = RecordingSleep()
    executor, store, gate = await _setup(generator, sleep=sleep, scheduling={"quota_max_retries": 2})

    outcome = await executor.execute("analyst_1", cancel=CancellationToken())

    assert outcome.status == NodeStatus.ERROR
    assert sleep.delays == [3, 6]
    assert len(generator.calls) == 3
    node = await store.get("analyst_1")
    assert node is not None and node.status == NodeStatus.ERROR
    assert gate.in_use == 0


@pytest.mark.asyncio
async def test_red_flagged_output_is_regenerated_at_higher_temperature() -> None:
    short = json.dumps({"insight": "Use a queue.", "confidence": 90})
    generator = ScriptedGenerator({"analyst": [short, ANALYST_REPLY]})
    executor, store, _ = await _setup(generator)

    outcome = await executor.execute("analyst_1", cancel=CancellationToken())

    assert outcome.status == NodeStatus.COMPLETE
    calls = generator.calls_for("analyst")
    assert len(calls) == 2
    assert calls[0].options.temperature == 0.7
    assert calls[1].options.temperature == 0.9
    node = await store.get("analyst_1")
    assert node is not None
    assert node.data["validation_attempts"] == 2
    assert node.score == 90


@pytest.mark.asyncio
async def test_validation_gives_up_after_max_attempts_and_keeps_last_output() -> None:
    short = json.dumps({"insight": "Use a queue.", "confidence": 90})
    generator = ScriptedGenerator({"analyst": short})
    executor, store, _ = await _setup(generator)

    outcome = await executor.execute("analyst_1", cancel=CancellationToken())

    assert outcome.status == NodeStatus.COMPLETE
    assert len(generator.calls_for("analyst")) == 3
    node = await store.get("analyst_1")
    assert node is not None
    assert node.output == "Use a queue."
    assert node.data["red_flags"] == ["too_short"]


@pytest.mark.asyncio
async def test_provider_error_marks_node_failed_and_releases_gate() -> None:
    generator = ScriptedGenerator({"analyst": RuntimeError("connection refused")})
    executor, store, gate = await _setup(generator)

    outcome = await executor.execute("analyst_1", cancel=CancellationToken())

    assert outcome.status == NodeStatus.ERROR
    assert outcome.error == "connection refused"
    node = await store.get("analyst_1")
    assert node is not None
    assert node.status == NodeStatus.ERROR
    assert node.error == "connection refused"
    assert gate.in_use == 0


@pytest.mark.asyncio
async def test_cancel_during_backoff_rolls_node_back() -> None:
    generator = ScriptedGenerator({"analyst": QuotaExceededError("429")})
    cancel = CancellationToken()

    async def sleep(delay: float) -> None:
        cancel.cancel()

    executor, store, gate = await _setup(generator, sleep=sleep)
    outcome = await executor.execute("analyst_1", cancel=cancel)

    assert outcome.cancelled is True
    node = await store.get("analyst_1")
    assert node is not None and node.status == NodeStatus.PENDING
    assert gate.in_use == 0


@pytest.mark.asyncio
async def test_cancelled_run_never_reaches_provider() -> None:
    generator = ScriptedGenerator()
    executor, store, gate = await _setup(generator, scheduling={"max_concurrency": 1})
    await gate.acquire()
    cancel = CancellationToken()
    cancel.cancel()

    outcome = await executor.execute("analyst_1", cancel=cancel)

    assert outcome.cancelled is True
    assert generator.calls == []
    node = await store.get("analyst_1")
    assert node is not None and node.status == NodeStatus.PENDING
    assert gate.in_use == 1


@pytest.mark.asyncio
async def test_model_routing_per_kind() -> None:
    generator = ScriptedGenerator()
    executor, _, _ = await _setup(generator, models={"default": "llama3", "analyst": "mistral"})
    await executor.execute("analyst_1", cancel=CancellationToken())
    assert generator.calls[0].model == "mistral"


@pytest.mark.asyncio
async def test_memory_is_injected_and_recorded() -> None:
    documents = InMemoryDocumentStore()
    generator = ScriptedGenerator()
    executor, _, _ = await _setup(generator, documents=documents, memory={"enabled": True})
    memory = AgentMemoryManager(documents, make_settings(memory={"enabled": True}).memory)
    await memory.store("The Pragmatist", MemoryRecord(node_id="old", cycle=1, score=40, feedback="Cut scope harder."))

    await executor.execute("analyst_1", cancel=CancellationToken())

    prompt = generator.calls[0].prompt
    assert "PAST FEEDBACK & LEARNINGS:" in prompt
    assert "Cut scope harder." in prompt
    recalled = await memory.recall("The Pragmatist")
    assert [record.node_id for record in recalled][:2] == ["analyst_1", "old"]
    knowledge = await documents.query("knowledge_nodes", id="analyst_1")
    assert knowledge and knowledge[0]["layer"] == "lexical"
