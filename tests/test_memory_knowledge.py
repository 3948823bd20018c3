from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from ouroboros.core.config import KnowledgeSettings, MemorySettings
from ouroboros.db.document_store import InMemoryDocumentStore
from ouroboros.services.knowledge import KNOWLEDGE_EDGES, KNOWLEDGE_NODES, KnowledgeGraphRecorder
from ouroboros.services.memory import AgentMemoryManager, MemoryRecord


def _record(node_id: str, minutes_ago: int, score: float = 70.0) -> MemoryRecord:
    timestamp = datetime.now(timezone.utc) - timedelta(minutes=minutes_ago)
    return MemoryRecord(node_id=node_id, cycle=1, score=score, feedback=f"feedback for {node_id}", timestamp=timestamp)


@pytest.mark.asyncio
async def test_memory_keeps_newest_records_per_persona() -> None:
    memory = AgentMemoryManager(InMemoryDocumentStore(), MemorySettings(enabled=True, max_records_per_persona=3))
    for index in range(5):
        await memory.store("The Skeptic", _record(f"n{index}", minutes_ago=10 - index))

    recalled = await memory.recall("The Skeptic")
    assert [record.node_id for record in recalled] == ["n4", "n3", "n2"]
    assert await memory.recall("The Visionary") == []


@pytest.mark.asyncio
async def test_inject_context_appends_recent_feedback() -> None:
    memory = AgentMemoryManager(InMemoryDocumentStore(), MemorySettings(enabled=True, inject_limit=1))
    await memory.store("The Skeptic", _record("old", minutes_ago=5, score=35))
    await memory.store("The Skeptic", _record("new", minutes_ago=1, score=88))

    prompt = await memory.inject_context("The Skeptic", "Find the risks.")

    assert prompt.startswith("Find the risks.\n\nPAST FEEDBACK & LEARNINGS:\n")
    assert "- [Cycle 1] (Score: 88): feedback for new" in prompt
    assert "feedback for old" not in prompt
    assert await memory.inject_context("Nobody", "Plain.") == "Plain."


@pytest.mark.asyncio
async def test_disabled_memory_is_inert() -> None:
    documents = InMemoryDocumentStore()
    memory = AgentMemoryManager(documents, MemorySettings(enabled=False))
    await memory.store("The Skeptic", _record("n1", minutes_ago=1))
    assert await documents.query("memories") == []
    assert await memory.inject_context("The Skeptic", "Find the risks.") == "Find the risks."


@pytest.mark.asyncio
async def test_knowledge_recorder_writes_and_clears() -> None:
    documents = InMemoryDocumentStore()
    recorder = KnowledgeGraphRecorder(documents, KnowledgeSettings())
    await recorder.add_node("analyst_1", "The Pragmatist", "lexical", "x" * 5_000, {"score": 80})
    await recorder.add_node("lead_ux", "UX Lead", "domain", "summary")
    await recorder.add_edge("analyst_1", "lead_ux", "informs")

    nodes = await documents.query(KNOWLEDGE_NODES)
    assert {node["id"] for node in nodes} == {"analyst_1", "lead_ux"}
    analyst = next(node for node in nodes if node["id"] == "analyst_1")
    assert len(analyst["content"]) == 2_000
    assert analyst["metadata"] == {"score": 80}
    edges = await documents.query(KNOWLEDGE_EDGES)
    assert edges == [
        {"id": "analyst_1->lead_ux:informs", "source": "analyst_1", "target": "lead_ux", "relation": "informs", "weight": 1.0}
    ]

    await recorder.clear()
    assert await documents.query(KNOWLEDGE_NODES) == []
    assert await documents.query(KNOWLEDGE_EDGES) == []


@pytest.mark.asyncio
async def test_disabled_knowledge_recorder_skips_writes() -> None:
    documents = InMemoryDocumentStore()
    recorder = KnowledgeGraphRecorder(documents, KnowledgeSettings(enabled=False))
    await recorder.add_node("analyst_1", "The Pragmatist", "lexical", "content")
    await recorder.add_edge("analyst_1", "lead_ux", "informs")
    assert await documents.query(KNOWLEDGE_NODES) == []
    assert await documents.query(KNOWLEDGE_EDGES) == []
