from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from ..core.config import MemorySettings
from ..core.logging import get_logger
from ..db.document_store import DocumentStore

logger = get_logger(name=__name__)

MEMORIES = "memories"


class MemoryRecord(BaseModel):
    node_id: str
    cycle: int = Field(0, ge=0)
    score: float = Field(0.0, ge=0.0, le=100.0)
    feedback: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AgentMemoryManager:
    """Per-persona learning log: newest records first, bounded per persona.

    Records are persisted as one document per persona so trimming is a
    single upsert.
    """

    def __init__(self, documents: DocumentStore, settings: MemorySettings) -> None:
        self._documents = documents
        self._settings = settings

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    async def recall(self, persona: str, *, limit: int | None = None) -> list[MemoryRecord]:
        rows = await self._documents.query(MEMORIES, id=persona)
        if not rows:
            return []
        records = [MemoryRecord.model_validate(item) for item in rows[0].get("records", [])]
        records.sort(key=lambda record: record.timestamp, reverse=True)
        return records[: limit or self._settings.max_records_per_persona]

    async def inject_context(self, persona: str, instruction: str) -> str:
        if not self.enabled or not persona:
            return instruction
        memories = await self.recall(persona, limit=self._settings.inject_limit)
        if not memories:
            return instruction
        lines = "\n".join(
            f"- [Cycle {record.cycle}] (Score: {record.score:.0f}): {record.feedback}" for record in memories
        )
        return f"{instruction}\n\nPAST FEEDBACK & LEARNINGS:\n{lines}"

    async def store(self, persona: str, record: MemoryRecord) -> None:
        if not self.enabled or not persona:
            return
        existing = await self.recall(persona, limit=self._settings.max_records_per_persona)
        merged = [record, *existing]
        merged.sort(key=lambda item: item.timestamp, reverse=True)
        kept = merged[: self._settings.max_records_per_persona]
        payload: dict[str, Any] = {
            "id": persona,
            "records": [item.model_dump(mode="json") for item in kept],
        }
        await self._documents.write({MEMORIES: [payload]})
        logger.debug("memory_stored", persona=persona, node_id=record.node_id, kept=len(kept))

    async def clear(self) -> None:
        await self._documents.delete([MEMORIES])


__all__ = ["AgentMemoryManager", "MemoryRecord"]
