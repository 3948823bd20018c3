from __future__ import annotations

from typing import Any, Literal

from ..core.config import KnowledgeSettings
from ..core.logging import get_logger
from ..db.document_store import DocumentStore

logger = get_logger(name=__name__)

KNOWLEDGE_NODES = "knowledge_nodes"
KNOWLEDGE_EDGES = "knowledge_edges"

Layer = Literal["subject", "domain", "lexical"]

LAYER_BY_KIND: dict[str, Layer] = {
    "architect": "subject",
    "synthesizer": "subject",
    "lead": "domain",
    "planner": "domain",
    "evaluator": "domain",
    "analyst": "lexical",
}


class KnowledgeGraphRecorder:
    """Write-only sink for the concept graph shown next to the task graph."""

    def __init__(self, documents: DocumentStore, settings: KnowledgeSettings) -> None:
        self._documents = documents
        self._settings = settings

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    async def add_node(
        self,
        node_id: str,
        label: str,
        layer: Layer,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if not self.enabled:
            return
        document = {
            "id": node_id,
            "label": label,
            "layer": layer,
            "content": content[:2_000],
            "metadata": dict(metadata or {}),
        }
        await self._documents.write({KNOWLEDGE_NODES: [document]})

    async def add_edge(self, source: str, target: str, relation: str, weight: float = 1.0) -> None:
        if not self.enabled:
            return
        document = {
            "id": f"{source}->{target}:{relation}",
            "source": source,
            "target": target,
            "relation": relation,
            "weight": weight,
        }
        await self._documents.write({KNOWLEDGE_EDGES: [document]})

    async def clear(self) -> None:
        await self._documents.delete([KNOWLEDGE_NODES, KNOWLEDGE_EDGES])
        logger.debug("knowledge_graph_cleared")


__all__ = ["KnowledgeGraphRecorder", "LAYER_BY_KIND"]
