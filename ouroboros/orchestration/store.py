from __future__ import annotations

import asyncio
from graphlib import CycleError, TopologicalSorter
from typing import Any, Iterable, Mapping

from ..core.errors import GraphIntegrityError
from ..core.logging import get_logger
from ..core.metrics import record_graph_size
from ..db.document_store import DocumentStore, InMemoryDocumentStore
from .enums import NodeStatus
from .state import Edge, GraphMutation, GraphSnapshot, Node, RoundRecord, edges_for, utcnow

logger = get_logger(name=__name__)

NODES = "nodes"
EDGES = "edges"
ROUNDS = "rounds"
GRAPH_ENTITIES = (NODES, EDGES, ROUNDS)


class GraphStore:
    """Single source of truth for the task graph.

    Every mutation is validated and applied under one lock, then written to
    the document store as one batch. Reads hand out deep copies.
    """

    def __init__(self, documents: DocumentStore | None = None) -> None:
        self._documents = documents or InMemoryDocumentStore()
        self._nodes: dict[str, Node] = {}
        self._edges: dict[str, Edge] = {}
        self._rounds: dict[str, RoundRecord] = {}
        self._lock = asyncio.Lock()

    @property
    def documents(self) -> DocumentStore:
        return self._documents

    async def load(self) -> int:
        """Hydrate from the document store; interrupted ``active`` nodes come back as ``pending``.

        Returns the number of nodes rolled back.
        """
        node_rows = await self._documents.query(NODES)
        edge_rows = await self._documents.query(EDGES)
        round_rows = await self._documents.query(ROUNDS)
        async with self._lock:
            self._nodes = {row["id"]: Node.model_validate(row) for row in node_rows}
            self._edges = {}
            for row in edge_rows:
                edge = Edge(source=row["source"], target=row["target"])
                self._edges[edge.key] = edge
            self._rounds = {}
            for row in round_rows:
                record = RoundRecord.model_validate(row)
                self._rounds[record.key] = record
            interrupted = [node for node in self._nodes.values() if node.status == NodeStatus.ACTIVE]
            for node in interrupted:
                node.status = NodeStatus.PENDING
                node.phase = None
                node.updated_at = utcnow()
            if interrupted:
                await self._persist(nodes=interrupted)
        if interrupted:
            logger.warning("graph_resume_rolled_back", nodes=[node.id for node in interrupted])
        logger.info("graph_loaded", nodes=len(self._nodes), edges=len(self._edges), rounds=len(self._rounds))
        return len(interrupted)

    async def get_all(self) -> GraphSnapshot:
        async with self._lock:
            return GraphSnapshot(
                nodes={node_id: node.model_copy(deep=True) for node_id, node in self._nodes.items()},
                edges=list(self._edges.values()),
                rounds={key: record.model_copy(deep=True) for key, record in self._rounds.items()},
            )

    async def get(self, node_id: str) -> Node | None:
        async with self._lock:
            node = self._nodes.get(node_id)
            return node.model_copy(deep=True) if node is not None else None

    async def get_by_status(self, status: NodeStatus) -> list[Node]:
        async with self._lock:
            return [node.model_copy(deep=True) for node in self._nodes.values() if node.status == status]

    async def count(self) -> int:
        async with self._lock:
            return len(self._nodes)

    async def upsert_nodes(self, nodes: Iterable[Node]) -> None:
        """Insert new nodes or replace existing ones, deriving edges from dependencies."""
        incoming = list(nodes)
        async with self._lock:
            fresh = [node for node in incoming if node.id not in self._nodes]
            updates = [node for node in incoming if node.id in self._nodes]
            await self._apply(GraphMutation(nodes=fresh, updates=updates))

    async def upsert_edges(self, edges: Iterable[Edge]) -> None:
        async with self._lock:
            await self._apply(GraphMutation(edges=list(edges)))

    async def upsert_round(self, record: RoundRecord) -> None:
        async with self._lock:
            await self._apply(GraphMutation(rounds=[record]))

    async def commit(self, mutation: GraphMutation) -> None:
        if mutation.is_empty():
            return
        async with self._lock:
            await self._apply(mutation)

    async def update_node(self, node_id: str, **changes: Any) -> Node:
        """Apply field changes to one node atomically and return the stored copy."""
        async with self._lock:
            current = self._nodes.get(node_id)
            if current is None:
                raise GraphIntegrityError(f"unknown node '{node_id}'")
            payload = current.model_dump()
            payload.update(changes)
            payload["updated_at"] = utcnow()
            updated = Node.model_validate(payload)
            await self._apply(GraphMutation(updates=[updated]))
            return updated.model_copy(deep=True)

    async def clear(self) -> None:
        async with self._lock:
            self._nodes.clear()
            self._edges.clear()
            self._rounds.clear()
            await self._documents.delete(GRAPH_ENTITIES)
        record_graph_size({status.value: 0 for status in NodeStatus})
        logger.info("graph_cleared")

    async def _apply(self, mutation: GraphMutation) -> None:
        # caller holds the lock
        for node in mutation.nodes:
            if node.id in self._nodes:
                raise GraphIntegrityError(f"duplicate node id '{node.id}'")
        batch_ids = [node.id for node in mutation.nodes]
        if len(set(batch_ids)) != len(batch_ids):
            raise GraphIntegrityError("duplicate node ids within one batch")
        for node in mutation.updates:
            if node.id not in self._nodes:
                raise GraphIntegrityError(f"cannot update unknown node '{node.id}'")

        staged_nodes = dict(self._nodes)
        for node in [*mutation.nodes, *mutation.updates]:
            staged_nodes[node.id] = node.model_copy(deep=True)

        touched = [*mutation.nodes, *mutation.updates]
        for node in touched:
            missing = [dep for dep in node.dependencies if dep not in staged_nodes]
            if missing:
                raise GraphIntegrityError(f"node '{node.id}' depends on unknown nodes {missing}")
            if node.id in node.dependencies:
                raise GraphIntegrityError(f"node '{node.id}' depends on itself")

        staged_edges = dict(self._edges)
        new_edges: list[Edge] = []
        for edge in [*mutation.edges, *edges_for(touched)]:
            if edge.source not in staged_nodes or edge.target not in staged_nodes:
                raise GraphIntegrityError(f"edge {edge.key} references an unknown node")
            if edge.key not in staged_edges:
                staged_edges[edge.key] = edge
                new_edges.append(edge)

        if touched or new_edges:
            self._assert_acyclic(staged_nodes, staged_edges.values())

        await self._persist(nodes=touched, edges=new_edges, rounds=mutation.rounds)
        self._nodes = staged_nodes
        self._edges = staged_edges
        for record in mutation.rounds:
            self._rounds[record.key] = record.model_copy(deep=True)
        if touched:
            counts = {status.value: 0 for status in NodeStatus}
            for node in self._nodes.values():
                counts[NodeStatus(node.status).value] += 1
            record_graph_size(counts)

    @staticmethod
    def _assert_acyclic(nodes: Mapping[str, Node], edges: Iterable[Edge]) -> None:
        graph: dict[str, set[str]] = {node_id: set(node.dependencies) for node_id, node in nodes.items()}
        for edge in edges:
            graph.setdefault(edge.target, set()).add(edge.source)
        try:
            TopologicalSorter(graph).prepare()
        except CycleError as exc:
            raise GraphIntegrityError(f"mutation would introduce a cycle: {exc.args[1]}") from exc

    async def _persist(
        self,
        *,
        nodes: Iterable[Node] = (),
        edges: Iterable[Edge] = (),
        rounds: Iterable[RoundRecord] = (),
    ) -> None:
        batch: dict[str, list[dict[str, Any]]] = {}
        node_docs = [node.model_dump(mode="json") for node in nodes]
        if node_docs:
            batch[NODES] = node_docs
        edge_docs = [{"id": edge.key, **edge.model_dump(mode="json")} for edge in edges]
        if edge_docs:
            batch[EDGES] = edge_docs
        round_docs = [{"id": record.key, **record.model_dump(mode="json")} for record in rounds]
        if round_docs:
            batch[ROUNDS] = round_docs
        if batch:
            await self._documents.write(batch)


__all__ = ["GraphStore"]
