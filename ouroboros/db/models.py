from __future__ import annotations

from sqlalchemy import JSON, BigInteger, Column, DateTime, Index, Integer, MetaData, String, Table, UniqueConstraint, func

metadata = MetaData()

documents = Table(
    "documents",
    metadata,
    Column("id", BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True),
    Column("entity", String(length=64), nullable=False),
    Column("doc_id", String(length=255), nullable=False),
    Column("payload", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column(
        "updated_at",
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    ),
    UniqueConstraint("entity", "doc_id", name="uq_documents_entity_doc_id"),
)
Index("ix_documents_entity", documents.c.entity)

__all__ = ["documents", "metadata"]
