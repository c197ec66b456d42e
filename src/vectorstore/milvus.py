from __future__ import annotations

"""Milvus-backed vector store for chunk embeddings."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from src.rag.embeddings import EmbeddingConfigError
from src.rag.types import Document, SearchResult
from src.vectorstore.inmemory import VectorStoreError

logger = logging.getLogger(__name__)

_OUTPUT_FIELDS = ["chunk_id", "document_id", "content", "metadata"]


@dataclass
class MilvusConfig:
    """Configuration for Milvus connection and indexing."""
    uri: str
    token: str | None
    collection: str
    consistency: str
    index_type: str
    metric_type: str
    nlist: int
    nprobe: int
    max_content_length: int = 65535


@dataclass
class MilvusVectorStore:
    """Dense-vector store over a Milvus collection, one row per chunk."""
    dimension: int
    config: MilvusConfig
    collection: Any = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.dimension <= 0:
            raise EmbeddingConfigError("Embedding dimension must be set before initializing Milvus")
        if self.collection is not None:
            return
        from pymilvus import connections

        try:
            connections.connect(alias="default", uri=self.config.uri, token=self.config.token)
            self.ensure_collection()
        except EmbeddingConfigError:
            raise
        except Exception as exc:
            raise VectorStoreError(f"Unable to connect to Milvus: {exc}") from exc

    def ensure_collection(self) -> None:
        """Create the collection schema and index when missing."""
        from pymilvus import Collection, CollectionSchema, DataType, FieldSchema, utility

        name = self.config.collection
        if utility.has_collection(name):
            self.collection = Collection(name, consistency_level=self.config.consistency)
            existing = self._existing_embedding_dim()
            if existing is not None and existing != self.dimension:
                raise EmbeddingConfigError(
                    f"Milvus collection dimension {existing} does not match embedder dimension "
                    f"{self.dimension}; set EMBEDDING_DIMENSION or use a new MILVUS_COLLECTION"
                )
            return
        fields = [
            FieldSchema(name="chunk_id", dtype=DataType.VARCHAR, is_primary=True, max_length=256),
            FieldSchema(name="document_id", dtype=DataType.VARCHAR, max_length=128),
            FieldSchema(name="content", dtype=DataType.VARCHAR, max_length=self.config.max_content_length),
            FieldSchema(name="metadata", dtype=DataType.JSON),
            FieldSchema(name="embedding", dtype=DataType.FLOAT_VECTOR, dim=self.dimension),
        ]
        schema = CollectionSchema(fields=fields, description="Learning hub document chunks")
        self.collection = Collection(name, schema, consistency_level=self.config.consistency)
        self.collection.create_index(
            field_name="embedding",
            index_params={
                "index_type": self.config.index_type,
                "metric_type": self.config.metric_type,
                "params": {"nlist": self.config.nlist},
            },
        )

    def _existing_embedding_dim(self) -> int | None:
        for schema_field in self.collection.schema.fields:
            if schema_field.name != "embedding":
                continue
            params = getattr(schema_field, "params", None) or {}
            dim = params.get("dim") if isinstance(params, dict) else None
            return int(dim) if dim is not None else None
        return None

    def upsert(self, documents: list[Document], vectors: list[list[float]]) -> int:
        if len(documents) != len(vectors):
            raise VectorStoreError("documents and vectors must have the same length")
        if not documents:
            return 0
        rows = [
            {
                "chunk_id": document.doc_id,
                "document_id": str(document.metadata.get("document_id", "")),
                "content": document.content[: self.config.max_content_length],
                "metadata": json.loads(json.dumps(document.metadata, default=str)),
                "embedding": vector,
            }
            for document, vector in zip(documents, vectors)
        ]
        try:
            self.collection.upsert(rows)
            self.collection.flush()
        except Exception as exc:
            raise VectorStoreError(f"Milvus upsert failed: {exc}") from exc
        return len(rows)

    def search_by_vector(self, vector: list[float], top_k: int = 4) -> list[SearchResult]:
        if top_k <= 0:
            return []
        try:
            self.collection.load()
            results = self.collection.search(
                data=[vector],
                anns_field="embedding",
                param={"metric_type": self.config.metric_type, "params": {"nprobe": self.config.nprobe}},
                limit=top_k,
                output_fields=_OUTPUT_FIELDS,
            )
        except Exception as exc:
            raise VectorStoreError(f"Milvus search failed: {exc}") from exc
        hits: list[SearchResult] = []
        for hit in results[0]:
            entity = hit.entity
            metadata = entity.get("metadata") or {}
            if isinstance(metadata, str):
                metadata = json.loads(metadata)
            document = Document(
                doc_id=entity.get("chunk_id"),
                content=entity.get("content") or "",
                metadata=metadata,
            )
            hits.append(SearchResult(document=document, score=float(hit.score)))
        return hits

    def delete_by_document(self, document_id: str) -> int:
        safe_id = document_id.replace('"', "")
        try:
            result = self.collection.delete(f'document_id == "{safe_id}"')
            self.collection.flush()
        except Exception as exc:
            raise VectorStoreError(f"Milvus delete failed: {exc}") from exc
        return int(getattr(result, "delete_count", 0) or 0)

    def count(self) -> int:
        return int(self.collection.num_entities)

    def stats(self) -> dict[str, int | str]:
        try:
            count = self.count()
        except Exception as exc:
            logger.warning("milvus_stats_failed", extra={"detail": str(exc)})
            count = -1
        return {
            "backend": "milvus",
            "document_count": count,
            "embedding_dimension": self.dimension,
            "collection": self.config.collection,
        }

    def health(self) -> dict[str, str | bool]:
        try:
            self.count()
        except Exception as exc:
            return {"backend": "milvus", "ok": False, "detail": str(exc)}
        return {"backend": "milvus", "ok": True, "collection": self.config.collection}
