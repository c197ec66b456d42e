from __future__ import annotations

"""Relational store for uploaded document records."""

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


class MetadataStoreError(RuntimeError):
    """Raised when metadata persistence fails."""
    pass


def build_engine(connection_uri: str) -> Any:
    """Create a SQLAlchemy engine; in-memory SQLite shares one connection across threads."""
    try:
        from sqlalchemy import create_engine
        from sqlalchemy.engine import make_url
        from sqlalchemy.pool import StaticPool
    except ImportError as exc:  # pragma: no cover - optional dependency
        raise MetadataStoreError("sqlalchemy is required to use the metadata store") from exc

    if connection_uri in {"sqlite://", "sqlite:///:memory:"}:
        return create_engine(
            connection_uri,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if connection_uri.startswith("sqlite"):
        database = make_url(connection_uri).database
        if database:
            Path(database).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(connection_uri, connect_args={"check_same_thread": False})
    return create_engine(connection_uri, pool_pre_ping=True)


@dataclass(frozen=True)
class DocumentRecord:
    """Uploaded document tracked alongside its ingestion job."""
    id: str
    name: str
    stored_path: str | None
    file_size: int
    file_type: str
    processed: bool
    created_at: datetime
    processed_at: datetime | None = None
    course_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "file_size": self.file_size,
            "file_type": self.file_type,
            "processed": self.processed,
            "course_id": self.course_id,
            "created_at": self.created_at.isoformat(),
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }


class DocumentStore:
    """Store document records in a SQL database."""
    def __init__(self, connection_uri: str) -> None:
        from sqlalchemy import Boolean, Column, DateTime, Integer, MetaData, String, Table, Text

        self._engine = build_engine(connection_uri)
        self._metadata = MetaData()
        self._table = Table(
            "documents",
            self._metadata,
            Column("id", String(64), primary_key=True),
            Column("name", String(255), nullable=False),
            Column("stored_path", Text, nullable=True),
            Column("file_size", Integer, nullable=False),
            Column("file_type", String(16), nullable=False),
            Column("processed", Boolean, nullable=False, default=False),
            Column("course_id", String(64), nullable=True),
            Column("created_at", DateTime(timezone=True), nullable=False),
            Column("processed_at", DateTime(timezone=True), nullable=True),
        )
        self._metadata.create_all(self._engine)

    def create(
        self,
        document_id: str,
        name: str,
        file_size: int,
        file_type: str,
        stored_path: str | None = None,
        course_id: str | None = None,
    ) -> DocumentRecord:
        record = DocumentRecord(
            id=document_id,
            name=name,
            stored_path=stored_path,
            file_size=file_size,
            file_type=file_type,
            processed=False,
            created_at=datetime.now(timezone.utc),
            course_id=course_id,
        )
        with self._engine.begin() as conn:
            conn.execute(
                self._table.insert().values(
                    id=record.id,
                    name=record.name,
                    stored_path=record.stored_path,
                    file_size=record.file_size,
                    file_type=record.file_type,
                    processed=False,
                    course_id=record.course_id,
                    created_at=record.created_at,
                )
            )
        return record

    def get(self, document_id: str) -> DocumentRecord | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                self._table.select().where(self._table.c.id == document_id)
            ).mappings().first()
        return _to_record(row) if row else None

    def list_documents(self, course_id: str | None = None) -> list[DocumentRecord]:
        query = self._table.select().order_by(self._table.c.created_at.desc())
        if course_id:
            query = query.where(self._table.c.course_id == course_id)
        with self._engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [_to_record(row) for row in rows]

    def mark_processed(self, document_id: str) -> bool:
        """Set ``processed``; repeated calls are harmless."""
        with self._engine.begin() as conn:
            result = conn.execute(
                self._table.update()
                .where(self._table.c.id == document_id)
                .values(processed=True, processed_at=datetime.now(timezone.utc))
            )
        return result.rowcount > 0

    def delete(self, document_id: str) -> bool:
        with self._engine.begin() as conn:
            result = conn.execute(self._table.delete().where(self._table.c.id == document_id))
        return result.rowcount > 0

    def counts(self) -> dict[str, int]:
        from sqlalchemy import func, select

        with self._engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(self._table)).scalar_one()
            processed = conn.execute(
                select(func.count()).select_from(self._table).where(self._table.c.processed.is_(True))
            ).scalar_one()
        return {"total": int(total), "processed": int(processed)}

    def ping(self) -> bool:
        from sqlalchemy import text

        with self._engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True


def _to_record(row: Any) -> DocumentRecord:
    return DocumentRecord(
        id=row["id"],
        name=row["name"],
        stored_path=row["stored_path"],
        file_size=int(row["file_size"]),
        file_type=row["file_type"],
        processed=bool(row["processed"]),
        created_at=_aware(row["created_at"]),
        processed_at=_aware(row["processed_at"]) if row["processed_at"] else None,
        course_id=row["course_id"],
    )


def _aware(value: datetime) -> datetime:
    """SQLite drops tzinfo on round-trip; stored values are always UTC."""
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
