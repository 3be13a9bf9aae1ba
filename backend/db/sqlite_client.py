"""
SQLite item store for one agent.

This module implements the durable memory item store with:
- One row per (agent_id, id) in ``memory_items``
- An FTS5 index (``memory_fts``) holding rows for active items only
- Optional dense vectors (``memory_embeddings``) for active items only

Every mutation touches the item row and both indexes inside one session
transaction, so the index invariants hold atomically. The engine runs with a
single pooled connection; reads and writes are serialized on it.
"""

import json
import math
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple, Union

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    delete,
    event,
    func,
    select,
    text,
    update,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from memory_errors import InvalidInputError, NotFoundError, PolicyDeniedError, StorageError
from memory_models import (
    STATUS_ACTIVE,
    STATUS_ARCHIVED,
    STATUS_FORGOTTEN,
    Health,
    MemoryItem,
    SearchParams,
    as_utc,
    generate_item_id,
    normalize_item,
    normalize_search_params,
    normalize_status,
    utc_now,
    valid_agent_id,
)
from .migration_runner import apply_pending_migrations

Base = declarative_base()

BUSY_TIMEOUT_SEC = 5.0
DB_FILE_MODE = 0o600
DB_DIR_MODE = 0o755

DEFAULT_LIST_LIMIT = 1000
MAX_LIST_LIMIT = 20_000
DEFAULT_EMBEDDING_LIMIT = 8
MAX_EMBEDDING_LIMIT = 100


def _to_db_time(value: datetime) -> datetime:
    """Naive UTC for storage; rows compare lexicographically."""
    return as_utc(value).replace(tzinfo=None)


# =============================================================================
# ORM Models
# =============================================================================
# Tables are created by the SQL migrations; the models only map them.


class MemoryItemRow(Base):
    __tablename__ = "memory_items"

    id = Column(String, primary_key=True)
    agent_id = Column(String, nullable=False)
    kind = Column(String, nullable=False)
    title = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    importance = Column(Integer, nullable=False)
    confidence = Column(Float, nullable=False)
    status = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class MemoryEmbeddingRow(Base):
    __tablename__ = "memory_embeddings"

    memory_id = Column(String, primary_key=True)
    agent_id = Column(String, nullable=False)
    model = Column(String, nullable=False)
    vector_json = Column(Text, nullable=False)
    updated_at = Column(DateTime, nullable=False)


_ITEM_COLUMNS = (
    MemoryItemRow.id,
    MemoryItemRow.agent_id,
    MemoryItemRow.kind,
    MemoryItemRow.title,
    MemoryItemRow.content,
    MemoryItemRow.importance,
    MemoryItemRow.confidence,
    MemoryItemRow.status,
    MemoryItemRow.created_at,
    MemoryItemRow.updated_at,
)


def _row_to_item(row: MemoryItemRow) -> MemoryItem:
    return MemoryItem(
        id=row.id,
        agent_id=row.agent_id,
        kind=row.kind,
        title=row.title,
        content=row.content,
        importance=int(row.importance),
        confidence=float(row.confidence),
        status=row.status,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def _is_missing_table(exc: BaseException) -> bool:
    return isinstance(exc, OperationalError) and "no such table" in str(exc).lower()


def build_fts_query(query: str) -> str:
    """Quote each whitespace token and AND-join them."""
    tokens = []
    for raw in (query or "").split():
        token = raw.replace('"', "").strip()
        if token:
            tokens.append(f'"{token}"')
    return " AND ".join(tokens)


def cosine_similarity(v1: Sequence[float], v2: Sequence[float]) -> float:
    if not v1 or len(v1) != len(v2):
        return 0.0
    dot = 0.0
    norm1 = 0.0
    norm2 = 0.0
    for a, b in zip(v1, v2):
        dot += a * b
        norm1 += a * a
        norm2 += b * b
    if norm1 == 0 or norm2 == 0:
        return 0.0
    return dot / (math.sqrt(norm1) * math.sqrt(norm2))


def _apply_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute(f"PRAGMA busy_timeout = {int(BUSY_TIMEOUT_SEC * 1000)}")
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.close()


class SQLiteItemStore:
    """
    Async item store scoped to one agent.

    Core operations:
    - upsert / update: write the row and resync the FTS row
    - forget / archive: retire an active item and drop its index rows
    - search / search_by_embedding: lexical and vector recall
    - health / vacuum: status counts and compaction
    """

    def __init__(self, db_path: Union[str, Path], agent_id: str):
        if not valid_agent_id(agent_id):
            raise InvalidInputError(
                f"invalid agent id: {agent_id!r}", code="invalid_agent_id"
            )
        self.db_path = Path(db_path)
        self.agent_id = agent_id.strip()
        self.database_url = f"sqlite+aiosqlite:///{self.db_path}"
        self.engine = create_async_engine(
            self.database_url,
            echo=False,
            pool_size=1,
            max_overflow=0,
            connect_args={"timeout": BUSY_TIMEOUT_SEC},
        )
        event.listen(self.engine.sync_engine, "connect", _apply_sqlite_pragmas)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init_db(self) -> List[str]:
        """Create the database file if needed and apply pending migrations."""
        self.db_path.parent.mkdir(mode=DB_DIR_MODE, parents=True, exist_ok=True)
        applied = await apply_pending_migrations(self.db_path)
        if self.db_path.exists():
            os.chmod(self.db_path, DB_FILE_MODE)
        return applied

    async def close(self) -> None:
        """Close the database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Transactional session; storage errors surface as StorageError."""
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise StorageError(f"storage operation failed: {exc}") from exc
            except BaseException:
                await session.rollback()
                raise

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def upsert(self, item: MemoryItem) -> MemoryItem:
        async with self.session() as session:
            return await self._write_item(session, item, require_existing=False)

    async def update(self, item: MemoryItem) -> MemoryItem:
        """Like upsert, but the row must already exist (created_at is kept)."""
        async with self.session() as session:
            return await self._write_item(session, item, require_existing=True)

    async def _write_item(
        self, session: AsyncSession, item: MemoryItem, *, require_existing: bool
    ) -> MemoryItem:
        item = normalize_item(item)
        if not item.agent_id:
            item.agent_id = self.agent_id
        if item.agent_id != self.agent_id:
            raise PolicyDeniedError(
                "cross-agent write denied", code="cross_agent_write"
            )
        if require_existing and not item.id:
            raise InvalidInputError("id is required", code="id_required")
        if not item.id:
            item.id = generate_item_id()
        if not item.title:
            item.title = item.kind
        if item.status == STATUS_ACTIVE and not item.content:
            raise InvalidInputError(
                "content is required for active items", code="content_required"
            )

        existing = (
            await session.execute(
                select(MemoryItemRow.agent_id, MemoryItemRow.created_at).where(
                    MemoryItemRow.id == item.id
                )
            )
        ).first()
        if existing is not None and existing.agent_id != self.agent_id:
            raise PolicyDeniedError("cross-agent write denied", code="cross_agent_write")
        if existing is None and require_existing:
            raise NotFoundError(f"memory item not found: {item.id}", code="not_found")

        now = utc_now()
        item.created_at = as_utc(existing.created_at) if existing is not None else now
        item.updated_at = now

        values = {
            "id": item.id,
            "agent_id": item.agent_id,
            "kind": item.kind,
            "title": item.title,
            "content": item.content,
            "importance": item.importance,
            "confidence": item.confidence,
            "status": item.status,
            "created_at": _to_db_time(item.created_at),
            "updated_at": _to_db_time(item.updated_at),
        }
        stmt = sqlite_insert(MemoryItemRow).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[MemoryItemRow.id],
            set_={
                "kind": stmt.excluded.kind,
                "title": stmt.excluded.title,
                "content": stmt.excluded.content,
                "importance": stmt.excluded.importance,
                "confidence": stmt.excluded.confidence,
                "status": stmt.excluded.status,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await session.execute(stmt)
        await self._sync_fts(session, item)
        if item.status != STATUS_ACTIVE:
            await self._delete_embedding(session, item.id)
        return item

    async def _sync_fts(self, session: AsyncSession, item: MemoryItem) -> None:
        await session.execute(
            text("DELETE FROM memory_fts WHERE id = :id"), {"id": item.id}
        )
        if item.status != STATUS_ACTIVE:
            return
        await session.execute(
            text(
                "INSERT INTO memory_fts(id, title, content) "
                "VALUES (:id, :title, :content)"
            ),
            {"id": item.id, "title": item.title, "content": item.content},
        )

    async def _delete_embedding(self, session: AsyncSession, memory_id: str) -> None:
        await session.execute(
            delete(MemoryEmbeddingRow).where(
                MemoryEmbeddingRow.memory_id == memory_id,
                MemoryEmbeddingRow.agent_id == self.agent_id,
            )
        )

    async def forget(self, memory_id: str) -> bool:
        return await self._retire(memory_id, STATUS_FORGOTTEN)

    async def archive(self, memory_id: str) -> bool:
        return await self._retire(memory_id, STATUS_ARCHIVED)

    async def _retire(self, memory_id: str, status: str) -> bool:
        memory_id = (memory_id or "").strip()
        if not memory_id:
            raise InvalidInputError("id is required", code="id_required")
        async with self.session() as session:
            result = await session.execute(
                update(MemoryItemRow)
                .where(
                    MemoryItemRow.id == memory_id,
                    MemoryItemRow.agent_id == self.agent_id,
                    MemoryItemRow.status == STATUS_ACTIVE,
                )
                .values(status=status, updated_at=_to_db_time(utc_now()))
            )
            if not result.rowcount:
                return False
            await session.execute(
                text("DELETE FROM memory_fts WHERE id = :id"), {"id": memory_id}
            )
            await self._delete_embedding(session, memory_id)
            return True

    async def upsert_embedding(
        self, memory_id: str, model: str, vector: Sequence[float]
    ) -> bool:
        """Store a vector for an active item; False when the item is not active here."""
        memory_id = (memory_id or "").strip()
        model = (model or "").strip()
        if not memory_id:
            raise InvalidInputError("memory id is required", code="id_required")
        if not model:
            raise InvalidInputError("embedding model is required", code="model_required")
        if not vector:
            raise InvalidInputError("embedding vector is required", code="vector_required")
        try:
            vector_json = json.dumps([float(value) for value in vector])
        except (TypeError, ValueError) as exc:
            raise InvalidInputError(
                "embedding vector must be numeric", code="vector_invalid"
            ) from exc

        async with self.session() as session:
            active = await session.scalar(
                select(func.count())
                .select_from(MemoryItemRow)
                .where(
                    MemoryItemRow.id == memory_id,
                    MemoryItemRow.agent_id == self.agent_id,
                    MemoryItemRow.status == STATUS_ACTIVE,
                )
            )
            if not active:
                return False
            stmt = sqlite_insert(MemoryEmbeddingRow).values(
                memory_id=memory_id,
                agent_id=self.agent_id,
                model=model,
                vector_json=vector_json,
                updated_at=_to_db_time(utc_now()),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[MemoryEmbeddingRow.memory_id],
                set_={
                    "model": stmt.excluded.model,
                    "vector_json": stmt.excluded.vector_json,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            await session.execute(stmt)
            return True

    async def vacuum(self) -> None:
        try:
            async with self.engine.connect() as conn:
                conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
                await conn.execute(text("VACUUM"))
        except SQLAlchemyError as exc:
            raise StorageError(f"vacuum failed: {exc}") from exc

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, memory_id: str) -> Tuple[Optional[MemoryItem], bool]:
        memory_id = (memory_id or "").strip()
        if not memory_id:
            raise InvalidInputError("id is required", code="id_required")
        async with self.session() as session:
            row = await session.scalar(
                select(MemoryItemRow).where(
                    MemoryItemRow.id == memory_id,
                    MemoryItemRow.agent_id == self.agent_id,
                )
            )
        if row is None:
            return None, False
        return _row_to_item(row), True

    async def list_items(
        self, status: str = STATUS_ACTIVE, limit: int = DEFAULT_LIST_LIMIT
    ) -> List[MemoryItem]:
        status = normalize_status(status)
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            limit = DEFAULT_LIST_LIMIT
        if limit <= 0:
            limit = DEFAULT_LIST_LIMIT
        limit = min(limit, MAX_LIST_LIMIT)
        async with self.session() as session:
            rows = (
                await session.scalars(
                    select(MemoryItemRow)
                    .where(
                        MemoryItemRow.agent_id == self.agent_id,
                        MemoryItemRow.status == status,
                    )
                    .order_by(MemoryItemRow.updated_at.desc())
                    .limit(limit)
                )
            ).all()
        return [_row_to_item(row) for row in rows]

    async def search(self, params: SearchParams) -> List[MemoryItem]:
        """Lexical recall: ranked FTS match, or importance order for an empty query."""
        params = normalize_search_params(params)
        if not params.query:
            return await self._search_without_query(params)

        fts_query = build_fts_query(params.query)
        if not fts_query:
            return []
        statement = (
            text(
                "SELECT m.id, m.agent_id, m.kind, m.title, m.content, m.importance, "
                "m.confidence, m.status, m.created_at, m.updated_at "
                "FROM memory_fts f "
                "JOIN memory_items m ON m.id = f.id "
                "WHERE m.agent_id = :agent_id "
                "AND m.status = :status "
                "AND m.importance >= :min_importance "
                "AND memory_fts MATCH :query "
                "ORDER BY bm25(memory_fts), m.importance DESC, m.updated_at DESC "
                "LIMIT :limit"
            )
            .bindparams(
                agent_id=self.agent_id,
                status=params.status,
                min_importance=params.min_importance,
                query=fts_query,
                limit=params.limit,
            )
            .columns(*_ITEM_COLUMNS)
        )
        async with self.session() as session:
            try:
                rows = (
                    await session.scalars(
                        select(MemoryItemRow).from_statement(statement)
                    )
                ).all()
            except OperationalError as exc:
                if _is_missing_table(exc):
                    return []
                raise
        return [_row_to_item(row) for row in rows]

    async def _search_without_query(self, params: SearchParams) -> List[MemoryItem]:
        async with self.session() as session:
            rows = (
                await session.scalars(
                    select(MemoryItemRow)
                    .where(
                        MemoryItemRow.agent_id == self.agent_id,
                        MemoryItemRow.status == params.status,
                        MemoryItemRow.importance >= params.min_importance,
                    )
                    .order_by(
                        MemoryItemRow.importance.desc(),
                        MemoryItemRow.updated_at.desc(),
                    )
                    .limit(params.limit)
                )
            ).all()
        return [_row_to_item(row) for row in rows]

    async def search_by_embedding(
        self,
        query_vector: Sequence[float],
        limit: int = DEFAULT_EMBEDDING_LIMIT,
        min_importance: int = 1,
        status: str = STATUS_ACTIVE,
    ) -> List[MemoryItem]:
        """Rank stored vectors by cosine similarity; newer items win ties."""
        if not query_vector:
            return []
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            limit = DEFAULT_EMBEDDING_LIMIT
        if limit <= 0:
            limit = DEFAULT_EMBEDDING_LIMIT
        limit = min(limit, MAX_EMBEDDING_LIMIT)
        try:
            min_importance = max(1, int(min_importance))
        except (TypeError, ValueError):
            min_importance = 1
        status = normalize_status(status)

        async with self.session() as session:
            try:
                rows = (
                    await session.execute(
                        select(MemoryItemRow, MemoryEmbeddingRow.vector_json)
                        .join(
                            MemoryEmbeddingRow,
                            MemoryEmbeddingRow.memory_id == MemoryItemRow.id,
                        )
                        .where(
                            MemoryItemRow.agent_id == self.agent_id,
                            MemoryItemRow.status == status,
                            MemoryItemRow.importance >= min_importance,
                        )
                    )
                ).all()
            except OperationalError as exc:
                if _is_missing_table(exc):
                    return []
                raise

        candidates: List[Tuple[float, MemoryItem]] = []
        for row, vector_json in rows:
            try:
                vector = [float(value) for value in json.loads(vector_json)]
            except (TypeError, ValueError):
                continue
            score = cosine_similarity(query_vector, vector)
            if math.isnan(score) or score <= 0:
                continue
            candidates.append((score, _row_to_item(row)))

        epoch = datetime.min.replace(tzinfo=timezone.utc)
        candidates.sort(
            key=lambda pair: (pair[0], pair[1].updated_at or epoch), reverse=True
        )
        return [item for _, item in candidates[:limit]]

    async def health(self) -> Health:
        async with self.session() as session:
            rows = (
                await session.execute(
                    select(MemoryItemRow.status, func.count())
                    .where(MemoryItemRow.agent_id == self.agent_id)
                    .group_by(MemoryItemRow.status)
                )
            ).all()
        counts: Dict[str, int] = {status: int(count) for status, count in rows}
        try:
            size_bytes = os.path.getsize(self.db_path)
        except OSError:
            size_bytes = 0
        active = counts.get(STATUS_ACTIVE, 0)
        forgotten = counts.get(STATUS_FORGOTTEN, 0)
        archived = counts.get(STATUS_ARCHIVED, 0)
        return Health(
            db_path=str(self.db_path),
            db_size_bytes=size_bytes,
            total_items=active + forgotten + archived,
            active_items=active,
            forgotten_items=forgotten,
            archived_items=archived,
        )

    async def embedding_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"vector_count": 0, "active_vector_count": 0, "models": {}}
        async with self.session() as session:
            try:
                stats["vector_count"] = int(
                    await session.scalar(
                        select(func.count())
                        .select_from(MemoryEmbeddingRow)
                        .where(MemoryEmbeddingRow.agent_id == self.agent_id)
                    )
                    or 0
                )
                stats["active_vector_count"] = int(
                    await session.scalar(
                        select(func.count())
                        .select_from(MemoryEmbeddingRow)
                        .join(
                            MemoryItemRow,
                            MemoryItemRow.id == MemoryEmbeddingRow.memory_id,
                        )
                        .where(
                            MemoryEmbeddingRow.agent_id == self.agent_id,
                            MemoryItemRow.agent_id == self.agent_id,
                            MemoryItemRow.status == STATUS_ACTIVE,
                        )
                    )
                    or 0
                )
                rows = (
                    await session.execute(
                        select(MemoryEmbeddingRow.model, func.count())
                        .where(MemoryEmbeddingRow.agent_id == self.agent_id)
                        .group_by(MemoryEmbeddingRow.model)
                    )
                ).all()
            except OperationalError as exc:
                if _is_missing_table(exc):
                    return stats
                raise
        stats["models"] = {str(model).strip(): int(count) for model, count in rows}
        return stats


@asynccontextmanager
async def open_item_store(
    db_path: Union[str, Path], agent_id: str
) -> AsyncIterator[SQLiteItemStore]:
    """Open (and migrate) an agent's item database; always disposes the engine."""
    store = SQLiteItemStore(db_path, agent_id)
    try:
        await store.init_db()
        yield store
    finally:
        await store.close()


def agent_db_path(agents_root: Union[str, Path], agent_id: str) -> Path:
    return Path(agents_root) / agent_id / "memory" / "memory.db"
