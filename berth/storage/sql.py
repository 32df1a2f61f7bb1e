"""SQL durable store using SQLModel async.

Default backend for development and tests (SQLite via aiosqlite); any
SQLAlchemy async URL works.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime

import structlog
from sqlalchemy import Column, Text, delete, or_, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, SQLModel, col, select

from berth.config import DatabaseConfig
from berth.errors import DurableStorageError
from berth.storage.base import DurableFileRecord, DurableStore
from berth.utils.datetime import ensure_utc, utcnow

logger = structlog.get_logger()


class DurableFile(SQLModel, table=True):
    """One durable file or directory marker of a user."""

    __tablename__ = "durable_files"

    user_id: str = Field(primary_key=True)
    path: str = Field(primary_key=True)
    content: str = Field(default="", sa_column=Column(Text, nullable=False, default=""))
    is_directory_marker: bool = Field(default=False)
    updated_at: datetime = Field(default_factory=utcnow)

    def to_record(self) -> DurableFileRecord:
        return DurableFileRecord(
            path=self.path,
            content=self.content,
            is_directory_marker=self.is_directory_marker,
            updated_at=ensure_utc(self.updated_at),
        )


class SqlDurableStore(DurableStore):
    """Durable store backed by the ``durable_files`` table."""

    def __init__(self, config: DatabaseConfig | None = None) -> None:
        config = config or DatabaseConfig()
        kwargs: dict = {"echo": config.echo, "future": True}
        if ":memory:" in config.url:
            # One shared connection, otherwise every connection gets its own empty database
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}

        self._engine = create_async_engine(config.url, **kwargs)
        self._session_factory = sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        self._log = logger.bind(store="sql")

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise DurableStorageError(
                    f"Database {operation} failed: {e}",
                    operation=operation,
                ) from e

    async def initialize(self) -> None:
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)
        except SQLAlchemyError as e:
            raise DurableStorageError(f"Database initialization failed: {e}") from e
        self._log.info("storage.sql.initialized")

    async def close(self) -> None:
        await self._engine.dispose()

    async def put(self, user_id: str, record: DurableFileRecord) -> None:
        async with self._session("put") as session:
            row = await session.get(DurableFile, (user_id, record.path))
            if row is None:
                row = DurableFile(user_id=user_id, path=record.path)
            row.content = record.content
            row.is_directory_marker = record.is_directory_marker
            row.updated_at = record.updated_at
            session.add(row)

    async def get(self, user_id: str, path: str) -> DurableFileRecord | None:
        async with self._session("get") as session:
            row = await session.get(DurableFile, (user_id, path))
            if row is None or row.is_directory_marker:
                return None
            return row.to_record()

    async def list_records(self, user_id: str) -> list[DurableFileRecord]:
        async with self._session("list") as session:
            result = await session.execute(
                select(DurableFile)
                .where(DurableFile.user_id == user_id)
                .order_by(DurableFile.path)
            )
            return [row.to_record() for row in result.scalars().all()]

    async def delete(self, user_id: str, path: str) -> None:
        async with self._session("delete") as session:
            await session.execute(
                delete(DurableFile).where(
                    DurableFile.user_id == user_id,
                    DurableFile.path == path,
                    col(DurableFile.is_directory_marker).is_(False),
                )
            )

    async def delete_markers(self, user_id: str, paths: Iterable[str]) -> None:
        paths = list(paths)
        if not paths:
            return
        async with self._session("delete_markers") as session:
            await session.execute(
                delete(DurableFile).where(
                    DurableFile.user_id == user_id,
                    col(DurableFile.path).in_(paths),
                    col(DurableFile.is_directory_marker).is_(True),
                )
            )

    async def delete_tree(self, user_id: str, path: str) -> int:
        async with self._session("delete_tree") as session:
            result = await session.execute(
                delete(DurableFile).where(
                    DurableFile.user_id == user_id,
                    or_(
                        DurableFile.path == path,
                        col(DurableFile.path).startswith(f"{path}/", autoescape=True),
                    ),
                )
            )
            return result.rowcount or 0

    async def ping(self) -> None:
        async with self._session("ping") as session:
            await session.execute(text("SELECT 1"))
