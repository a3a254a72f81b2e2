import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import Column, DateTime, JSON, String
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from dispatcharr_manager.storages.protocol import Storage

Base = declarative_base()


class DocumentModel(Base):
    __tablename__ = 'documents'

    name = Column(String, primary_key=True)
    body = Column(JSON, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class SqlAlchemyStorage(Storage):
    """
    Durable documents stored one row per name.

    Writes are serialized in call order, so a snapshot taken later never
    lands before one taken earlier.
    """

    def __init__(self, db_url: str):
        self.db_url = db_url
        self.engine = create_async_engine(db_url)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self._write_lock = asyncio.Lock()

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def start(self) -> None:
        database = make_url(self.db_url).database
        if self.db_url.startswith("sqlite") and database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
        await self.create_tables()

    async def close(self) -> None:
        await self.engine.dispose()

    async def load(self, name: str) -> Optional[Any]:
        async with self.async_session() as session:
            db_document = await session.get(DocumentModel, name)
            if db_document:
                return db_document.body
            return None

    async def save(self, name: str, document: Any) -> None:
        async with self._write_lock:
            async with self.async_session() as session:
                await session.merge(DocumentModel(
                    name=name,
                    body=document,
                    updated_at=datetime.now(timezone.utc),
                ))
                await session.commit()


class InMemoryStorage(SqlAlchemyStorage):
    def __init__(self):
        super().__init__("sqlite+aiosqlite:///:memory:")
