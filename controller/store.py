"""Persisted session records - async SQLAlchemy over SQLite.

The core only interprets socket_path, daemon_pid and daemon_start_time;
``kind`` and ``ref`` are opaque tags for whatever the sessions belong to.
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from sqlalchemy import DateTime, Float, Integer, String, Text, delete, func, select
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""


class TerminalSession(Base):
    """One daemon the controller knows how to reach."""

    __tablename__ = "terminal_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    socket_path: Mapped[str] = mapped_column(Text)
    daemon_pid: Mapped[int] = mapped_column(Integer)
    daemon_start_time: Mapped[float] = mapped_column(Float)
    kind: Mapped[str] = mapped_column(String(32), default="shell")
    ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


@dataclass(frozen=True)
class SessionRecord:
    id: str
    socket_path: str
    daemon_pid: int
    daemon_start_time: float
    kind: str = "shell"
    ref: Optional[str] = None

    @classmethod
    def from_row(cls, row: TerminalSession) -> "SessionRecord":
        return cls(
            id=row.id,
            socket_path=row.socket_path,
            daemon_pid=row.daemon_pid,
            daemon_start_time=row.daemon_start_time,
            kind=row.kind,
            ref=row.ref,
        )


class SessionStore:
    def __init__(self, url: str, engine: Optional[AsyncEngine] = None):
        self.url = url
        self._engine = engine or create_async_engine(url, echo=False)
        self._sessionmaker = async_sessionmaker(self._engine, expire_on_commit=False)

    @classmethod
    def for_path(cls, path: Path) -> "SessionStore":
        path.parent.mkdir(parents=True, exist_ok=True)
        return cls(f"sqlite+aiosqlite:///{path}")

    async def init(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def save(self, record: SessionRecord) -> None:
        """Insert or replace the record for ``record.id``."""
        async with self._sessionmaker() as db:
            await db.merge(TerminalSession(
                id=record.id,
                socket_path=record.socket_path,
                daemon_pid=record.daemon_pid,
                daemon_start_time=record.daemon_start_time,
                kind=record.kind,
                ref=record.ref,
            ))
            await db.commit()

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        async with self._sessionmaker() as db:
            row = await db.get(TerminalSession, session_id)
            return SessionRecord.from_row(row) if row else None

    async def load_all(self) -> list[SessionRecord]:
        async with self._sessionmaker() as db:
            result = await db.execute(
                select(TerminalSession).order_by(TerminalSession.created_at, TerminalSession.id)
            )
            return [SessionRecord.from_row(row) for row in result.scalars()]

    async def delete(self, session_id: str) -> bool:
        async with self._sessionmaker() as db:
            result = await db.execute(
                delete(TerminalSession).where(TerminalSession.id == session_id)
            )
            await db.commit()
            return result.rowcount > 0

    async def close(self) -> None:
        await self._engine.dispose()
