"""Agent snapshot store — SQLite-backed, one row per agent.

Each row holds the agent's last AgentStatus (state, config, funds, error)
as JSON so the engine can resume every agent where it left off after a
restart. "No row" means a fresh agent, never an error.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

from pydantic import TypeAdapter
from sqlalchemy import DateTime, String, Text, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from lpcruise.config import settings
from lpcruise.core.errors import PersistenceError
from lpcruise.core.types import AgentStatus

logger = logging.getLogger(__name__)

_status_adapter = TypeAdapter(AgentStatus)


def dump_status(status: AgentStatus) -> str:
    return _status_adapter.dump_json(status).decode()


def load_status(raw: str | bytes) -> AgentStatus:
    return _status_adapter.validate_json(raw)


class Base(DeclarativeBase):
    pass


class AgentSnapshot(Base):
    """Latest persisted AgentStatus for one agent."""

    __tablename__ = "agent_snapshots"

    agent_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    state: Mapped[str] = mapped_column(String(32))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    payload: Mapped[str] = mapped_column(Text)


class StatePersistence(ABC):
    """Keyed save/load of AgentStatus."""

    @abstractmethod
    async def save_state(self, agent_id: str, status: AgentStatus) -> None:
        ...

    @abstractmethod
    async def load_state(self, agent_id: str) -> AgentStatus | None:
        """Return the last snapshot, or None when the agent has never been saved."""
        ...

    @abstractmethod
    async def delete_state(self, agent_id: str) -> None:
        ...

    @abstractmethod
    async def load_all(self) -> list[AgentStatus]:
        ...


class SqliteStatePersistence(StatePersistence):
    """Durable store on SQLite through SQLAlchemy's asyncio engine (aiosqlite)."""

    def __init__(self, sqlite_path: Path | None = None) -> None:
        self.sqlite_path = sqlite_path or settings.sqlite_path
        self._engine: AsyncEngine | None = None
        self._session: async_sessionmaker[AsyncSession] | None = None

    async def init(self) -> None:
        self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
        self._engine = create_async_engine(f"sqlite+aiosqlite:///{self.sqlite_path}", echo=False)
        self._session = async_sessionmaker(self._engine, expire_on_commit=False)

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info("Agent snapshot DB ready at %s", self.sqlite_path)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session = None

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        if self._session is None:
            raise PersistenceError("Snapshot store used before init()")
        return self._session

    async def save_state(self, agent_id: str, status: AgentStatus) -> None:
        try:
            async with self._sessions()() as session:
                await session.merge(
                    AgentSnapshot(
                        agent_id=agent_id,
                        state=str(status.state),
                        updated_at=status.last_update,
                        payload=dump_status(status),
                    )
                )
                await session.commit()
        except (SQLAlchemyError, ValueError) as exc:
            raise PersistenceError(f"save failed for agent {agent_id}: {exc}") from exc

    async def load_state(self, agent_id: str) -> AgentStatus | None:
        try:
            async with self._sessions()() as session:
                row = await session.get(AgentSnapshot, agent_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"load failed for agent {agent_id}: {exc}") from exc
        if row is None:
            return None
        try:
            return load_status(row.payload)
        except ValueError as exc:
            raise PersistenceError(f"unreadable snapshot for agent {agent_id}: {exc}") from exc

    async def delete_state(self, agent_id: str) -> None:
        try:
            async with self._sessions()() as session:
                await session.execute(delete(AgentSnapshot).where(AgentSnapshot.agent_id == agent_id))
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"delete failed for agent {agent_id}: {exc}") from exc

    async def load_all(self) -> list[AgentStatus]:
        try:
            async with self._sessions()() as session:
                result = await session.execute(select(AgentSnapshot).order_by(AgentSnapshot.agent_id))
                rows = result.scalars().all()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"loading saved agents failed: {exc}") from exc

        statuses = []
        for row in rows:
            try:
                statuses.append(load_status(row.payload))
            except ValueError as exc:
                logger.error("Skipping unreadable snapshot for agent %s: %s", row.agent_id, exc)
        return statuses
