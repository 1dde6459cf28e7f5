"""SQLite database client for Session Relay."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import DateTime, Enum, Integer, String, Text, create_engine, func
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from session_relay import constants
from session_relay.models.enums import RunMode, RunStatus, RunStrategy
from session_relay.utils.pathing import ensure_runtime_directories


class BaseModel(DeclarativeBase):
    """Declarative base class for SQLAlchemy models."""


def _build_engine(echo: bool = False):
    ensure_runtime_directories()
    return create_engine(f"sqlite:///{constants.DB_FILE}", echo=echo, future=True)


ENGINE = _build_engine()
SESSION_FACTORY = sessionmaker(bind=ENGINE, autoflush=False, expire_on_commit=False, future=True)


class AgentRun(BaseModel):
    """One non-interactive agent invocation."""

    __tablename__ = "agent_runs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    strategy: Mapped[RunStrategy] = mapped_column(Enum(RunStrategy), nullable=False)
    mode: Mapped[RunMode] = mapped_column(Enum(RunMode), nullable=False)
    cwd: Mapped[str] = mapped_column(String, nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    model: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    status: Mapped[RunStatus] = mapped_column(
        Enum(RunStatus), default=RunStatus.RUNNING, nullable=False
    )
    exit_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    signal: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[str] = mapped_column(DateTime(timezone=True), server_default=func.now())
    ended_at: Mapped[Optional[str]] = mapped_column(DateTime(timezone=True), nullable=True)


def init_db(echo: bool = False) -> None:
    """Create tables if they do not exist."""
    global ENGINE, SESSION_FACTORY
    ENGINE = _build_engine(echo=echo)
    SESSION_FACTORY = sessionmaker(
        bind=ENGINE,
        autoflush=False,
        expire_on_commit=False,
        future=True,
    )
    BaseModel.metadata.create_all(bind=ENGINE)


@contextmanager
def session_scope() -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""
    session = SESSION_FACTORY()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
