"""SQLModel ORM tables for relay storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Text
from sqlmodel import Field, SQLModel

DIRECT_THREAD_KEY = "direct"


class AgentSessionRow(SQLModel, table=True):
    __tablename__ = "agent_sessions"  # type: ignore[bad-override]

    principal_id: str = Field(primary_key=True)
    conversation_id: str = Field(primary_key=True)
    thread_key: str = Field(default=DIRECT_THREAD_KEY, primary_key=True)
    session_id: str = Field(index=True)
    last_marker: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    working_directory: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    saved_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
