"""SQLModel ORM tables for task context logs."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class TaskContextRow(SQLModel, table=True):
    __tablename__ = "task_contexts"  # type: ignore[bad-override]

    context_id: str = Field(primary_key=True)
    task_template_id: str = Field(index=True)
    tenant_id: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    template_json: str = Field(sa_column=Column(Text, nullable=False))
    audit_required: bool = False
    audit_reason: str | None = Field(default=None, sa_column=Column(Text, nullable=True))


class ContextEntryRow(SQLModel, table=True):
    __tablename__ = "context_entries"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "context_id",
            "sequence_number",
            name="uq_context_entries_sequence",
        ),
    )

    entry_id: str = Field(primary_key=True)
    context_id: str = Field(
        sa_column=Column(
            ForeignKey("task_contexts.context_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    sequence_number: int
    timestamp: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    actor_type: str
    actor_id: str
    actor_version: str
    operation: str = Field(index=True)
    data_json: str = Field(sa_column=Column(Text, nullable=False))
    reasoning: str = Field(sa_column=Column(Text, nullable=False))
    trigger_json: str = Field(sa_column=Column(Text, nullable=False))
