"""SQLModel ORM tables for relay storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    PrimaryKeyConstraint,
    Text,
    text,
)
from sqlmodel import Field, SQLModel

DEFAULT_CLUSTER_ID = "default"


class Cluster(SQLModel, table=True):
    __tablename__ = "clusters"  # type: ignore[bad-override]

    cluster_id: str = Field(primary_key=True, index=True)
    name: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ToolDefinitionRow(SQLModel, table=True):
    __tablename__ = "tool_definitions"  # type: ignore[bad-override]
    __table_args__ = (PrimaryKeyConstraint("cluster_id", "name"),)

    cluster_id: str = Field(
        default=DEFAULT_CLUSTER_ID,
        sa_column=Column(
            ForeignKey("clusters.cluster_id", ondelete="CASCADE"),
            nullable=False,
            server_default=DEFAULT_CLUSTER_ID,
        ),
    )
    name: str
    description: str = ""
    schema_json: str | None = Field(default=None, sa_column=Column(Text))
    config_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        PrimaryKeyConstraint("cluster_id", "id"),
        Index("idx_jobs_dispatch", "cluster_id", "status", "target_fn"),
        Index("idx_jobs_run", "cluster_id", "run_id"),
        Index("idx_jobs_cache", "cluster_id", "target_fn", "cache_key", "resulted_at"),
    )

    id: str
    cluster_id: str = Field(
        default=DEFAULT_CLUSTER_ID,
        sa_column=Column(
            ForeignKey("clusters.cluster_id", ondelete="CASCADE"),
            nullable=False,
            server_default=DEFAULT_CLUSTER_ID,
        ),
    )
    target_fn: str
    target_args: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    cache_key: str | None = None
    remaining_attempts: int = Field(default=1)
    timeout_interval_seconds: int | None = None
    executing_machine_id: str | None = None
    last_retrieved_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    approval_requested: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    approved: bool | None = Field(default=None, sa_column=Column(Boolean, nullable=True))
    interrupt_recovered: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    result: str | None = Field(default=None, sa_column=Column(Text))
    result_type: str | None = None
    resulted_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    function_execution_time_ms: int | None = None
    run_id: str | None = None
    auth_context: str | None = Field(default=None, sa_column=Column(Text))
    run_context: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Run(SQLModel, table=True):
    __tablename__ = "runs"  # type: ignore[bad-override]
    __table_args__ = (
        PrimaryKeyConstraint("cluster_id", "id"),
        Index("idx_runs_cluster_time", "cluster_id", "created_at"),
    )

    id: str
    cluster_id: str = Field(
        default=DEFAULT_CLUSTER_ID,
        sa_column=Column(
            ForeignKey("clusters.cluster_id", ondelete="CASCADE"),
            nullable=False,
            server_default=DEFAULT_CLUSTER_ID,
        ),
    )
    name: str | None = None
    status: str = Field(index=True)
    failure_reason: str | None = Field(default=None, sa_column=Column(Text))
    attached_functions: str | None = Field(default=None, sa_column=Column(Text))
    result_schema: str | None = Field(default=None, sa_column=Column(Text))
    interactive: bool = Field(
        default=True,
        sa_column=Column(Boolean, nullable=False, server_default=text("1")),
    )
    system_prompt: str | None = Field(default=None, sa_column=Column(Text))
    on_status_change: str | None = Field(default=None, sa_column=Column(Text))
    tags: str | None = Field(default=None, sa_column=Column(Text))
    owner_id: str | None = None
    auth_context: str | None = Field(default=None, sa_column=Column(Text))
    context: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RunMessageRow(SQLModel, table=True):
    __tablename__ = "run_messages"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_run_messages_run_seq", "cluster_id", "run_id", "seq"),)

    seq: int | None = Field(default=None, primary_key=True)
    message_id: str = Field(unique=True)
    cluster_id: str = Field(
        default=DEFAULT_CLUSTER_ID,
        sa_column=Column(
            ForeignKey("clusters.cluster_id", ondelete="CASCADE"),
            nullable=False,
            server_default=DEFAULT_CLUSTER_ID,
        ),
    )
    run_id: str = Field(index=True)
    type: str
    data_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RunLock(SQLModel, table=True):
    __tablename__ = "run_locks"  # type: ignore[bad-override]
    __table_args__ = (PrimaryKeyConstraint("cluster_id", "run_id"),)

    cluster_id: str
    run_id: str
    holder: str
    acquired_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class EventRow(SQLModel, table=True):
    __tablename__ = "events"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_events_cluster_time", "cluster_id", "created_at"),
        Index("idx_events_job", "cluster_id", "job_id"),
        Index("idx_events_run", "cluster_id", "run_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    cluster_id: str
    type: str = Field(index=True)
    job_id: str | None = None
    run_id: str | None = None
    machine_id: str | None = None
    target_fn: str | None = None
    result_type: str | None = None
    status: str | None = None
    meta_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
