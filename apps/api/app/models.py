from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
  return datetime.now(timezone.utc)


def new_id() -> str:
  return str(uuid.uuid4())


class Base(DeclarativeBase):
  pass


class Board(Base):
  __tablename__ = "boards"
  __table_args__ = (
    CheckConstraint(
      "NOT github_sync_enabled OR (github_token_encrypted IS NOT NULL AND github_repo_name IS NOT NULL)",
      name="ck_boards_github_sync_configured",
    ),
  )

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  name: Mapped[str] = mapped_column(String, nullable=False)
  github_sync_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  github_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
  github_repo_name: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  github_project_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class Lane(Base):
  __tablename__ = "lanes"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  board_id: Mapped[str] = mapped_column(String(36), ForeignKey("boards.id"), nullable=False, index=True)
  name: Mapped[str] = mapped_column(String, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False)
  position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class Task(Base):
  __tablename__ = "tasks"
  __table_args__ = (UniqueConstraint("board_id", "github_issue_number", name="ux_tasks_board_github_issue"),)

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  board_id: Mapped[str] = mapped_column(String(36), ForeignKey("boards.id"), nullable=False, index=True)
  lane_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("lanes.id"), nullable=True)
  title: Mapped[str] = mapped_column(String, nullable=False)
  description: Mapped[str | None] = mapped_column(Text, nullable=True)
  status: Mapped[str] = mapped_column(String, nullable=False, default="TODO")
  order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  github_issue_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
  github_desynced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  github_last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class AuditEvent(Base):
  __tablename__ = "audit_events"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  board_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("boards.id"), nullable=True)
  task_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
  event_type: Mapped[str] = mapped_column(String, nullable=False)
  entity_type: Mapped[str] = mapped_column(String, nullable=False)
  entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
  payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class InboundWebhookEvent(Base):
  __tablename__ = "inbound_webhook_events"
  __table_args__ = (
    UniqueConstraint("source", "idempotency_key", name="ux_inbound_webhook_source_idempotency"),
  )

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  source: Mapped[str] = mapped_column(String, nullable=False, index=True)
  idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True)
  event_type: Mapped[str | None] = mapped_column(String, nullable=True)
  action: Mapped[str | None] = mapped_column(String, nullable=True)
  body: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
  received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
  processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
  error: Mapped[str | None] = mapped_column(Text, nullable=True)
