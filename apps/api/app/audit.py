from __future__ import annotations

from typing import Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import AuditEvent, Board, Task


async def write_audit(
  db: AsyncSession,
  *,
  event_type: str,
  entity_type: str,
  entity_id: str | None,
  board_id: str | None = None,
  task_id: str | None = None,
  payload: dict[str, Any] | None = None,
) -> AuditEvent:
  """Stage an audit row in the caller's transaction; nothing is flushed here."""
  ev = AuditEvent(
    board_id=board_id,
    task_id=task_id,
    event_type=event_type,
    entity_type=entity_type,
    entity_id=entity_id,
    payload=jsonable_encoder(payload or {}),
  )
  db.add(ev)
  return ev


async def audit_task(db: AsyncSession, task: Task, event_type: str, **payload: Any) -> AuditEvent:
  return await write_audit(
    db,
    event_type=event_type,
    entity_type="Task",
    entity_id=task.id,
    board_id=task.board_id,
    task_id=task.id,
    payload=payload,
  )


async def audit_board(db: AsyncSession, board: Board, event_type: str, **payload: Any) -> AuditEvent:
  return await write_audit(db, event_type=event_type, entity_type="Board", entity_id=board.id, board_id=board.id, payload=payload)
