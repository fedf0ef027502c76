from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.audit import audit_board
from app.config import ConfigurationError
from app.deps import get_db, require_service_token
from app.github.client import ExternalAPIError
from app.models import Board
from app.realtime import publish_task_changes
from app.schemas import GitHubSyncIn, GitHubSyncOut
from app.security import CryptoError
from app.sync import boards as board_sync
from app.sync import inbound, outbound

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/github", tags=["github"])


@router.post("/sync", response_model=GitHubSyncOut, response_model_exclude_none=True)
async def sync_board(
  payload: GitHubSyncIn,
  _: None = Depends(require_service_token),
  db: AsyncSession = Depends(get_db),
) -> GitHubSyncOut:
  board = await db.get(Board, payload.boardId)
  if not board:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Board not found")
  if not board_sync.sync_ready(board):
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="GitHub not connected for this board")

  # Rollbacks below expire the board; keep its key.
  board_id = board.id
  out = GitHubSyncOut(direction=payload.direction)
  if payload.direction in ("to-github", "both"):
    out.pushed = await outbound.push_board(db, board)
    board = await db.get(Board, board_id)

  if payload.direction in ("from-github", "both"):
    try:
      pulled = await inbound.pull_board(db, board)
    except ExternalAPIError as exc:
      await db.rollback()
      logger.warning("github.board.pull_failed", board_id=board_id, status=exc.status_code, error=exc.message)
      raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"GitHub {exc.status_code}: {exc.message}")
    except (CryptoError, ValueError) as exc:
      await db.rollback()
      logger.warning("github.board.pull_failed", board_id=board_id, error=str(exc))
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except ConfigurationError:
      await db.rollback()
      raise
    await audit_board(db, board, "github.board.pulled", **pulled.body)
    await db.commit()
    await publish_task_changes(pulled.changes)
    out.pulled = pulled.body

  logger.info("github.board.synced", board_id=board_id, direction=payload.direction)
  return out
