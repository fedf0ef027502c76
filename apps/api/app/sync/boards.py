from __future__ import annotations

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.audit import audit_board
from app.github.client import GitHubClient, is_valid_repo_name
from app.github.status import TaskStatus, coerce_status
from app.models import Board, Lane
from app.security import decrypt_token, encrypt_token, token_hint

logger = structlog.get_logger(__name__)


def sync_ready(board: Board | None) -> bool:
  return bool(board and board.github_sync_enabled and board.github_token_encrypted and board.github_repo_name)


def open_client(board: Board) -> GitHubClient:
  """Build a client from the board's stored token. Raises CryptoError on a bad ciphertext."""
  if not board.github_token_encrypted:
    raise ValueError("Board has no GitHub token")
  return GitHubClient(decrypt_token(board.github_token_encrypted))


def _clean_project_id(project_id: int | None) -> int | None:
  if project_id is None:
    return None
  if isinstance(project_id, bool) or not isinstance(project_id, int) or project_id <= 0:
    raise ValueError("githubProjectId must be a positive number")
  return project_id


async def connect_board(
  db: AsyncSession,
  board: Board,
  *,
  token: str,
  repo_name: str,
  project_id: int | None = None,
) -> Board:
  repo = (repo_name or "").strip()
  if not is_valid_repo_name(repo):
    raise ValueError("Invalid repository format. Use 'owner/repo'")
  project = _clean_project_id(project_id)
  board.github_token_encrypted = encrypt_token(token)
  board.github_repo_name = repo
  board.github_project_id = project
  board.github_sync_enabled = True
  await audit_board(db, board, "github.board.connected", repo=repo, projectId=board.github_project_id, tokenHint=token_hint(token))
  await db.flush()
  logger.info("github.board.connected", board_id=board.id, repo=repo, project_id=board.github_project_id)
  return board


async def update_board_settings(
  db: AsyncSession,
  board: Board,
  *,
  repo_name: str | None = None,
  project_id: int | None = None,
  clear_project: bool = False,
) -> Board:
  if repo_name is None and project_id is None and not clear_project:
    raise ValueError("Either repoName or projectId is required")
  if repo_name is not None:
    repo = repo_name.strip()
    if not is_valid_repo_name(repo):
      raise ValueError("Invalid repository format. Use 'owner/repo'")
    board.github_repo_name = repo
  if clear_project:
    board.github_project_id = None
  elif project_id is not None:
    board.github_project_id = _clean_project_id(project_id)
  await audit_board(db, board, "github.board.updated", repo=board.github_repo_name, projectId=board.github_project_id)
  await db.flush()
  return board


async def revoke_board(db: AsyncSession, board: Board) -> Board:
  board.github_sync_enabled = False
  board.github_token_encrypted = None
  await audit_board(db, board, "github.board.revoked", repo=board.github_repo_name)
  await db.flush()
  logger.info("github.board.revoked", board_id=board.id)
  return board


async def find_board_by_repo(db: AsyncSession, repo_name: str) -> Board | None:
  name = (repo_name or "").strip()
  if not name:
    return None
  res = await db.execute(
    select(Board)
    .where(Board.github_repo_name == name, Board.github_sync_enabled.is_(True))
    .order_by(Board.created_at.asc())
  )
  return res.scalars().first()


async def find_board_by_project(db: AsyncSession, project_number: int) -> Board | None:
  res = await db.execute(
    select(Board)
    .where(Board.github_project_id == int(project_number), Board.github_sync_enabled.is_(True))
    .order_by(Board.created_at.asc())
  )
  return res.scalars().first()


async def lane_for_status(db: AsyncSession, board_id: str, status: str | TaskStatus) -> Lane | None:
  res = await db.execute(select(Lane).where(Lane.board_id == board_id).order_by(Lane.position.asc()))
  lanes = res.scalars().all()
  if not lanes:
    return None
  want = coerce_status(status).value
  return next((l for l in lanes if l.status == want), lanes[0])
