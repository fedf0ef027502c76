from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.audit import audit_task
from app.config import ConfigurationError
from app.github.client import ExternalAPIError, GitHubClient, GitHubIssue, split_repo_name
from app.github.projects import ResolutionError, sync_project_status
from app.github.status import issue_state_for, is_status_label, status_to_label
from app.models import Board, Task
from app.security import CryptoError
from app.sync import boards as board_sync

logger = structlog.get_logger(__name__)

# GitHub answers 404 for a deleted issue and 410 for a transferred one.
_ISSUE_GONE = (404, 410)


def _now() -> datetime:
  return datetime.now(timezone.utc)


def _result(action: str, task_id: str, issue_number: int | None, *, ok: bool, **extra: Any) -> dict[str, Any]:
  out: dict[str, Any] = {"ok": ok, "action": action, "taskId": task_id, "issueNumber": issue_number}
  out.update({k: v for k, v in extra.items() if v is not None})
  return out


def _error_text(exc: Exception) -> str:
  if isinstance(exc, ExternalAPIError):
    return f"GitHub {exc.status_code}: {exc.message}"
  message = str(exc).strip()
  return f"{exc.__class__.__name__}: {message}" if message else exc.__class__.__name__


async def _ready_board(db: AsyncSession, task: Task) -> Board | None:
  board = await db.get(Board, task.board_id)
  return board if board_sync.sync_ready(board) else None


async def _create_label(client: GitHubClient, owner: str, repo: str, label: str) -> None:
  try:
    await client.create_label(owner, repo, label)
  except ExternalAPIError as exc:
    # 422: the label already exists on the repository
    if exc.status_code != 422:
      raise


async def _apply_label(client: GitHubClient, owner: str, repo: str, number: int, label: str) -> None:
  try:
    await client.add_labels(owner, repo, number, [label])
  except ExternalAPIError as exc:
    if exc.status_code not in (404, 422):
      raise
    await _create_label(client, owner, repo, label)
    await client.add_labels(owner, repo, number, [label])


async def reconcile_labels(client: GitHubClient, owner: str, repo: str, issue: GitHubIssue, status: str) -> frozenset[str]:
  """Leave exactly one status label on the issue; non-status labels are untouched."""
  wanted = status_to_label(status)
  current = set(issue.labels)
  for name in sorted(current):
    if not is_status_label(name) or name.lower() == wanted:
      continue
    try:
      await client.remove_label(owner, repo, issue.number, name)
    except ExternalAPIError as exc:
      if exc.status_code != 404:
        raise
    current.discard(name)
  if not any(n.lower() == wanted for n in current):
    await _apply_label(client, owner, repo, issue.number, wanted)
    current.add(wanted)
  return frozenset(current)


async def _sync_project(client: GitHubClient, board: Board, issue_number: int, status: str) -> dict[str, Any] | None:
  if not board.github_project_id:
    return None
  try:
    res = await sync_project_status(
      client,
      repo_name=board.github_repo_name or "",
      issue_number=issue_number,
      project_number=board.github_project_id,
      status=status,
    )
    return res.as_dict()
  except (ExternalAPIError, ResolutionError) as exc:
    logger.warning(
      "github.project.sync_failed",
      board_id=board.id,
      project_number=board.github_project_id,
      issue_number=issue_number,
      error=_error_text(exc),
    )
    return {"error": _error_text(exc)}


async def _mark_desynced(db: AsyncSession, task: Task, *, reason: str) -> None:
  task.github_desynced = True
  await audit_task(db, task, "github.issue.desynced", issueNumber=task.github_issue_number, reason=reason)
  await db.commit()
  logger.warning("github.issue.desynced", task_id=task.id, issue_number=task.github_issue_number, reason=reason)


async def _create(db: AsyncSession, board: Board, task: Task) -> dict[str, Any]:
  board_id, task_id = board.id, task.id
  owner, repo = split_repo_name(board.github_repo_name or "")
  label = status_to_label(task.status)
  async with board_sync.open_client(board) as client:
    issue = await client.create_issue(owner, repo, title=task.title, body=task.description or "", labels=[label])
    # Persist the pairing before anything else can fail; a lost number means a duplicate issue later.
    task.github_issue_number = issue.number
    task.github_last_sync_at = _now()
    await audit_task(db, task, "github.issue.created", repo=board.github_repo_name, issueNumber=issue.number, label=label)
    try:
      await db.commit()
    except IntegrityError:
      # A webhook for the new issue already created a task paired with it.
      await db.rollback()
      logger.warning("github.issue.already_linked", board_id=board_id, task_id=task_id, issue_number=issue.number)
      return _result("create", task_id, None, ok=False, error="issue-already-linked", linkedIssueNumber=issue.number)
    logger.info("github.issue.created", board_id=board_id, task_id=task_id, issue_number=issue.number, label=label)

    try:
      if issue_state_for(task.status) == "closed":
        issue = await client.close_issue(owner, repo, issue.number)
      if label not in {l.lower() for l in issue.labels}:
        await _apply_label(client, owner, repo, issue.number, label)
    except ExternalAPIError as exc:
      logger.warning("github.issue.create_incomplete", board_id=board_id, task_id=task_id, issue_number=issue.number, error=_error_text(exc))
      return _result("create", task_id, issue.number, ok=False, error=_error_text(exc))
    project = await _sync_project(client, board, issue.number, task.status)
  return _result("create", task_id, issue.number, ok=True, state=issue.state, project=project)


async def _update(db: AsyncSession, board: Board, task: Task, previous_status: str | None) -> dict[str, Any]:
  owner, repo = split_repo_name(board.github_repo_name or "")
  number = int(task.github_issue_number or 0)
  async with board_sync.open_client(board) as client:
    try:
      issue = await client.update_issue(
        owner,
        repo,
        number,
        title=task.title,
        body=task.description or "",
        state=issue_state_for(task.status),
      )
    except ExternalAPIError as exc:
      if exc.status_code not in _ISSUE_GONE:
        raise
      await _mark_desynced(db, task, reason=f"github-{exc.status_code}")
      return _result("update", task.id, number, ok=False, error="issue-missing")
    labels = await reconcile_labels(client, owner, repo, issue, task.status)
    project = await _sync_project(client, board, number, task.status)
  task.github_last_sync_at = _now()
  await db.commit()
  logger.info(
    "github.issue.updated",
    board_id=board.id,
    task_id=task.id,
    issue_number=number,
    status=task.status,
    previous_status=previous_status,
  )
  return _result("update", task.id, number, ok=True, state=issue.state, labels=sorted(labels), project=project)


async def on_task_created(db: AsyncSession, task: Task) -> dict[str, Any]:
  """Mirror a newly committed task to GitHub. Never raises.

  A failed attempt rolls back only the sync bookkeeping; the task row the
  caller committed stays as it is.
  """
  board = await _ready_board(db, task)
  if board is None:
    return _result("create", task.id, task.github_issue_number, ok=True, skipped="sync-disabled")
  if task.github_issue_number:
    return await on_task_updated(db, task)
  # The rollback below expires every loaded instance.
  board_id, task_id = board.id, task.id
  try:
    return await _create(db, board, task)
  except (ExternalAPIError, CryptoError, ConfigurationError, ValueError) as exc:
    await db.rollback()
    logger.warning("github.issue.create_failed", board_id=board_id, task_id=task_id, error=_error_text(exc))
    return _result("create", task_id, None, ok=False, error=_error_text(exc))
  except Exception as exc:
    await db.rollback()
    logger.exception("github.issue.create_crashed", board_id=board_id, task_id=task_id)
    return _result("create", task_id, None, ok=False, error=_error_text(exc))


async def on_task_updated(db: AsyncSession, task: Task, previous_status: str | None = None) -> dict[str, Any]:
  """Push the task's current title/body/status to its issue, creating it if it was never created."""
  board = await _ready_board(db, task)
  if board is None:
    return _result("update", task.id, task.github_issue_number, ok=True, skipped="sync-disabled")
  if task.github_desynced:
    return _result("update", task.id, task.github_issue_number, ok=True, skipped="desynced")
  if not task.github_issue_number:
    logger.info("github.issue.lazy_create", board_id=board.id, task_id=task.id)
    return await on_task_created(db, task)
  board_id, task_id, number = board.id, task.id, task.github_issue_number
  try:
    return await _update(db, board, task, previous_status)
  except (ExternalAPIError, CryptoError, ConfigurationError, ValueError) as exc:
    await db.rollback()
    logger.warning("github.issue.update_failed", board_id=board_id, task_id=task_id, issue_number=number, error=_error_text(exc))
    return _result("update", task_id, number, ok=False, error=_error_text(exc))
  except Exception as exc:
    await db.rollback()
    logger.exception("github.issue.update_crashed", board_id=board_id, task_id=task_id, issue_number=number)
    return _result("update", task_id, number, ok=False, error=_error_text(exc))


async def on_task_deleted(db: AsyncSession, task: Task) -> dict[str, Any]:
  """Close (never delete) the paired issue; GitHub keeps the history."""
  if not task.github_issue_number:
    return _result("delete", task.id, None, ok=True, skipped="not-linked")
  board = await _ready_board(db, task)
  if board is None:
    return _result("delete", task.id, task.github_issue_number, ok=True, skipped="sync-disabled")
  board_id, task_id, number = board.id, task.id, task.github_issue_number
  try:
    owner, repo = split_repo_name(board.github_repo_name or "")
    async with board_sync.open_client(board) as client:
      try:
        await client.close_issue(owner, repo, number)
      except ExternalAPIError as exc:
        if exc.status_code not in _ISSUE_GONE:
          raise
        return _result("delete", task_id, number, ok=True, skipped="issue-missing")
    await audit_task(db, task, "github.issue.closed", issueNumber=number, reason="task-deleted")
    await db.commit()
    logger.info("github.issue.closed", board_id=board_id, task_id=task_id, issue_number=number)
    return _result("delete", task_id, number, ok=True, state="closed")
  except (ExternalAPIError, CryptoError, ConfigurationError, ValueError) as exc:
    await db.rollback()
    logger.warning("github.issue.close_failed", board_id=board_id, task_id=task_id, issue_number=number, error=_error_text(exc))
    return _result("delete", task_id, number, ok=False, error=_error_text(exc))
  except Exception as exc:
    await db.rollback()
    logger.exception("github.issue.close_crashed", board_id=board_id, task_id=task_id, issue_number=number)
    return _result("delete", task_id, number, ok=False, error=_error_text(exc))


async def push_board(db: AsyncSession, board: Board) -> dict[str, Any]:
  if not board_sync.sync_ready(board):
    return {"ok": False, "error": "GitHub not connected for this board"}
  board_id = board.id
  res = await db.execute(select(Task.id).where(Task.board_id == board_id).order_by(Task.created_at.asc()))
  created = updated = failed = skipped = 0
  for task_id in res.scalars().all():
    # A failed attempt rolls back and expires the session; reload each task by key.
    task = await db.get(Task, task_id)
    if task is None or task.github_desynced:
      skipped += 1
      continue
    had_issue = bool(task.github_issue_number)
    out = await (on_task_updated(db, task) if had_issue else on_task_created(db, task))
    if not out.get("ok"):
      failed += 1
    elif out.get("skipped"):
      skipped += 1
    elif had_issue:
      updated += 1
    else:
      created += 1
  logger.info("github.board.pushed", board_id=board_id, created=created, updated=updated, failed=failed, skipped=skipped)
  return {"ok": failed == 0, "created": created, "updated": updated, "failed": failed, "skipped": skipped}
