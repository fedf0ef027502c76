from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.audit import audit_task
from app.config import ConfigurationError
from app.github.client import ExternalAPIError, GitHubIssue, parse_issue, split_repo_name
from app.github.status import status_from_issue
from app.models import Board, Task
from app.realtime import TaskChange
from app.security import CryptoError
from app.sync import boards as board_sync

logger = structlog.get_logger(__name__)

ISSUE_ACTIONS = frozenset({"opened", "closed", "edited", "assigned", "unassigned", "labeled", "unlabeled"})
PROJECT_ITEM_ACTIONS = frozenset({"edited", "updated"})

BOARD_NOT_FOUND = "Board not found or sync disabled"


@dataclass
class InboundResult:
  body: dict[str, Any]
  # Published by the caller once the transaction has committed.
  changes: list[TaskChange] = field(default_factory=list)


@dataclass(frozen=True)
class UpsertOutcome:
  task: Task
  created: bool
  changed: bool


def repo_full_name(payload: dict[str, Any]) -> str:
  repo = payload.get("repository")
  if not isinstance(repo, dict):
    return ""
  full = repo.get("full_name")
  if isinstance(full, str) and full.strip():
    return full.strip()
  owner = repo.get("owner")
  login = owner.get("login") if isinstance(owner, dict) else owner
  name = repo.get("name")
  if isinstance(login, str) and isinstance(name, str) and login and name:
    return f"{login}/{name}"
  return ""


def _ack(event: str, action: str | None, **extra: Any) -> dict[str, Any]:
  out: dict[str, Any] = {"received": True, "event": event, "action": action}
  out.update({k: v for k, v in extra.items() if v is not None})
  return out


def _change(outcome: UpsertOutcome) -> TaskChange:
  t = outcome.task
  return TaskChange(
    board_id=t.board_id,
    task_id=t.id,
    event="task-created" if outcome.created else "task-updated",
    payload={"id": t.id, "boardId": t.board_id, "status": t.status, "githubIssueNumber": t.github_issue_number},
  )


async def _task_for_issue(db: AsyncSession, board_id: str, number: int) -> Task | None:
  res = await db.execute(select(Task).where(Task.board_id == board_id, Task.github_issue_number == int(number)))
  return res.scalars().first()


async def upsert_task_from_issue(db: AsyncSession, *, board: Board, issue: GitHubIssue) -> UpsertOutcome:
  """Overwrite the task paired with this issue, or create it.

  The caller owns the transaction. A payload that matches the stored task
  reports changed=False and touches nothing.
  """
  status = status_from_issue(issue.labels, issue.state).value
  lane = await board_sync.lane_for_status(db, board.id, status)
  lane_id = lane.id if lane else None
  title = issue.title or f"GitHub issue #{issue.number}"
  description = issue.body or None
  now = datetime.now(timezone.utc)

  task = await _task_for_issue(db, board.id, issue.number)
  if task is None:
    task = Task(
      board_id=board.id,
      lane_id=lane_id,
      title=title,
      description=description,
      status=status,
      order_index=0,
      github_issue_number=issue.number,
      github_last_sync_at=now,
    )
    db.add(task)
    await db.flush()
    await audit_task(db, task, "github.task.created", issueNumber=issue.number, status=status)
    logger.info("github.task.created", board_id=board.id, task_id=task.id, issue_number=issue.number, status=status)
    return UpsertOutcome(task=task, created=True, changed=True)

  before = (task.title, task.description, task.status, task.lane_id, task.github_desynced)
  after = (title, description, status, lane_id, False)
  if before == after:
    return UpsertOutcome(task=task, created=False, changed=False)

  task.title = title
  task.description = description
  task.status = status
  task.lane_id = lane_id
  # Any event for the issue proves it is reachable again.
  task.github_desynced = False
  task.github_last_sync_at = now
  task.version += 1
  await audit_task(db, task, "github.task.updated", issueNumber=issue.number, status=status, previousStatus=before[2])
  await db.flush()
  logger.info("github.task.updated", board_id=board.id, task_id=task.id, issue_number=issue.number, status=status)
  return UpsertOutcome(task=task, created=False, changed=True)


async def _issue_deleted(db: AsyncSession, board: Board, number: int, action: str) -> InboundResult:
  task = await _task_for_issue(db, board.id, number)
  if task is None:
    return InboundResult(_ack("issues", action, issueNumber=number, message="No task linked to this issue"))
  if not task.github_desynced:
    task.github_desynced = True
    task.version += 1
    await audit_task(db, task, "github.issue.desynced", issueNumber=number, reason="issue-deleted")
    await db.flush()
    logger.warning("github.issue.desynced", board_id=board.id, task_id=task.id, issue_number=number, reason="issue-deleted")
  change = TaskChange(
    board_id=board.id,
    task_id=task.id,
    event="task-updated",
    payload={"id": task.id, "boardId": board.id, "status": task.status, "githubDesynced": True},
  )
  return InboundResult(_ack("issues", action, taskId=task.id, issueNumber=number, message="Issue deleted; task unlinked"), [change])


async def _handle_issues(db: AsyncSession, payload: dict[str, Any], action: str | None) -> InboundResult:
  raw = payload.get("issue")
  if not isinstance(raw, dict):
    return InboundResult(_ack("issues", action, message="Payload has no issue"))
  board = await board_sync.find_board_by_repo(db, repo_full_name(payload))
  if not board_sync.sync_ready(board):
    return InboundResult(_ack("issues", action, message=BOARD_NOT_FOUND))
  try:
    issue = parse_issue(raw)
  except ValueError as exc:
    logger.warning("github.webhook.bad_issue", board_id=board.id, error=str(exc))
    return InboundResult(_ack("issues", action, error="Failed to sync issue to task"))

  if action == "deleted":
    return await _issue_deleted(db, board, issue.number, action)
  if action not in ISSUE_ACTIONS:
    return InboundResult(_ack("issues", action, issueNumber=issue.number))

  outcome = await upsert_task_from_issue(db, board=board, issue=issue)
  body = _ack("issues", action, taskId=outcome.task.id, issueNumber=issue.number, changed=outcome.changed)
  return InboundResult(body, [_change(outcome)] if outcome.changed else [])


async def _handle_issue_comment(db: AsyncSession, payload: dict[str, Any], action: str | None) -> InboundResult:
  board = await board_sync.find_board_by_repo(db, repo_full_name(payload))
  if not board_sync.sync_ready(board):
    return InboundResult(_ack("issue_comment", action, message=BOARD_NOT_FOUND))
  issue = payload.get("issue") if isinstance(payload.get("issue"), dict) else {}
  number = issue.get("number") if isinstance(issue.get("number"), int) else None
  return InboundResult(_ack("issue_comment", action, issueNumber=number))


def _project_number(item: dict[str, Any], payload: dict[str, Any]) -> int | None:
  for holder in (item.get("project"), payload.get("projects_v2")):
    raw = holder.get("number") if isinstance(holder, dict) else None
    if raw is None:
      continue
    try:
      return int(raw)
    except (TypeError, ValueError):
      continue
  return None


async def _board_for_project_item(db: AsyncSession, item: dict[str, Any], payload: dict[str, Any]) -> Board | None:
  number = _project_number(item, payload)
  if number is not None:
    board = await board_sync.find_board_by_project(db, number)
    if board is not None:
      return board
  return await board_sync.find_board_by_repo(db, repo_full_name(payload))


async def _handle_project_item(db: AsyncSession, payload: dict[str, Any], action: str | None) -> InboundResult:
  event = "projects_v2_item"
  if action not in PROJECT_ITEM_ACTIONS:
    return InboundResult(_ack(event, action, message="Action not handled"))
  item = payload.get("projects_v2_item") if isinstance(payload.get("projects_v2_item"), dict) else {}
  content = item.get("content") if isinstance(item.get("content"), dict) else {}
  content_type = content.get("type") or item.get("content_type")
  if content_type != "Issue":
    return InboundResult(_ack(event, action, message="Content is not an issue"))

  board = await _board_for_project_item(db, item, payload)
  if not board_sync.sync_ready(board):
    logger.warning("github.webhook.board_missing", event_name=event, project_number=_project_number(item, payload))
    return InboundResult(_ack(event, action, message=BOARD_NOT_FOUND))

  number = content.get("number") if isinstance(content.get("number"), int) else None
  node_id = item.get("content_node_id") or content.get("node_id")
  try:
    owner, repo = split_repo_name(board.github_repo_name or "")
    async with board_sync.open_client(board) as client:
      if number is None:
        ref = await client.get_issue_by_node_id(node_id) if isinstance(node_id, str) and node_id else None
        if ref is None:
          return InboundResult(_ack(event, action, message="Issue number could not be resolved"))
        if ref.repo_name and ref.repo_name.casefold() != (board.github_repo_name or "").casefold():
          return InboundResult(_ack(event, action, issueNumber=ref.number, message="Issue belongs to another repository"))
        number = ref.number
      issue = await client.get_issue(owner, repo, number)
  except (ExternalAPIError, CryptoError, ConfigurationError, ValueError) as exc:
    logger.warning("github.webhook.issue_fetch_failed", board_id=board.id, issue_number=number, error=str(exc))
    return InboundResult(_ack(event, action, issueNumber=number, error="Failed to sync project item to task"))

  outcome = await upsert_task_from_issue(db, board=board, issue=issue)
  body = _ack(event, action, taskId=outcome.task.id, issueNumber=issue.number, changed=outcome.changed)
  return InboundResult(body, [_change(outcome)] if outcome.changed else [])


async def handle_event(db: AsyncSession, *, event_type: str | None, payload: dict[str, Any]) -> InboundResult:
  """Apply one verified webhook delivery. Does not commit."""
  action = payload.get("action") if isinstance(payload.get("action"), str) else None
  if event_type == "issues":
    return await _handle_issues(db, payload, action)
  if event_type == "issue_comment":
    return await _handle_issue_comment(db, payload, action)
  if event_type == "projects_v2_item":
    return await _handle_project_item(db, payload, action)
  if event_type == "ping":
    return InboundResult(_ack("ping", action, message="pong"))
  return InboundResult(_ack(event_type or "unknown", action, message="Event type not yet implemented"))


async def pull_board(db: AsyncSession, board: Board) -> InboundResult:
  """Upsert a task for every issue of the board's repository. Does not commit.

  Raises ExternalAPIError / CryptoError; the manual sync route reports them.
  """
  owner, repo = split_repo_name(board.github_repo_name or "")
  async with board_sync.open_client(board) as client:
    issues = await client.list_issues(owner, repo)
  created = updated = unchanged = 0
  changes: list[TaskChange] = []
  for issue in issues:
    outcome = await upsert_task_from_issue(db, board=board, issue=issue)
    if outcome.created:
      created += 1
    elif outcome.changed:
      updated += 1
    else:
      unchanged += 1
    if outcome.changed:
      changes.append(_change(outcome))
  logger.info("github.board.pulled", board_id=board.id, created=created, updated=updated, unchanged=unchanged)
  return InboundResult({"created": created, "updated": updated, "unchanged": unchanged}, changes)
