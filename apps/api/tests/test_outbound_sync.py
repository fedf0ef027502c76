from __future__ import annotations

import pytest
from sqlalchemy import select

from app.models import AuditEvent, Task
from app.sync import outbound

from tests.conftest import make_board
from tests.fake_github import status_field

ISSUES = "POST /repos/acme/widgets/issues"


async def _task(db, board, *, title: str = "Fix bug", status: str = "TODO", description: str | None = None) -> Task:
  task = Task(board_id=board.id, title=title, status=status, description=description)
  db.add(task)
  await db.commit()
  return task


def _status_labels(issue: dict) -> list[str]:
  return sorted(l for l in issue["labels"] if l.lower() in {"todo", "in-progress", "in-review", "done", "blocked"})


@pytest.mark.anyio
async def test_new_task_creates_an_open_issue_with_todo_label(db, github):
  board = await make_board(db)
  task = await _task(db, board, description="Steps to reproduce")

  res = await outbound.on_task_created(db, task)

  assert res["ok"] is True
  assert res["action"] == "create"
  assert github.count(ISSUES) == 1
  issue = github.issues[1]
  assert issue["state"] == "open"
  assert issue["labels"] == ["todo"]
  assert issue["body"] == "Steps to reproduce"
  await db.refresh(task)
  assert task.github_issue_number == 1
  assert task.github_last_sync_at is not None


@pytest.mark.anyio
async def test_moving_task_to_done_closes_issue_and_swaps_label(db, github):
  board = await make_board(db)
  task = await _task(db, board)
  await outbound.on_task_created(db, task)

  task.status = "DONE"
  await db.commit()
  res = await outbound.on_task_updated(db, task, previous_status="TODO")

  assert res["ok"] is True
  assert github.issues[1]["state"] == "closed"
  assert github.issues[1]["labels"] == ["done"]
  assert res["labels"] == ["done"]


@pytest.mark.anyio
async def test_done_task_is_created_closed(db, github):
  board = await make_board(db)
  task = await _task(db, board, status="DONE")

  res = await outbound.on_task_created(db, task)

  assert res["ok"] is True
  assert res["state"] == "closed"
  assert github.issues[1]["state"] == "closed"
  assert github.issues[1]["labels"] == ["done"]


@pytest.mark.anyio
async def test_repeated_updates_leave_exactly_one_status_label(db, github):
  board = await make_board(db)
  task = await _task(db, board)
  await outbound.on_task_created(db, task)
  github.issues[1]["labels"].append("bug")

  task.status = "IN_PROGRESS"
  await db.commit()
  for _ in range(3):
    res = await outbound.on_task_updated(db, task)
    assert res["ok"] is True

  assert _status_labels(github.issues[1]) == ["in-progress"]
  assert "bug" in github.issues[1]["labels"]
  # Once reconciled, later calls neither add nor remove labels.
  assert github.count("POST /repos/acme/widgets/issues/1/labels") == 1
  assert github.count("DELETE /repos/acme/widgets/issues/1/labels/todo") == 1


@pytest.mark.anyio
async def test_stray_status_labels_with_other_casing_are_removed(db, github):
  board = await make_board(db)
  github.add_issue("Legacy", labels=("Blocked", "In-Review"))
  task = Task(board_id=board.id, title="Legacy", status="IN_REVIEW", github_issue_number=1)
  db.add(task)
  await db.commit()

  res = await outbound.on_task_updated(db, task)

  assert res["ok"] is True
  assert _status_labels(github.issues[1]) == ["In-Review"]


@pytest.mark.anyio
async def test_missing_label_is_created_on_the_repository(db, github):
  github.strict_labels = True
  board = await make_board(db)
  github.add_issue("Imported")
  task = Task(board_id=board.id, title="Imported", status="BLOCKED", github_issue_number=1)
  db.add(task)
  await db.commit()

  res = await outbound.on_task_updated(db, task)

  assert res["ok"] is True
  assert github.count("POST /repos/acme/widgets/labels") == 1
  assert "blocked" in github.repo_labels
  assert github.issues[1]["labels"] == ["blocked"]


@pytest.mark.anyio
async def test_update_without_issue_number_creates_the_issue(db, github):
  board = await make_board(db)
  task = await _task(db, board, status="IN_PROGRESS")

  res = await outbound.on_task_updated(db, task)

  assert res["ok"] is True
  assert res["action"] == "create"
  assert github.count(ISSUES) == 1
  assert github.issues[1]["labels"] == ["in-progress"]
  await db.refresh(task)
  assert task.github_issue_number == 1


@pytest.mark.anyio
async def test_task_with_existing_issue_is_not_created_twice(db, github):
  board = await make_board(db)
  task = await _task(db, board)
  await outbound.on_task_created(db, task)
  await outbound.on_task_created(db, task)

  assert github.count(ISSUES) == 1


@pytest.mark.anyio
async def test_boards_without_sync_are_skipped(db, github):
  board = await make_board(db, connected=False)
  task = await _task(db, board)

  res = await outbound.on_task_created(db, task)

  assert res["skipped"] == "sync-disabled"
  assert github.calls == []


@pytest.mark.anyio
async def test_github_failures_are_reported_not_raised(db, github):
  board = await make_board(db)
  task = await _task(db, board)
  github.failures[ISSUES] = 502

  res = await outbound.on_task_created(db, task)

  assert res["ok"] is False
  assert "502" in res["error"]
  await db.refresh(task)
  assert task.github_issue_number is None
  assert task.title == "Fix bug"


@pytest.mark.anyio
async def test_undecryptable_token_aborts_the_attempt(db, github):
  board = await make_board(db)
  board.github_token_encrypted = "00112233445566778899aabb:deadbeef"
  await db.commit()
  task = await _task(db, board)

  res = await outbound.on_task_created(db, task)

  assert res["ok"] is False
  assert "CryptoError" in res["error"]
  assert github.calls == []


@pytest.mark.anyio
async def test_issue_deleted_on_github_marks_task_desynced(db, github):
  board = await make_board(db)
  task = Task(board_id=board.id, title="Gone", status="TODO", github_issue_number=77)
  db.add(task)
  await db.commit()

  res = await outbound.on_task_updated(db, task)
  assert res["ok"] is False
  assert res["error"] == "issue-missing"
  await db.refresh(task)
  assert task.github_desynced is True

  again = await outbound.on_task_updated(db, task)
  assert again["skipped"] == "desynced"
  assert github.count("PATCH /repos/acme/widgets/issues/77") == 1

  audit = (await db.execute(select(AuditEvent).where(AuditEvent.event_type == "github.issue.desynced"))).scalars().all()
  assert len(audit) == 1


@pytest.mark.anyio
async def test_deleting_task_closes_issue(db, github):
  board = await make_board(db)
  task = await _task(db, board)
  await outbound.on_task_created(db, task)

  res = await outbound.on_task_deleted(db, task)

  assert res["ok"] is True
  assert github.issues[1]["state"] == "closed"
  assert 1 in github.issues


@pytest.mark.anyio
async def test_deleting_unlinked_task_does_nothing(db, github):
  board = await make_board(db)
  task = await _task(db, board)

  res = await outbound.on_task_deleted(db, task)

  assert res["skipped"] == "not-linked"
  assert github.calls == []


@pytest.mark.anyio
async def test_project_status_is_set_when_board_has_a_project(db, github):
  project = github.add_project(3)
  board = await make_board(db, project_id=3)
  task = await _task(db, board, status="IN_REVIEW")

  res = await outbound.on_task_created(db, task)

  assert res["project"]["fieldUpdated"] is True
  assert res["project"]["option"] == "In Review"
  assert project.items[0]["values"] == {"PVTSSF_status": "opt_in_review"}

  task.status = "BLOCKED"
  await db.commit()
  await outbound.on_task_updated(db, task)
  assert len(project.items) == 1
  assert project.items[0]["values"] == {"PVTSSF_status": "opt_blocked"}


@pytest.mark.anyio
async def test_project_option_in_upper_case_is_matched(db, github):
  project = github.add_project(4, owner_type="org", fields=[status_field(names=("TODO", "IN PROGRESS", "DONE"))])
  board = await make_board(db, project_id=4)
  task = await _task(db, board, status="IN_PROGRESS")

  res = await outbound.on_task_created(db, task)

  assert res["project"]["option"] == "IN PROGRESS"
  assert project.items[0]["values"] == {"PVTSSF_status": "opt_in_progress"}


@pytest.mark.anyio
async def test_project_failure_does_not_lose_the_issue(db, github):
  board = await make_board(db, project_id=12)
  task = await _task(db, board)

  res = await outbound.on_task_created(db, task)

  assert res["ok"] is True
  assert "error" in res["project"]
  await db.refresh(task)
  assert task.github_issue_number == 1


@pytest.mark.anyio
async def test_push_board_creates_and_updates(db, github):
  board = await make_board(db)
  linked = await _task(db, board, title="Linked")
  await outbound.on_task_created(db, linked)
  await _task(db, board, title="Fresh", status="BLOCKED")
  linked.status = "IN_REVIEW"
  await db.commit()

  res = await outbound.push_board(db, board)

  assert res == {"ok": True, "created": 1, "updated": 1, "failed": 0, "skipped": 0}
  assert github.issues[1]["labels"] == ["in-review"]
  assert github.issues[2]["labels"] == ["blocked"]


@pytest.mark.anyio
async def test_issue_already_paired_by_a_webhook_is_reported_not_raised(db, github):
  board = await make_board(db)
  db.add(Task(board_id=board.id, title="From webhook", status="TODO", github_issue_number=1))
  await db.commit()
  local = await _task(db, board, title="Local copy")

  res = await outbound.on_task_created(db, local)

  assert res["ok"] is False
  assert res["error"] == "issue-already-linked"
  assert res["linkedIssueNumber"] == 1
  assert res["issueNumber"] is None
  await db.refresh(local)
  assert local.github_issue_number is None
  assert local.title == "Local copy"
  # The session is usable again after the failed attempt.
  linked = (await db.execute(select(Task).where(Task.github_issue_number == 1))).scalar_one()
  assert linked.title == "From webhook"


@pytest.mark.anyio
async def test_failed_update_leaves_the_session_usable(db, github):
  board = await make_board(db)
  task = await _task(db, board)
  await outbound.on_task_created(db, task)
  github.failures["PATCH /repos/acme/widgets/issues/1"] = 500

  res = await outbound.on_task_updated(db, task)

  assert res["ok"] is False
  assert res["issueNumber"] == 1
  assert "500" in res["error"]
  await db.refresh(task)
  assert task.github_issue_number == 1


@pytest.mark.anyio
async def test_push_board_continues_after_a_failed_task(db, github):
  board = await make_board(db)
  db.add(Task(board_id=board.id, title="Unlinked on GitHub", status="TODO", github_issue_number=1, github_desynced=True))
  await db.commit()
  await _task(db, board, title="Collides")
  await _task(db, board, title="Later", status="BLOCKED")

  res = await outbound.push_board(db, board)

  assert res == {"ok": False, "created": 1, "updated": 0, "failed": 1, "skipped": 1}
  assert github.issues[2]["labels"] == ["blocked"]
  later = (await db.execute(select(Task).where(Task.title == "Later"))).scalar_one()
  assert later.github_issue_number == 2


@pytest.mark.anyio
async def test_unknown_status_is_reported_without_touching_github(db, github):
  board = await make_board(db)
  task = await _task(db, board, status="ARCHIVED")

  res = await outbound.on_task_created(db, task)

  assert res["ok"] is False
  assert "Unknown task status" in res["error"]
  assert github.calls == []
