from __future__ import annotations

from dataclasses import dataclass

import structlog

from app.github.client import ExternalAPIError, GitHubClient, ProjectField, ProjectV2, split_repo_name
from app.github.status import NoMatchingOption, TaskStatus, match_by_name, match_option, status_to_option_name

logger = structlog.get_logger(__name__)

STATUS_FIELD_NAME = "Status"


class ResolutionError(LookupError):
  pass


@dataclass(frozen=True)
class ProjectSyncResult:
  project_id: str
  item_id: str | None
  added: bool
  field_updated: bool
  option_name: str | None = None
  skipped_reason: str | None = None

  def as_dict(self) -> dict:
    return {
      "projectId": self.project_id,
      "itemId": self.item_id,
      "added": self.added,
      "fieldUpdated": self.field_updated,
      "option": self.option_name,
      "skipped": self.skipped_reason,
    }


async def resolve_project(client: GitHubClient, owner: str, number: int) -> ProjectV2:
  # The API needs to know whether the owner is a user or an organization; try both.
  project: ProjectV2 | None = None
  try:
    project = await client.get_user_project(owner, number)
  except ExternalAPIError as exc:
    if exc.status_code != 200:
      raise
    if "read:project" in exc.message:
      raise ResolutionError("Missing GitHub scope read:project; reconnect the board to grant project access") from exc
    logger.debug("github.project.user_lookup_failed", owner=owner, number=number, error=exc.message)
  if project is None:
    try:
      project = await client.get_org_project(owner, number)
    except ExternalAPIError as exc:
      if exc.status_code != 200:
        raise
      if "read:project" in exc.message:
        raise ResolutionError("Missing GitHub scope read:project; reconnect the board to grant project access") from exc
      logger.debug("github.project.org_lookup_failed", owner=owner, number=number, error=exc.message)
  if project is None:
    raise ResolutionError(f"Project {number} not found for {owner}")
  return project


def find_status_field(project: ProjectV2) -> ProjectField | None:
  single_select = [f for f in project.fields if f.is_single_select]
  try:
    return match_by_name(single_select, STATUS_FIELD_NAME, name=lambda f: f.name)
  except NoMatchingOption:
    return None


async def find_project_item(client: GitHubClient, project: ProjectV2, content_id: str) -> str | None:
  items = await client.list_project_items(project.id)
  for item in items:
    if item.content_id == content_id:
      return item.id
  return None


async def ensure_project_item(client: GitHubClient, project: ProjectV2, content_id: str) -> tuple[str | None, bool]:
  item_id = await find_project_item(client, project, content_id)
  if item_id:
    return item_id, False
  item_id = await client.add_project_item(project.id, content_id)
  return item_id, True


async def sync_project_status(
  client: GitHubClient,
  *,
  repo_name: str,
  issue_number: int,
  project_number: int,
  status: str | TaskStatus,
) -> ProjectSyncResult:
  owner, repo = split_repo_name(repo_name)
  content_id = await client.get_issue_node_id(owner, repo, issue_number)
  if not content_id:
    raise ResolutionError(f"Issue #{issue_number} not found in {repo_name}")

  project = await resolve_project(client, owner, project_number)
  field = find_status_field(project)
  if field is None:
    logger.warning(
      "github.project.status_field_missing",
      project_id=project.id,
      fields=[f.name for f in project.fields],
    )

  item_id, added = await ensure_project_item(client, project, content_id)
  if field is None:
    return ProjectSyncResult(project_id=project.id, item_id=item_id, added=added, field_updated=False, skipped_reason="no-status-field")
  if not item_id:
    return ProjectSyncResult(project_id=project.id, item_id=None, added=added, field_updated=False, skipped_reason="item-not-added")

  try:
    option = match_option(field.options or (), status, name=lambda o: o.name)
  except NoMatchingOption as exc:
    logger.warning(
      "github.project.status_option_missing",
      project_id=project.id,
      wanted=status_to_option_name(status),
      available=exc.available,
    )
    return ProjectSyncResult(project_id=project.id, item_id=item_id, added=added, field_updated=False, skipped_reason="no-matching-option")

  await client.set_project_item_option(project.id, item_id, field.id, option.id)
  logger.info(
    "github.project.status_set",
    project_id=project.id,
    issue_number=issue_number,
    option=option.name,
    added=added,
  )
  return ProjectSyncResult(project_id=project.id, item_id=item_id, added=added, field_updated=True, option_name=option.name)
