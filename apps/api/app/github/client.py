from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx
import structlog

from app.config import settings
from app.github import queries

logger = structlog.get_logger(__name__)

_REPO_NAME_RE = re.compile(r"^[\w\-\.]+/[\w\-\.]+$")
_OP_NAME_RE = re.compile(r"(?:query|mutation)\s+(\w+)")


class ExternalAPIError(RuntimeError):
  def __init__(self, *, status_code: int, body: Any, message: str | None = None) -> None:
    super().__init__(message or f"GitHub request failed with status {status_code}")
    self.status_code = status_code
    self.body = body
    self.message = message or f"GitHub request failed with status {status_code}"


@dataclass(frozen=True)
class GitHubIssue:
  number: int
  node_id: str | None
  title: str
  body: str
  state: str  # open | closed
  labels: frozenset[str]

  @property
  def is_closed(self) -> bool:
    return self.state == "closed"


@dataclass(frozen=True)
class IssueRef:
  node_id: str
  number: int
  repo_name: str | None


@dataclass(frozen=True)
class ProjectOption:
  id: str
  name: str


@dataclass(frozen=True)
class ProjectField:
  id: str
  name: str
  # None for fields that are not single-select
  options: tuple[ProjectOption, ...] | None = None

  @property
  def is_single_select(self) -> bool:
    return self.options is not None


@dataclass(frozen=True)
class ProjectV2:
  id: str
  title: str
  fields: tuple[ProjectField, ...]


@dataclass(frozen=True)
class ProjectItem:
  id: str
  content_id: str | None
  issue_number: int | None


def is_valid_repo_name(repo_name: str | None) -> bool:
  return bool(_REPO_NAME_RE.fullmatch((repo_name or "").strip()))


def split_repo_name(repo_name: str) -> tuple[str, str]:
  name = (repo_name or "").strip()
  if not is_valid_repo_name(name):
    raise ValueError(f"Invalid repository name {repo_name!r}; expected 'owner/repo'")
  owner, repo = name.split("/", 1)
  return owner, repo


def _label_names(raw: Any) -> frozenset[str]:
  out: set[str] = set()
  for lbl in raw or []:
    if isinstance(lbl, str) and lbl.strip():
      out.add(lbl.strip())
    elif isinstance(lbl, dict) and isinstance(lbl.get("name"), str) and lbl["name"].strip():
      out.add(lbl["name"].strip())
  return frozenset(out)


def parse_issue(data: dict[str, Any]) -> GitHubIssue:
  number = data.get("number")
  if not isinstance(number, int):
    raise ValueError("GitHub issue payload is missing a number")
  state = str(data.get("state") or "open").strip().lower()
  return GitHubIssue(
    number=number,
    node_id=data.get("node_id") if isinstance(data.get("node_id"), str) else None,
    title=str(data.get("title") or "").strip(),
    body=str(data.get("body") or ""),
    state="closed" if state == "closed" else "open",
    labels=_label_names(data.get("labels")),
  )


def parse_project(node: Any) -> ProjectV2 | None:
  if not isinstance(node, dict) or not isinstance(node.get("id"), str):
    return None
  fields: list[ProjectField] = []
  for f in ((node.get("fields") or {}).get("nodes") or []):
    # Unsupported field types come back as empty objects.
    if not isinstance(f, dict) or not isinstance(f.get("id"), str):
      continue
    options: tuple[ProjectOption, ...] | None = None
    if isinstance(f.get("options"), list):
      options = tuple(
        ProjectOption(id=o["id"], name=str(o.get("name") or ""))
        for o in f["options"]
        if isinstance(o, dict) and isinstance(o.get("id"), str)
      )
    fields.append(ProjectField(id=f["id"], name=str(f.get("name") or ""), options=options))
  return ProjectV2(id=node["id"], title=str(node.get("title") or ""), fields=tuple(fields))


def parse_project_items(data: Any) -> list[ProjectItem]:
  node = (data or {}).get("node") if isinstance(data, dict) else None
  items = ((node or {}).get("items") or {}).get("nodes") or []
  out: list[ProjectItem] = []
  for it in items:
    if not isinstance(it, dict) or not isinstance(it.get("id"), str):
      continue
    content = it.get("content") if isinstance(it.get("content"), dict) else {}
    out.append(
      ProjectItem(
        id=it["id"],
        content_id=content.get("id") if isinstance(content.get("id"), str) else None,
        issue_number=content.get("number") if isinstance(content.get("number"), int) else None,
      )
    )
  return out


def _error_message(payload: Any) -> str:
  if isinstance(payload, dict):
    msg = payload.get("message")
    if isinstance(msg, str) and msg.strip():
      return msg.strip()
    errs = payload.get("errors")
    if isinstance(errs, list) and errs:
      first = errs[0]
      if isinstance(first, dict) and first.get("message"):
        return str(first["message"])
  if isinstance(payload, str) and payload.strip():
    return payload.strip()[:500]
  return "GitHub request failed"


class GitHubClient:
  def __init__(
    self,
    token: str,
    *,
    api_url: str | None = None,
    graphql_url: str | None = None,
    timeout: float | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
  ) -> None:
    t = (token or "").strip()
    if not t:
      raise ValueError("GitHub token is required")
    self.api_url = (api_url or settings.github_api_url).rstrip("/")
    self.graphql_url = graphql_url or settings.github_graphql_url
    self._client = httpx.AsyncClient(
      base_url=self.api_url,
      timeout=timeout or settings.github_timeout_seconds,
      transport=transport,
      headers={
        "Accept": "application/vnd.github+json",
        "Authorization": f"Bearer {t}",
        "X-GitHub-Api-Version": "2022-11-28",
        "User-Agent": settings.github_user_agent,
      },
    )

  async def __aenter__(self) -> GitHubClient:
    return self

  async def __aexit__(self, *exc: Any) -> None:
    await self.aclose()

  async def aclose(self) -> None:
    await self._client.aclose()

  async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
    start = time.monotonic()
    try:
      r = await self._client.request(method, url, **kwargs)
    except httpx.HTTPError as exc:
      logger.warning("github.request.transport_error", method=method, url=url, error=str(exc))
      raise ExternalAPIError(status_code=0, body=None, message=f"GitHub request failed: {exc}") from exc
    elapsed_ms = round((time.monotonic() - start) * 1000.0, 1)
    if r.status_code >= 400:
      try:
        payload: Any = r.json()
      except ValueError:
        payload = (r.text or "")[:800]
      logger.debug("github.request.failed", method=method, url=url, status=r.status_code, elapsed_ms=elapsed_ms)
      raise ExternalAPIError(status_code=r.status_code, body=payload, message=_error_message(payload))
    logger.debug("github.request", method=method, url=url, status=r.status_code, elapsed_ms=elapsed_ms)
    if r.status_code == 204 or not r.content:
      return None
    return r.json()

  async def graphql(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
    op = _OP_NAME_RE.search(query)
    payload: dict[str, Any] = {"query": query}
    if variables:
      payload["variables"] = variables
    data = await self._request("POST", self.graphql_url, json=payload)
    if not isinstance(data, dict):
      raise ExternalAPIError(status_code=200, body=data, message="GraphQL response is not an object")
    errors = data.get("errors")
    if errors:
      raise ExternalAPIError(status_code=200, body=errors, message=f"{op.group(1) if op else 'GraphQL'}: {_error_message(data)}")
    return data.get("data") or {}

  # REST: issues and labels

  async def create_issue(self, owner: str, repo: str, *, title: str, body: str = "", labels: list[str] | None = None) -> GitHubIssue:
    payload: dict[str, Any] = {"title": title, "body": body or ""}
    if labels:
      payload["labels"] = labels
    data = await self._request("POST", f"/repos/{owner}/{repo}/issues", json=payload)
    return parse_issue(data)

  async def get_issue(self, owner: str, repo: str, number: int) -> GitHubIssue:
    data = await self._request("GET", f"/repos/{owner}/{repo}/issues/{int(number)}")
    return parse_issue(data)

  async def update_issue(
    self,
    owner: str,
    repo: str,
    number: int,
    *,
    title: str | None = None,
    body: str | None = None,
    state: str | None = None,
  ) -> GitHubIssue:
    patch: dict[str, Any] = {}
    if title is not None:
      patch["title"] = title
    if body is not None:
      patch["body"] = body
    if state is not None:
      patch["state"] = state
    data = await self._request("PATCH", f"/repos/{owner}/{repo}/issues/{int(number)}", json=patch)
    return parse_issue(data)

  async def close_issue(self, owner: str, repo: str, number: int) -> GitHubIssue:
    return await self.update_issue(owner, repo, number, state="closed")

  async def list_issues(self, owner: str, repo: str, *, state: str = "all", per_page: int = 100, max_pages: int = 10) -> list[GitHubIssue]:
    out: list[GitHubIssue] = []
    for page in range(1, max_pages + 1):
      data = await self._request(
        "GET",
        f"/repos/{owner}/{repo}/issues",
        params={"state": state, "per_page": per_page, "page": page},
      )
      rows = data if isinstance(data, list) else []
      # The issues endpoint also returns pull requests.
      out.extend(parse_issue(r) for r in rows if isinstance(r, dict) and "pull_request" not in r)
      if len(rows) < per_page:
        break
    return out

  async def add_labels(self, owner: str, repo: str, number: int, labels: list[str]) -> frozenset[str]:
    data = await self._request("POST", f"/repos/{owner}/{repo}/issues/{int(number)}/labels", json={"labels": labels})
    return _label_names(data)

  async def remove_label(self, owner: str, repo: str, number: int, name: str) -> frozenset[str]:
    data = await self._request("DELETE", f"/repos/{owner}/{repo}/issues/{int(number)}/labels/{quote(name, safe='')}")
    return _label_names(data)

  async def create_label(self, owner: str, repo: str, name: str, *, color: str | None = None) -> None:
    await self._request("POST", f"/repos/{owner}/{repo}/labels", json={"name": name, "color": color or settings.github_label_color})

  # GraphQL: issues and projects

  async def get_issue_node_id(self, owner: str, repo: str, number: int) -> str | None:
    data = await self.graphql(queries.GET_ISSUE_NODE_ID, {"owner": owner, "repo": repo, "number": int(number)})
    issue = ((data.get("repository") or {}).get("issue")) or {}
    return issue.get("id") if isinstance(issue.get("id"), str) else None

  async def get_issue_by_node_id(self, node_id: str) -> IssueRef | None:
    data = await self.graphql(queries.GET_ISSUE_BY_NODE_ID, {"id": node_id})
    node = data.get("node") or {}
    if not isinstance(node.get("number"), int):
      return None
    repo = (node.get("repository") or {}).get("nameWithOwner")
    return IssueRef(node_id=node_id, number=node["number"], repo_name=repo if isinstance(repo, str) else None)

  async def get_user_project(self, login: str, number: int) -> ProjectV2 | None:
    data = await self.graphql(queries.GET_USER_PROJECT, {"login": login, "number": int(number)})
    return parse_project((data.get("user") or {}).get("projectV2"))

  async def get_org_project(self, login: str, number: int) -> ProjectV2 | None:
    data = await self.graphql(queries.GET_ORG_PROJECT, {"login": login, "number": int(number)})
    return parse_project((data.get("organization") or {}).get("projectV2"))

  async def list_project_items(self, project_id: str) -> list[ProjectItem]:
    data = await self.graphql(queries.GET_PROJECT_ITEMS, {"projectId": project_id})
    return parse_project_items(data)

  async def add_project_item(self, project_id: str, content_id: str) -> str | None:
    data = await self.graphql(queries.ADD_PROJECT_ITEM, {"projectId": project_id, "contentId": content_id})
    item = ((data.get("addProjectV2ItemById") or {}).get("item")) or {}
    return item.get("id") if isinstance(item.get("id"), str) else None

  async def set_project_item_option(self, project_id: str, item_id: str, field_id: str, option_id: str) -> None:
    await self.graphql(
      queries.UPDATE_PROJECT_ITEM_FIELD,
      {"projectId": project_id, "itemId": item_id, "fieldId": field_id, "optionId": option_id},
    )
