from __future__ import annotations

from collections.abc import Callable, Iterable
from enum import Enum
from types import MappingProxyType
from typing import TypeVar

T = TypeVar("T")


class TaskStatus(str, Enum):
  TODO = "TODO"
  IN_PROGRESS = "IN_PROGRESS"
  IN_REVIEW = "IN_REVIEW"
  DONE = "DONE"
  BLOCKED = "BLOCKED"


class NoMatchingOption(LookupError):
  def __init__(self, wanted: str, available: Iterable[str]) -> None:
    self.wanted = wanted
    self.available = list(available)
    super().__init__(f"No option matching {wanted!r}; available: {', '.join(self.available) or '(none)'}")


# Shared with inbound sync: labels written here are the labels read back from webhooks.
STATUS_LABELS = MappingProxyType(
  {
    TaskStatus.TODO: "todo",
    TaskStatus.IN_PROGRESS: "in-progress",
    TaskStatus.IN_REVIEW: "in-review",
    TaskStatus.DONE: "done",
    TaskStatus.BLOCKED: "blocked",
  }
)
LABEL_STATUSES = MappingProxyType({label: status for status, label in STATUS_LABELS.items()})
STATUS_LABEL_SET = frozenset(STATUS_LABELS.values())

STATUS_OPTION_NAMES = MappingProxyType(
  {
    TaskStatus.TODO: "Todo",
    TaskStatus.IN_PROGRESS: "In Progress",
    TaskStatus.IN_REVIEW: "In Review",
    TaskStatus.DONE: "Done",
    TaskStatus.BLOCKED: "Blocked",
  }
)

# First match wins when an issue carries several status labels.
LABEL_PRECEDENCE = (
  TaskStatus.IN_PROGRESS,
  TaskStatus.IN_REVIEW,
  TaskStatus.BLOCKED,
  TaskStatus.DONE,
  TaskStatus.TODO,
)


def coerce_status(value: str | TaskStatus | None) -> TaskStatus:
  if isinstance(value, TaskStatus):
    return value
  s = str(value or "").strip().upper().replace("-", "_").replace(" ", "_")
  try:
    return TaskStatus(s)
  except ValueError:
    raise ValueError(f"Unknown task status: {value!r}") from None


def status_to_label(status: str | TaskStatus) -> str:
  return STATUS_LABELS[coerce_status(status)]


def status_to_option_name(status: str | TaskStatus) -> str:
  return STATUS_OPTION_NAMES[coerce_status(status)]


def issue_state_for(status: str | TaskStatus) -> str:
  return "closed" if coerce_status(status) is TaskStatus.DONE else "open"


def is_status_label(name: str) -> bool:
  return (name or "").strip().lower() in STATUS_LABEL_SET


def status_from_labels(labels: Iterable[str]) -> TaskStatus | None:
  present = {(l or "").strip().lower() for l in labels}
  for status in LABEL_PRECEDENCE:
    if STATUS_LABELS[status] in present:
      return status
  return None


def status_from_issue(labels: Iterable[str], state: str) -> TaskStatus:
  found = status_from_labels(labels)
  if found is not None:
    return found
  return TaskStatus.DONE if (state or "").strip().lower() == "closed" else TaskStatus.TODO


def match_by_name(items: Iterable[T], wanted: str, *, name: Callable[[T], str]) -> T:
  """Exact name first, then a case-insensitive scan.

  Raises NoMatchingOption when neither pass finds a candidate.
  """
  candidates = list(items)
  exact = {name(c): c for c in reversed(candidates)}
  if wanted in exact:
    return exact[wanted]
  folded = wanted.casefold()
  for c in candidates:
    if (name(c) or "").casefold() == folded:
      return c
  raise NoMatchingOption(wanted, [name(c) for c in candidates])


def match_option(options: Iterable[T], status: str | TaskStatus, *, name: Callable[[T], str]) -> T:
  return match_by_name(options, status_to_option_name(status), name=name)
