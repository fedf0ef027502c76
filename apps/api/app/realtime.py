from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TaskChange:
  board_id: str
  task_id: str
  event: str  # task-created | task-updated
  payload: dict[str, Any] = field(default_factory=dict)

  @property
  def channel(self) -> str:
    return f"board-{self.board_id}"


class TaskChangeNotifier(Protocol):
  async def publish(self, change: TaskChange) -> None: ...


class LogTaskChangeNotifier:
  async def publish(self, change: TaskChange) -> None:
    logger.info("realtime.task_change", channel=change.channel, event_name=change.event, task_id=change.task_id)


_notifier: TaskChangeNotifier = LogTaskChangeNotifier()


async def publish_task_changes(changes: list[TaskChange]) -> None:
  # Clients re-fetch on their next poll if a push is lost.
  for change in changes:
    try:
      await _notifier.publish(change)
    except Exception as exc:
      logger.warning("realtime.publish_failed", channel=change.channel, task_id=change.task_id, error=str(exc))
