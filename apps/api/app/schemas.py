from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class WebhookAckOut(BaseModel):
  received: bool = True
  event: str | None = None
  action: str | None = None
  taskId: str | None = None
  issueNumber: int | None = None
  changed: bool | None = None
  message: str | None = None
  error: str | None = None
  idempotentReplay: bool | None = None


class WebhookEventOut(BaseModel):
  id: str
  source: str
  idempotencyKey: str | None
  eventType: str | None
  action: str | None
  receivedAt: datetime
  processed: bool
  processedAt: datetime | None
  result: dict[str, Any] | None
  error: str | None


class GitHubSyncIn(BaseModel):
  boardId: str = Field(min_length=1)
  direction: Literal["to-github", "from-github", "both"] = "both"

  @field_validator("boardId")
  @classmethod
  def _strip_board_id(cls, v: str) -> str:
    s = v.strip()
    if not s:
      raise ValueError("boardId is required")
    return s


class GitHubSyncOut(BaseModel):
  message: str = "Sync completed"
  direction: str
  pushed: dict[str, Any] | None = None
  pulled: dict[str, Any] | None = None
