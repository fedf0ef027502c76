from __future__ import annotations

import json
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.deps import get_db, require_service_token
from app.models import InboundWebhookEvent
from app.realtime import publish_task_changes
from app.schemas import WebhookAckOut, WebhookEventOut
from app.security import require_signature
from app.sync import inbound

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SOURCE = "github"


def _error(status_code: int, message: str) -> JSONResponse:
  return JSONResponse(status_code=status_code, content={"error": message})


def _finish(ev: InboundWebhookEvent, *, result: dict | None = None, error: str | None = None) -> None:
  ev.processed = True
  ev.processed_at = datetime.now(timezone.utc)
  ev.result = result
  ev.error = error


async def _ledger_entry(db: AsyncSession, delivery: str | None) -> InboundWebhookEvent | None:
  if not delivery:
    return None
  res = await db.execute(
    select(InboundWebhookEvent).where(InboundWebhookEvent.source == SOURCE, InboundWebhookEvent.idempotency_key == delivery)
  )
  return res.scalar_one_or_none()


@router.get("/github")
async def github_webhook_get() -> JSONResponse:
  return _error(status.HTTP_405_METHOD_NOT_ALLOWED, "This endpoint only accepts POST requests from GitHub webhooks")


@router.post("/github", response_model=WebhookAckOut, response_model_exclude_none=True)
async def github_webhook(request: Request, db: AsyncSession = Depends(get_db)) -> WebhookAckOut | JSONResponse:
  raw = await request.body()
  # Raises SignatureError (401) or ConfigurationError (500) before anything is parsed or stored.
  require_signature(raw, request.headers.get("x-hub-signature-256"), settings.github_webhook_secret)

  try:
    body = json.loads(raw)
  except ValueError:
    return _error(status.HTTP_400_BAD_REQUEST, "Invalid JSON body")
  if not isinstance(body, dict):
    return _error(status.HTTP_400_BAD_REQUEST, "JSON object body required")

  event_type = (request.headers.get("x-github-event") or "").strip() or None
  delivery = (request.headers.get("x-github-delivery") or "").strip() or None
  action = body.get("action") if isinstance(body.get("action"), str) else None
  log = logger.bind(event_name=event_type, action=action, delivery=delivery)

  existing = await _ledger_entry(db, delivery)
  if existing and existing.processed and existing.result is not None and existing.error is None:
    log.info("github.webhook.replayed")
    return WebhookAckOut(**existing.result, idempotentReplay=True)

  ev = existing or InboundWebhookEvent(
    source=SOURCE,
    idempotency_key=delivery,
    event_type=event_type,
    action=action,
    body=body,
    received_at=datetime.now(timezone.utc),
    processed=False,
  )
  db.add(ev)
  try:
    await db.commit()
  except IntegrityError:
    # A concurrent delivery with the same id claimed the ledger row.
    await db.rollback()
    log.info("github.webhook.duplicate_in_flight")
    return WebhookAckOut(received=True, event=event_type, action=action, idempotentReplay=True, message="Delivery already received")

  try:
    for attempt in (1, 2):
      try:
        result = await inbound.handle_event(db, event_type=event_type, payload=body)
        _finish(ev, result=result.body)
        await db.commit()
        break
      except IntegrityError:
        # Lost the race on (board_id, github_issue_number); the retry sees the winner's row.
        await db.rollback()
        await db.refresh(ev)
        if attempt == 2:
          raise
        log.info("github.webhook.upsert_conflict_retry")
  except Exception as exc:
    await db.rollback()
    await db.refresh(ev)
    log.exception("github.webhook.failed")
    _finish(ev, error=f"{exc.__class__.__name__}: {exc}")
    await db.commit()
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Webhook processing failed")

  await publish_task_changes(result.changes)
  log.info("github.webhook.processed", task_id=result.body.get("taskId"), changes=len(result.changes))
  return WebhookAckOut(**result.body)


@router.get("/events", response_model=list[WebhookEventOut])
async def list_events(
  limit: int = 50,
  processed: bool | None = None,
  _: None = Depends(require_service_token),
  db: AsyncSession = Depends(get_db),
) -> list[WebhookEventOut]:
  lim = max(1, min(200, int(limit)))
  q = select(InboundWebhookEvent).order_by(InboundWebhookEvent.received_at.desc()).limit(lim)
  if processed is not None:
    q = q.where(InboundWebhookEvent.processed.is_(processed))
  res = await db.execute(q)
  return [
    WebhookEventOut(
      id=ev.id,
      source=ev.source,
      idempotencyKey=ev.idempotency_key,
      eventType=ev.event_type,
      action=ev.action,
      receivedAt=ev.received_at,
      processed=ev.processed,
      processedAt=ev.processed_at,
      result=ev.result,
      error=ev.error,
    )
    for ev in res.scalars().all()
  ]
