from __future__ import annotations

import secrets

from fastapi import HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db import SessionLocal


async def get_db() -> AsyncSession:
  async with SessionLocal() as session:
    yield session


async def require_service_token(request: Request) -> None:
  expected = (settings.service_api_token or "").strip()
  if not expected:
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service token not configured")
  auth = request.headers.get("authorization")
  if not auth or not auth.lower().startswith("bearer "):
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
  provided = auth.split(" ", 1)[1].strip()
  if not secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid bearer token")
