from __future__ import annotations

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import ConfigurationError, settings, validate_sync_settings
from app.logging import configure_logging
from app.routers.github import router as github_router
from app.routers.webhooks import router as webhooks_router
from app.security import SignatureError

logger = structlog.get_logger(__name__)

app = FastAPI(title="Issue Sync API", version="0.1.0")


@app.exception_handler(SignatureError)
async def _signature_error_handler(_, exc: SignatureError) -> JSONResponse:
  logger.warning("github.webhook.signature_rejected", error=str(exc))
  return JSONResponse(status_code=401, content={"error": str(exc)})


@app.exception_handler(ConfigurationError)
async def _configuration_error_handler(_, exc: ConfigurationError) -> JSONResponse:
  logger.error("config.invalid", error=str(exc))
  return JSONResponse(status_code=500, content={"error": str(exc)})


app.add_middleware(
  CORSMiddleware,
  allow_origins=settings.cors_origin_list(),
  allow_credentials=True,
  allow_methods=["*"],
  allow_headers=["*"],
)

app.include_router(webhooks_router)
app.include_router(github_router)


@app.get("/health")
async def health() -> dict:
  return {"ok": True}


@app.get("/version")
async def version() -> dict:
  return {"version": settings.app_version}


@app.on_event("startup")
async def _startup() -> None:
  configure_logging()
  validate_sync_settings()
  logger.info("app.started", environment=settings.environment, version=settings.app_version)
