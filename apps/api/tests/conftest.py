from __future__ import annotations

import json
import os
import sys
import tempfile
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
  sys.path.insert(0, str(ROOT))

# Settings are read at import time; pin them before the app is imported.
_TMP = Path(tempfile.mkdtemp(prefix="issue-sync-"))
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TMP / 'issue_sync_test.db'}")
os.environ["ENVIRONMENT"] = "development"
os.environ["GITHUB_ENCRYPTION_KEY"] = "test-encryption-key-0123456789abcdef"
os.environ["GITHUB_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["SERVICE_API_TOKEN"] = "test-service-token"

from app.config import settings
from app.db import SessionLocal, engine
from app.github.client import GitHubClient
from app.main import app
from app.models import Base, Board, Lane
from app.security import decrypt_token, sign_payload
from app.sync import boards as board_sync

from tests.fake_github import FakeGitHub

GITHUB_TOKEN = "ghp_testtoken1234567890"
REPO = "acme/widgets"
LANES = (("To do", "TODO"), ("Doing", "IN_PROGRESS"), ("Review", "IN_REVIEW"), ("Blocked", "BLOCKED"), ("Done", "DONE"))


@pytest.fixture(scope="session")
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture(autouse=True)
async def _fresh_schema(anyio_backend) -> None:
  db_name = settings.database_url.rsplit("/", 1)[-1]
  if "test" not in db_name:
    raise RuntimeError(
      "Refusing to run destructive tests against non-test DB. "
      "Set DATABASE_URL to a *_test database (e.g. issue_sync_test)."
    )
  async with engine.begin() as conn:
    await conn.run_sync(Base.metadata.drop_all)
    await conn.run_sync(Base.metadata.create_all)
  yield
  async with engine.begin() as conn:
    await conn.run_sync(Base.metadata.drop_all)
  await engine.dispose()


@pytest.fixture
async def client(anyio_backend) -> AsyncClient:
  transport = ASGITransport(app=app)
  async with AsyncClient(transport=transport, base_url="http://localhost") as c:
    yield c


@pytest.fixture
async def db(anyio_backend):
  async with SessionLocal() as session:
    yield session


@pytest.fixture
def github(monkeypatch) -> FakeGitHub:
  """Route every board client through an in-memory GitHub."""
  fake = FakeGitHub(REPO)

  def _open_client(board):
    return GitHubClient(decrypt_token(board.github_token_encrypted), transport=fake.transport())

  monkeypatch.setattr(board_sync, "open_client", _open_client)
  return fake


async def make_board(db, *, name: str = "Widgets", connected: bool = True, project_id: int | None = None, repo: str = REPO) -> Board:
  board = Board(name=name)
  db.add(board)
  await db.flush()
  for pos, (lane_name, status) in enumerate(LANES):
    db.add(Lane(board_id=board.id, name=lane_name, status=status, position=pos))
  if connected:
    await board_sync.connect_board(db, board, token=GITHUB_TOKEN, repo_name=repo, project_id=project_id)
  await db.commit()
  return board


def signed_headers(body: bytes, *, event: str, delivery: str | None = None, secret: str | None = None) -> dict[str, str]:
  headers = {
    "Content-Type": "application/json",
    "X-GitHub-Event": event,
    "X-Hub-Signature-256": sign_payload(body, secret or settings.github_webhook_secret or ""),
  }
  if delivery:
    headers["X-GitHub-Delivery"] = delivery
  return headers


async def post_webhook(client: AsyncClient, event: str, payload: dict, *, delivery: str | None = None):
  body = json.dumps(payload).encode("utf-8")
  return await client.post("/webhooks/github", content=body, headers=signed_headers(body, event=event, delivery=delivery))


def service_auth() -> dict[str, str]:
  return {"Authorization": f"Bearer {settings.service_api_token}"}
