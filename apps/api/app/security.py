from __future__ import annotations

import binascii
import hashlib
import hmac
import os
import re

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.config import ENCRYPTION_KEY_BYTES, ConfigurationError, settings

NONCE_BYTES = 12
SIGNATURE_PREFIX = "sha256="

# GitHub tokens (ghp_, gho_, github_pat_, ...) are printable ASCII without whitespace.
_TOKEN_SHAPE_RE = re.compile(r"^[\x21-\x7e]+$")


class CryptoError(RuntimeError):
  pass


class SignatureError(RuntimeError):
  pass


def require_encryption_key(raw: str | None = None) -> bytes:
  key = settings.github_encryption_key if raw is None else raw
  b = (key or "").encode("utf-8")
  if not b:
    raise ConfigurationError("GITHUB_ENCRYPTION_KEY is not configured")
  if len(b) < ENCRYPTION_KEY_BYTES:
    raise ConfigurationError(f"GITHUB_ENCRYPTION_KEY must be at least {ENCRYPTION_KEY_BYTES} bytes")
  return b[:ENCRYPTION_KEY_BYTES]


def _looks_like_token(value: str) -> bool:
  return bool(_TOKEN_SHAPE_RE.fullmatch(value or ""))


def encrypt_token(token: str, *, key: str | None = None) -> str:
  t = (token or "").strip()
  if not _looks_like_token(t):
    raise CryptoError("Refusing to encrypt a value that is not an access token")
  nonce = os.urandom(NONCE_BYTES)
  ct = AESGCM(require_encryption_key(key)).encrypt(nonce, t.encode("utf-8"), None)
  return f"{nonce.hex()}:{ct.hex()}"


def decrypt_token(stored: str, *, key: str | None = None) -> str:
  parts = (stored or "").split(":")
  if len(parts) != 2 or not parts[0] or not parts[1]:
    raise CryptoError("Stored token is not in iv:ciphertext form")
  try:
    nonce = bytes.fromhex(parts[0])
    ct = bytes.fromhex(parts[1])
  except ValueError as exc:
    raise CryptoError("Stored token is not valid hex") from exc
  if len(nonce) != NONCE_BYTES:
    raise CryptoError("Stored token has an invalid IV length")
  try:
    plain = AESGCM(require_encryption_key(key)).decrypt(nonce, ct, None)
  except InvalidTag as exc:
    raise CryptoError("Stored token cannot be decrypted with the current key; reconnect the board") from exc
  try:
    token = plain.decode("utf-8")
  except UnicodeDecodeError as exc:
    raise CryptoError("Decrypted token is not valid UTF-8") from exc
  if not _looks_like_token(token):
    raise CryptoError("Decrypted value does not look like an access token")
  return token


def token_hint(token: str) -> str:
  t = (token or "").strip()
  if len(t) <= 8:
    return "****"
  return f"****{t[-4:]}"


def sign_payload(raw_body: bytes, secret: str) -> str:
  digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
  return SIGNATURE_PREFIX + digest


def verify_signature(raw_body: bytes, signature_header: str | None, secret: str) -> bool:
  if not secret:
    raise ConfigurationError("Webhook secret is not configured")
  provided = (signature_header or "").strip()
  if not provided.startswith(SIGNATURE_PREFIX):
    return False
  try:
    binascii.unhexlify(provided[len(SIGNATURE_PREFIX):])
  except (binascii.Error, ValueError):
    return False
  expected = sign_payload(raw_body, secret)
  return hmac.compare_digest(provided.encode("ascii", "ignore"), expected.encode("ascii"))


def require_signature(raw_body: bytes, signature_header: str | None, secret: str | None) -> None:
  s = (secret or "").strip()
  if not s:
    raise ConfigurationError("GitHub webhook secret not configured")
  if not verify_signature(raw_body, signature_header, s):
    raise SignatureError("Invalid signature")
