from __future__ import annotations

import pytest

from app.config import ConfigurationError
from app.security import SignatureError, require_signature, sign_payload, verify_signature

SECRET = "s3cret-for-hooks"
BODY = b'{"action":"labeled","issue":{"number":7}}'


def test_signature_matches_githubs_documented_example():
  sig = sign_payload(b"Hello, World!", "It's a Secret to Everybody")
  assert sig == "sha256=757107ea0eb2509fc211221cce984b8a37570b6d7586c22c46f4379c8b043e17"


def test_valid_signature_is_accepted():
  assert verify_signature(BODY, sign_payload(BODY, SECRET), SECRET) is True


def test_any_single_byte_change_is_rejected():
  sig = sign_payload(BODY, SECRET)
  for i in range(len(BODY)):
    tampered = BODY[:i] + bytes([BODY[i] ^ 0x01]) + BODY[i + 1 :]
    assert verify_signature(tampered, sig, SECRET) is False


def test_signature_from_another_secret_is_rejected():
  assert verify_signature(BODY, sign_payload(BODY, "other-secret"), SECRET) is False


@pytest.mark.parametrize(
  "header",
  [None, "", "sha256=", "sha1=0123abcd", "sha256=not-hex-at-all", "757107ea0eb2509fc211221cce984b8a"],
)
def test_missing_or_malformed_headers_are_mismatches(header):
  assert verify_signature(BODY, header, SECRET) is False


def test_uppercase_hex_does_not_match():
  sig = sign_payload(BODY, SECRET)
  assert verify_signature(BODY, "sha256=" + sig.split("=", 1)[1].upper(), SECRET) is False


def test_require_signature_raises_on_mismatch():
  require_signature(BODY, sign_payload(BODY, SECRET), SECRET)
  with pytest.raises(SignatureError):
    require_signature(BODY, "sha256=00", SECRET)


@pytest.mark.parametrize("secret", [None, "", "   "])
def test_missing_secret_is_never_a_skipped_check(secret):
  with pytest.raises(ConfigurationError):
    require_signature(BODY, sign_payload(BODY, SECRET), secret)
