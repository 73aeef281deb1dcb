"""
AEAD helpers and token/envelope formats.

Ciphertext format: hex(nonce || ciphertext || tag) with AES-256-GCM,
a 12 byte random nonce and a 16 byte tag. There is no unauthenticated
fallback cipher: when a payload cannot be authenticated it is rejected.
"""
from __future__ import annotations

import binascii
import hashlib
import json
import os
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ga4_relay.core.errors import (
    AuthenticationFailed,
    CryptoError,
    Expired,
    InvalidCiphertext,
    InvalidKeyFormat,
)

NONCE_SIZE = 12
TAG_SIZE = 16
DEFAULT_TOKEN_TTL = 300

# Site-bound keys for tokens minted in the browser: the key rotates every
# TIME_SLOT_SECONDS and the previous slot is still accepted.
TIME_SLOT_SECONDS = 300
_TIME_AUTH = "ga4_time_based_auth_2024"
_TIME_SALT = "ga4_time_based_salt_2024"

_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")


def validate_key(key: str | None) -> bytes:
    """Return the raw 32 byte key for a 64 hex char string."""
    if not isinstance(key, str) or not _KEY_RE.match(key):
        raise InvalidKeyFormat("Encryption key must be exactly 64 hexadecimal characters")
    return bytes.fromhex(key)


def generate_key() -> str:
    return os.urandom(32).hex()


def encrypt(plaintext: str | bytes, key: str) -> str:
    raw_key = validate_key(key)
    data = plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext
    nonce = os.urandom(NONCE_SIZE)
    return (nonce + AESGCM(raw_key).encrypt(nonce, data, None)).hex()


def decrypt(ciphertext_hex: str, key: str) -> bytes:
    raw_key = validate_key(key)
    try:
        blob = bytes.fromhex(ciphertext_hex)
    except (ValueError, TypeError) as e:
        raise InvalidCiphertext("Ciphertext is not valid hex") from e
    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise InvalidCiphertext("Ciphertext shorter than nonce and tag")
    nonce, body = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
    try:
        return AESGCM(raw_key).decrypt(nonce, body, None)
    except InvalidTag as e:
        raise AuthenticationFailed("Authentication tag mismatch") from e


def _open_token(token: str, key: str, expected_type: str) -> dict:
    plain = decrypt(token, key)
    try:
        body = json.loads(plain.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidCiphertext("Token body is not JSON") from e
    if not isinstance(body, dict) or body.get("typ") != expected_type or "data" not in body:
        raise InvalidCiphertext(f"Not a {expected_type} token")
    return body


def create_permanent_token(payload: str, key: str) -> str:
    return encrypt(json.dumps({"typ": "permanent", "data": payload}), key)


def decrypt_permanent_token(token: str, key: str) -> str:
    return _open_token(token, key, "permanent")["data"]


def create_time_boxed_token(payload: str, key: str, ttl: int = DEFAULT_TOKEN_TTL, *, now: float | None = None) -> str:
    issued = int(now if now is not None else time.time())
    body = {"typ": "time_boxed", "data": payload, "iat": issued, "exp": issued + int(ttl)}
    return encrypt(json.dumps(body), key)


def verify_time_boxed_token(token: str, key: str, *, now: float | None = None) -> str:
    body = _open_token(token, key, "time_boxed")
    current = now if now is not None else time.time()
    try:
        expires = float(body["exp"])
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidCiphertext("Token carries no expiry") from e
    if current > expires:
        raise Expired("Token expired")
    return body["data"]


def time_slot_key(site_url: str, slot: int) -> str:
    material = f"{_TIME_AUTH}{site_url}{slot}{_TIME_SALT}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def create_site_time_token(payload: str, site_url: str, ttl: int = DEFAULT_TOKEN_TTL, *, now: float | None = None) -> str:
    current = now if now is not None else time.time()
    slot = int(current // TIME_SLOT_SECONDS)
    return create_time_boxed_token(payload, time_slot_key(site_url, slot), ttl, now=current)


def verify_site_time_token(token: str, site_url: str, *, now: float | None = None) -> str:
    """Verify against the current slot key, then the previous one."""
    current = now if now is not None else time.time()
    slot = int(current // TIME_SLOT_SECONDS)
    last_error: CryptoError | None = None
    for candidate in (slot, slot - 1):
        try:
            return verify_time_boxed_token(token, time_slot_key(site_url, candidate), now=current)
        except AuthenticationFailed as e:
            last_error = e
    raise last_error


class EnvelopeKind(str, Enum):
    PLAIN = "plain"
    PERMANENT = "permanent"
    TIME_BOXED = "time_boxed"


@dataclass(frozen=True)
class Envelope:
    """Stored value tagged with how it was protected."""

    kind: EnvelopeKind
    body: str

    @property
    def encrypted(self) -> bool:
        return self.kind is not EnvelopeKind.PLAIN

    def to_storage(self) -> str:
        return json.dumps({"type": self.kind.value, "body": self.body}, ensure_ascii=False)

    @classmethod
    def from_storage(cls, raw: str) -> "Envelope":
        try:
            doc = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as e:
            raise InvalidCiphertext("Stored value is not an envelope") from e
        if not isinstance(doc, dict) or "type" not in doc or not isinstance(doc.get("body"), str):
            raise InvalidCiphertext("Envelope has no type discriminator")
        try:
            kind = EnvelopeKind(doc["type"])
        except ValueError as e:
            raise InvalidCiphertext(f"Unknown envelope type {doc['type']!r}") from e
        return cls(kind, doc["body"])

    @classmethod
    def seal(cls, value: Any, key: str | None = None, *, ttl: int | None = None) -> "Envelope":
        text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
        if key is None:
            return cls(EnvelopeKind.PLAIN, text)
        if ttl is not None:
            return cls(EnvelopeKind.TIME_BOXED, create_time_boxed_token(text, key, ttl))
        return cls(EnvelopeKind.PERMANENT, create_permanent_token(text, key))

    def open(self, key: str | None = None, *, now: float | None = None) -> str:
        if self.kind is EnvelopeKind.PLAIN:
            return self.body
        if key is None:
            raise InvalidKeyFormat("Encrypted envelope but no key configured")
        if self.kind is EnvelopeKind.PERMANENT:
            return decrypt_permanent_token(self.body, key)
        return verify_time_boxed_token(self.body, key, now=now)


def seal_for_storage(value: Any, key: str | None) -> Envelope:
    return Envelope.seal(value, key)


def open_legacy(raw: str, key: str | None, site_url: str) -> str:
    """
    Decode a stored value written without an envelope.

    Tries a permanent token, a site time token, a bare ciphertext and finally
    plain JSON; the first one that authenticates wins.
    """
    candidates = []
    if key is not None:
        candidates.append(lambda: decrypt_permanent_token(raw, key))
    candidates.append(lambda: verify_site_time_token(raw, site_url))
    if key is not None and is_hex(raw):
        candidates.append(lambda: decrypt(raw, key).decode("utf-8"))
    for attempt in candidates:
        try:
            return attempt()
        except (CryptoError, UnicodeDecodeError):
            continue
    try:
        json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise InvalidCiphertext("Legacy value could not be decoded") from e
    return raw


def open_stored(raw: str | None, key: str | None, site_url: str) -> str | None:
    if raw is None:
        return None
    try:
        envelope = Envelope.from_storage(raw)
    except InvalidCiphertext:
        return open_legacy(raw, key, site_url)
    return envelope.open(key)


def is_hex(value: Any) -> bool:
    if not isinstance(value, str) or not value or len(value) % 2:
        return False
    try:
        binascii.unhexlify(value)
    except (binascii.Error, ValueError):
        return False
    return True
