# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Authentication primitives: password hashing and bearer token hashing.

Stored password format is ``{algorithm}:{salt-hex}:{key-hex}`` so that records
written by an older algorithm stay verifiable after the default changes.
"""

import hashlib
import hmac
import secrets

from starlette.concurrency import run_in_threadpool

from tessera_server.config import settings

PASSWORD_ALGORITHM = "scrypt"
SALT_BYTES = 16
KEY_BYTES = 64
# CPU/memory cost: 128 * N * r bytes = 16 MiB per derivation
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1


def _scrypt(password: str, salt: bytes, length: int) -> bytes:
    return hashlib.scrypt(
        password.encode("utf-8"),
        salt=salt,
        n=SCRYPT_N,
        r=SCRYPT_R,
        p=SCRYPT_P,
        dklen=length,
    )


# algorithm tag -> key derivation(password, salt, key length)
_DERIVERS = {
    PASSWORD_ALGORITHM: _scrypt,
}


def hash_password(password: str) -> str:
    """Hash a password for storage with a fresh random salt."""
    salt = secrets.token_bytes(SALT_BYTES)
    derived = _scrypt(password, salt, KEY_BYTES)
    return f"{PASSWORD_ALGORITHM}:{salt.hex()}:{derived.hex()}"


def verify_password(plain: str, encoded: str) -> bool:
    """Verify a password against its encoded hash. Malformed input is simply False."""
    if not isinstance(encoded, str):
        return False
    parts = encoded.split(":")
    if len(parts) != 3:
        return False
    algorithm, salt_hex, key_hex = parts
    derive = _DERIVERS.get(algorithm)
    if derive is None or not salt_hex or not key_hex:
        return False
    try:
        salt = bytes.fromhex(salt_hex)
        stored = bytes.fromhex(key_hex)
    except ValueError:
        return False
    try:
        derived = derive(plain, salt, len(stored))
    except (ValueError, MemoryError):
        return False
    return hmac.compare_digest(derived, stored)


async def hash_password_async(password: str) -> str:
    """hash_password on a worker thread so the event loop keeps serving other requests."""
    return await run_in_threadpool(hash_password, password)


async def verify_password_async(plain: str, encoded: str) -> bool:
    return await run_in_threadpool(verify_password, plain, encoded)


def generate_token(nbytes: int = 32) -> str:
    """Unguessable random bearer token (hex)."""
    return secrets.token_hex(nbytes)


def hash_token(token: str, secret: str | None = None) -> str:
    """One-way, deterministic token digest used as the lookup key in storage."""
    key = (secret or settings.session_secret).encode("utf-8")
    return hmac.new(key, token.encode("utf-8"), hashlib.sha256).hexdigest()


def normalize_email(email: str) -> str:
    return email.strip().lower()
