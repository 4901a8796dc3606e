"""
iam/credentials.py -- Random secrets, one-way hashes, and API key format.

Security design decisions:
  Randomness: everything comes from the `secrets` module (CSPRNG). The
       `random` module is never used for credentials.

  API keys: "{env_a}_{env_b}_{hex}" where "{env_a}_{env_b}" is the live or
       test prefix and hex is token_hex(32) -- 256 bits of entropy. We store
       SHA-256(key). A slow hash is unnecessary for a 256-bit random secret and
       a deterministic digest gives O(1) lookup by hash.

  Refresh tokens: stored as SHA-256 digests too (hash_token), so a database
       read does not yield usable tokens.

  One-time codes: 6 digits is low entropy, so codes at rest use bcrypt
       (hash_secret / verify_secret), the same collaborator a password store
       would use. Attempt counting bounds online guessing.

Layer rule: no imports from the rest of the project.
"""

from __future__ import annotations

import hashlib
import secrets
import string

import bcrypt

_HEX_DIGITS = frozenset(string.hexdigits.lower())


# ---------------------------------------------------------------------------
# Random values
# ---------------------------------------------------------------------------


def generate_otp_code(length: int = 6) -> str:
    """Return a numeric code of exactly `length` digits (leading zeros kept)."""
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def generate_token(byte_length: int = 32) -> str:
    """Return a hex token for invitations, sessions and password resets."""
    return secrets.token_hex(byte_length)


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


def generate_api_key(prefix: str, byte_length: int = 32) -> tuple[str, str]:
    """Generate an API key.

    Returns (full_key, display_prefix). The display prefix keeps the first
    eight hex characters so users can tell keys apart in listings.
    """
    secret = secrets.token_hex(byte_length)
    return f"{prefix}_{secret}", f"{prefix}_{secret[:8]}..."


def hash_api_key(key: str) -> str:
    """Return the SHA-256 hex digest of an API key."""
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def validate_api_key_format(key: str, prefixes: tuple[str, ...] | list[str], byte_length: int = 32) -> bool:
    """Return True if key looks like "{prefix}_{hex}" for one of `prefixes`.

    Shape only -- says nothing about whether the key exists. The extractor
    uses this to decide whether a header value is an API key at all.
    """
    parts = key.split("_", 2)
    if len(parts) != 3:
        return False
    if f"{parts[0]}_{parts[1]}" not in prefixes:
        return False
    secret = parts[2]
    return len(secret) == 2 * byte_length and all(c in _HEX_DIGITS for c in secret)


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def hash_token(token: str) -> str:
    """SHA-256 digest for high-entropy tokens stored at rest."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def hash_secret(secret: str, rounds: int = 10) -> str:
    """Return a bcrypt hash of a low-entropy secret (one-time codes)."""
    return bcrypt.hashpw(secret.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_secret(secret: str, hashed: str) -> bool:
    """Return True if the secret matches the bcrypt hash.

    A malformed stored hash counts as a mismatch.
    """
    try:
        return bcrypt.checkpw(secret.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False
