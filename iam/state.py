"""
iam/state.py -- Short-lived OAuth CSRF state tokens.

Between the authorization redirect and the provider callback the flow must
remember which provider was chosen and which invitation (if any) started it.
The state token sent to the provider is the key; the payload is a small JSON
object {"provider": "GOOGLE", "invitation_token": "..."}.

Semantics shared by every backend:
  - generate_state()        32 random bytes, hex-encoded.
  - store_state(t, data)    keep `data` for ttl seconds.
  - get_state_data(t)       destructive read. A second read of the same token
                            fails, which makes callback replay impossible.
  - validate_state(t)       non-destructive existence + TTL check.

Backends:
  InMemoryStateStore  -- single-process deployments and tests.
  RedisStateStore     -- multi-process deployments. GETDEL gives the atomic
                         read-and-delete; SET ... EX handles expiry.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any

import redis

from core.config import Settings
from iam.credentials import generate_token
from iam.errors import InternalError, ValidationError

logger = logging.getLogger("tenantgate.iam.state")

_KEY_PREFIX = "oauth_state:"


def _invalid_state() -> ValidationError:
    return ValidationError("Invalid or expired state parameter.", "invalid_state")


class StateStore(ABC):
    """Interface every state backend implements."""

    def __init__(self, ttl_seconds: int = 600) -> None:
        self.ttl = ttl_seconds

    def generate_state(self) -> str:
        return generate_token(32)

    @abstractmethod
    def store_state(self, state: str, data: dict[str, Any]) -> None: ...

    @abstractmethod
    def get_state_data(self, state: str) -> dict[str, Any]:
        """Return and delete the payload. Raises ValidationError on miss or expiry."""

    @abstractmethod
    def validate_state(self, state: str) -> bool: ...

    def purge_expired(self) -> int:
        """Drop expired entries. Backends with native expiry return 0."""
        return 0


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryStateStore(StateStore):
    """Lock-protected dict of state -> (expires_at_monotonic, payload)."""

    def __init__(self, ttl_seconds: int = 600) -> None:
        super().__init__(ttl_seconds)
        self._entries: dict[str, tuple[float, dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def store_state(self, state: str, data: dict[str, Any]) -> None:
        with self._lock:
            self._entries[state] = (time.monotonic() + self.ttl, dict(data))

    def get_state_data(self, state: str) -> dict[str, Any]:
        with self._lock:
            entry = self._entries.pop(state, None)
        if entry is None:
            raise _invalid_state()
        expires_at, data = entry
        if time.monotonic() >= expires_at:
            raise _invalid_state()
        return data

    def validate_state(self, state: str) -> bool:
        with self._lock:
            entry = self._entries.get(state)
        return entry is not None and time.monotonic() < entry[0]

    def purge_expired(self) -> int:
        now = time.monotonic()
        with self._lock:
            expired = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisStateStore(StateStore):
    """State kept under "oauth_state:{token}" with a native Redis TTL."""

    def __init__(self, client: redis.Redis, ttl_seconds: int = 600) -> None:
        super().__init__(ttl_seconds)
        self.client = client

    def store_state(self, state: str, data: dict[str, Any]) -> None:
        try:
            self.client.set(_KEY_PREFIX + state, json.dumps(data), ex=self.ttl)
        except redis.RedisError as exc:
            logger.error("Failed to store OAuth state: %s", exc)
            raise InternalError("State store unavailable.", "state_store_error", cause=exc) from exc

    def get_state_data(self, state: str) -> dict[str, Any]:
        try:
            raw = self.client.getdel(_KEY_PREFIX + state)
        except redis.RedisError as exc:
            logger.error("Failed to read OAuth state: %s", exc)
            raise InternalError("State store unavailable.", "state_store_error", cause=exc) from exc
        if raw is None:
            raise _invalid_state()
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise _invalid_state() from exc
        if not isinstance(data, dict):
            raise _invalid_state()
        return data

    def validate_state(self, state: str) -> bool:
        try:
            return bool(self.client.exists(_KEY_PREFIX + state))
        except redis.RedisError as exc:
            logger.error("Failed to check OAuth state: %s", exc)
            raise InternalError("State store unavailable.", "state_store_error", cause=exc) from exc


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_state_store(settings: Settings) -> StateStore:
    """Build the backend named by STATE_STORE_BACKEND."""
    if settings.state_store_backend == "redis":
        client = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            health_check_interval=30,
        )
        logger.info("OAuth state store: redis")
        return RedisStateStore(client, ttl_seconds=settings.state_ttl_seconds)
    logger.info("OAuth state store: memory")
    return InMemoryStateStore(ttl_seconds=settings.state_ttl_seconds)
