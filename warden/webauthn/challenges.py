"""
Warden Challenge Store

Short-lived, single-use challenges for WebAuthn registration and
authentication ceremonies.

Challenges are keyed by kind and id so that a lookup for the wrong ceremony
type never touches the stored entry, and consumption is an atomic pop on the
backing store: two concurrent consumers of the same id cannot both succeed.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Callable, Optional

import structlog

from warden.crypto.utils import b64url_encode, random_bytes, random_id
from warden.storage.kv import KeyValueStore
from warden.types import Challenge, ChallengeKind

logger = structlog.get_logger(__name__)


CHALLENGE_KEY_PREFIX = "webauthn:challenge"
CHALLENGE_BYTES = 32


class ChallengeStore:
    """
    Issues and consumes WebAuthn ceremony challenges.

    Features:
    - Fixed TTL enforced at consumption time
    - Atomic single-use consumption
    - Periodic sweep of expired entries for in-process stores
    """

    def __init__(
        self,
        store: KeyValueStore,
        ttl_seconds: int = 300,
        sweep_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock

        self._sweep_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()
        self._initialized = False
        self._logger = logger.bind(component="challenge_store")

    async def initialize(self) -> None:
        """Start the expiry sweep."""
        if self._initialized:
            return

        self._shutdown_event.clear()
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        self._initialized = True
        self._logger.info("Challenge store initialized", ttl_seconds=self.ttl_seconds)

    async def shutdown(self) -> None:
        self._shutdown_event.set()

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        self._initialized = False

    # =========================================================================
    # Issue / Consume
    # =========================================================================

    async def issue(
        self,
        kind: ChallengeKind,
        bound_user_id: Optional[str] = None,
    ) -> Challenge:
        """Create and store a fresh challenge."""
        now = self._clock()
        challenge = Challenge(
            id=random_id(),
            value=b64url_encode(random_bytes(CHALLENGE_BYTES)),
            kind=kind,
            created_at=now,
            expires_at=now + self.ttl_seconds,
            bound_user_id=bound_user_id,
        )

        await self._store.set(
            self._key(kind, challenge.id),
            json.dumps(challenge.to_dict()),
            ex=self.ttl_seconds,
        )

        self._logger.debug(
            "Challenge issued",
            challenge_id=challenge.id,
            kind=kind.value,
            bound=bound_user_id is not None,
        )
        return challenge

    async def consume(self, challenge_id: str, kind: ChallengeKind) -> Optional[Challenge]:
        """
        Atomically retrieve and delete a challenge.

        Returns None if the challenge is absent, already consumed, expired,
        or was issued for a different ceremony kind.
        """
        if not challenge_id:
            return None

        raw = await self._store.pop(self._key(kind, challenge_id))
        if raw is None:
            self._logger.info("Challenge not found", challenge_id=challenge_id, kind=kind.value)
            return None

        challenge = Challenge.from_dict(json.loads(raw))
        if challenge.kind != kind:
            self._logger.warning(
                "Challenge kind mismatch",
                challenge_id=challenge_id,
                expected=kind.value,
                actual=challenge.kind.value,
                security_event=True,
            )
            return None

        if challenge.is_expired(self._clock()):
            self._logger.info("Challenge expired", challenge_id=challenge_id, kind=kind.value)
            return None

        return challenge

    async def sweep(self) -> int:
        """Remove expired entries from the backing store."""
        removed = await self._store.purge_expired()
        if removed:
            self._logger.debug("Swept expired entries", count=removed)
        return removed

    # =========================================================================
    # Internal Helpers
    # =========================================================================

    @staticmethod
    def _key(kind: ChallengeKind, challenge_id: str) -> str:
        return f"{CHALLENGE_KEY_PREFIX}:{kind.value}:{challenge_id}"

    async def _sweep_loop(self) -> None:
        """Periodically purge expired challenges."""
        while not self._shutdown_event.is_set():
            try:
                await asyncio.sleep(self.sweep_interval_seconds)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._logger.error("Challenge sweep error", error=str(e))
