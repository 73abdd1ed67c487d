"""
At-most-once processing of provider message ids.

A record is created (claimed) the first time a MessageSid is seen and flipped
to processed once the pipeline finished. Claims carry their creation time so
a claim left behind by a crashed request can be taken over after the
processing lease, while a fresh claim means a duplicate delivery is being
handled right now by another request.
"""

import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from seatline.kvstore import KeyValueStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "idempotent:"
DEFAULT_TTL_SECONDS = 24 * 60 * 60
DEFAULT_LEASE_SECONDS = 120


class IdempotencyState(str, Enum):
    NEW = "new"
    PROCESSED = "processed"
    IN_PROGRESS = "in_progress"


@dataclass(frozen=True)
class IdempotencyCheck:
    state: IdempotencyState
    claimed_at: float
    should_process: bool


class IdempotencyGuard:
    """Tracks provider message ids in a KeyValueStore."""

    def __init__(
        self,
        store: KeyValueStore,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._ttl = ttl_seconds
        self._lease = lease_seconds
        self._clock = clock

    @staticmethod
    def _key(message_id: str) -> str:
        return f"{KEY_PREFIX}{message_id}"

    def _encode(self, processed: bool, claimed_at: float) -> str:
        return json.dumps({"processed": processed, "ts": claimed_at})

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[dict]:
        if raw is None:
            return None
        try:
            record = json.loads(raw)
        except ValueError:
            return None
        return record if isinstance(record, dict) else None

    def begin(self, message_id: str) -> IdempotencyCheck:
        """
        Check a message id and claim it when the caller should process it.

        Returns:
            IdempotencyCheck with one of:
            - NEW: first sighting, claimed for this caller
            - PROCESSED: already handled, caller must short-circuit
            - IN_PROGRESS: seen but never marked processed. should_process is
              True only when the previous claim outlived the lease and was
              taken over by this caller.
        """
        key = self._key(message_id)
        now = self._clock()

        if self._store.add(key, self._encode(False, now), self._ttl):
            logger.debug(f"Claimed message {message_id}")
            return IdempotencyCheck(IdempotencyState.NEW, now, True)

        raw = self._store.get(key)
        if raw is None:
            # Expired between add() and get(): race for a fresh claim
            if self._store.add(key, self._encode(False, now), self._ttl):
                return IdempotencyCheck(IdempotencyState.NEW, now, True)
            return IdempotencyCheck(IdempotencyState.IN_PROGRESS, now, False)

        # An unreadable record is treated as a stale claim
        record = self._decode(raw) or {"processed": False, "ts": 0.0}
        claimed_at = float(record.get("ts", now))
        if record.get("processed"):
            logger.info(f"Message already processed: {message_id}")
            return IdempotencyCheck(IdempotencyState.PROCESSED, claimed_at, False)

        if now - claimed_at < self._lease:
            logger.info(f"Message in flight elsewhere: {message_id}")
            return IdempotencyCheck(IdempotencyState.IN_PROGRESS, claimed_at, False)

        # One takeover marker per stale claim; only the caller that adds it wins
        if not self._store.add(f"{key}:takeover:{claimed_at!r}", "1", self._lease):
            logger.info(f"Stale claim for message {message_id} already taken over")
            return IdempotencyCheck(IdempotencyState.IN_PROGRESS, claimed_at, False)

        logger.warning(f"Taking over stale claim for message {message_id}")
        self._store.set(key, self._encode(False, now), self._ttl)
        return IdempotencyCheck(IdempotencyState.IN_PROGRESS, now, True)

    def mark_processed(self, message_id: str) -> None:
        """Flag a claimed message as fully handled."""
        self._store.set(self._key(message_id), self._encode(True, self._clock()), self._ttl)

    def release(self, message_id: str) -> None:
        """Drop a claim so a redelivery is processed from scratch."""
        self._store.delete(self._key(message_id))
