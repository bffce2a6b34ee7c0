"""Submit aggregate summaries to the knowledge store with idempotent retry."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, Hashable, List, Sequence, Tuple

from apps.collaborators.protocol import KnowledgeStore
from eduscan.core.provenance import ProvenanceEvent

from .aggregator import KnowledgeStorePayload

LOGGER = logging.getLogger(__name__)


class CommitStatus(str, Enum):
    IDLE = "idle"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"


class CommitGateway:
    """Tracks commit status per subject key and for the batch as a whole.

    ``Idle -> InFlight -> Succeeded``; any failure (exception, ``False`` or a
    timeout) returns the key to ``Idle`` so the caller can retry. Committing a
    key that is in flight or already succeeded does not reach the store.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        *,
        timeout: float = 30.0,
        retry_failed_only: bool = False,
        provenance: Any | None = None,
    ) -> None:
        self.store = store
        self.timeout = timeout
        self.retry_failed_only = retry_failed_only
        self.provenance = provenance
        self._status: Dict[Hashable, CommitStatus] = {}
        self._batch_status = CommitStatus.IDLE
        self._epoch = 0

    def status(self, key: Hashable) -> CommitStatus:
        return self._status.get(key, CommitStatus.IDLE)

    @property
    def batch_status(self) -> CommitStatus:
        return self._batch_status

    def reset(self) -> None:
        """Forget every status; results of commits still in flight are ignored."""
        self._epoch += 1
        self._status.clear()
        self._batch_status = CommitStatus.IDLE

    async def commit(self, key: Hashable, payload: KnowledgeStorePayload) -> CommitStatus:
        current = self.status(key)
        if current is not CommitStatus.IDLE:
            LOGGER.debug("Commit for %s skipped (status %s)", key, current.value)
            return current
        epoch = self._epoch
        self._status[key] = CommitStatus.IN_FLIGHT
        ok = False
        try:
            ok = await self._submit(key, payload)
        finally:
            if epoch == self._epoch:
                self._status[key] = CommitStatus.SUCCEEDED if ok else CommitStatus.IDLE
        return self.status(key)

    async def commit_all(self, entries: Sequence[Tuple[Hashable, KnowledgeStorePayload]]) -> CommitStatus:
        """Submit every entry concurrently; the batch succeeds only if all do.

        By default a retry re-submits every entry. With ``retry_failed_only``
        entries that already succeeded (in an earlier batch attempt or through
        ``commit``) are skipped.
        """
        if self._batch_status is not CommitStatus.IDLE:
            LOGGER.debug("Batch commit skipped (status %s)", self._batch_status.value)
            return self._batch_status
        epoch = self._epoch
        pending = list(entries)
        if self.retry_failed_only:
            pending = [(key, payload) for key, payload in pending if self.status(key) is not CommitStatus.SUCCEEDED]
            for key, _ in pending:
                self._status[key] = CommitStatus.IN_FLIGHT
        self._batch_status = CommitStatus.IN_FLIGHT
        outcomes: List[bool] = []
        try:
            outcomes = list(await asyncio.gather(*(self._submit(key, payload) for key, payload in pending)))
        finally:
            if epoch == self._epoch:
                if self.retry_failed_only:
                    for (key, _), ok in zip(pending, outcomes or [False] * len(pending)):
                        self._status[key] = CommitStatus.SUCCEEDED if ok else CommitStatus.IDLE
                succeeded = len(outcomes) == len(pending) and all(outcomes)
                self._batch_status = CommitStatus.SUCCEEDED if succeeded else CommitStatus.IDLE
        LOGGER.info(
            "Batch commit %s: %d/%d submissions accepted",
            self._batch_status.value,
            sum(outcomes),
            len(pending),
        )
        return self._batch_status

    async def _submit(self, key: Hashable, payload: KnowledgeStorePayload) -> bool:
        body = payload.to_wire()
        try:
            accepted = bool(await asyncio.wait_for(self.store.commit(body), timeout=self.timeout))
            reason = None if accepted else "store rejected the payload"
        except asyncio.TimeoutError:
            accepted, reason = False, f"commit timed out after {self.timeout:g}s"
        except Exception as exc:
            accepted, reason = False, f"{type(exc).__name__}: {exc}"

        if accepted:
            LOGGER.info("Committed %s for %s", payload.exam_title, payload.student_name)
        else:
            LOGGER.warning("Commit for %s failed: %s", payload.student_name, reason)
        if self.provenance is not None:
            self.provenance.log(
                ProvenanceEvent(
                    stage="commit",
                    message="commit accepted" if accepted else "commit failed",
                    payload={"key": str(key), "student": payload.student_name, "reason": reason},
                )
            )
        return accepted


__all__ = ["CommitGateway", "CommitStatus"]
