"""
Delivery pipeline: POST one SyncRecord, classify, update queue + status.

Outcomes:
  HTTP 200            → success(now) published, offline queue cleared in full
                        and the empty queue persisted.
  other status code   → DeliveryServerError   "Server error: <code>"
  timeout             → DeliveryTimeout       "Request timed out"
  transport failure   → DeliveryTransportError
  Every failure appends the record to the offline queue (persisted before
  deliver() returns) and publishes error(message).

There is no synchronous retry. The backlog is only dealt with when a later
pass succeeds. By default that success clears the queue without re-sending
it; with replay_backlog=True the queued records are re-posted oldest first
and only the acknowledged prefix is dropped.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from tracker.models.record import SyncKind, SyncRecord
from tracker.sync.config_resolver import ConfigResolver
from tracker.sync.offline_queue import OfflineQueue
from tracker.sync.status import SyncStatus, SyncStatusProjection

logger = logging.getLogger(__name__)


# ── Exceptions ────────────────────────────────────────────────────────────────

class DeliveryError(RuntimeError):
    """Base class for failed uploads."""


class DeliveryTimeout(DeliveryError):
    def __init__(self):
        super().__init__("Request timed out")


class DeliveryTransportError(DeliveryError):
    """Connection refused, DNS failure, TLS error, ..."""


class DeliveryServerError(DeliveryError):
    def __init__(self, status_code: int):
        super().__init__(f"Server error: {status_code}")
        self.status_code = status_code


@dataclass
class DeliveryResult:
    delivered: bool
    queue_depth: int
    error: Optional[DeliveryError] = None

    @property
    def message(self) -> Optional[str]:
        return str(self.error) if self.error else None


# ── Pipeline ──────────────────────────────────────────────────────────────────

class DeliveryPipeline:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        queue: OfflineQueue,
        status: SyncStatusProjection,
        config: ConfigResolver,
        timeout_seconds: float = 15.0,
        replay_backlog: bool = False,
    ):
        self._http = http_client
        self._queue = queue
        self._status = status
        self._config = config
        self._timeout = timeout_seconds
        self._replay_backlog = replay_backlog
        self._replay_lock = asyncio.Lock()

    def queue_depth(self) -> int:
        return self._queue.count()

    async def deliver(self, record: SyncRecord, kind: SyncKind = SyncKind.MANUAL) -> DeliveryResult:
        """
        Upload one record. Never raises DeliveryError; the outcome is returned.
        """
        try:
            await self._post(record)
        except DeliveryError as exc:
            depth = await self._queue.append(record)
            self._status.publish(SyncStatus.error(str(exc)))
            logger.error("%s sync failed: %s (%d queued)", kind.value, exc, depth)
            return DeliveryResult(delivered=False, queue_depth=depth, error=exc)

        if self._replay_backlog:
            depth = await self._replay()
        else:
            await self._queue.clear_all()
            depth = 0
        self._status.publish(SyncStatus.success())
        logger.info("%s sync successful for %s", kind.value, record.user_id)
        return DeliveryResult(delivered=True, queue_depth=depth)

    async def _post(self, record: SyncRecord) -> None:
        url = f"{self._config.current.endpoint}/location"
        body = json.dumps(record.to_wire())
        logger.debug("POST %s %s", url, body)
        try:
            response = await self._http.post(
                url,
                content=body,
                headers={"Content-Type": "application/json"},
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise DeliveryTimeout() from exc
        except httpx.HTTPError as exc:
            raise DeliveryTransportError(str(exc) or exc.__class__.__name__) from exc

        logger.debug("Server response: %d %s", response.status_code, response.text)
        if response.status_code != 200:
            raise DeliveryServerError(response.status_code)

    async def _replay(self) -> int:
        """Re-post queued records oldest first; drop the acknowledged prefix."""
        if self._replay_lock.locked():
            # Another pass is already draining the backlog
            return self._queue.count()
        async with self._replay_lock:
            return await self._replay_locked()

    async def _replay_locked(self) -> int:
        backlog = self._queue.records()
        sent = 0
        for queued in backlog:
            try:
                await self._post(queued)
            except DeliveryError as exc:
                logger.warning("Backlog replay stopped after %d/%d: %s", sent, len(backlog), exc)
                break
            sent += 1
        if sent == 0:
            return self._queue.count()
        return await self._queue.drop_first(sent)
