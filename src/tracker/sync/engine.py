"""
SyncEngine: runs one sync pass, collect → build → deliver.

Flow for a single pass:
  1. Claim the metric classes the pass touches. If any is still held by an
     earlier pass the new one is dropped, not queued.
  2. Publish syncing, create SyncLog (status="running").
  3. Resolve the principal. Nobody logged in → error("No user ID"), skipped.
  4. Pull location (and biometrics, if the pass collects them) concurrently,
     each bounded by the collector timeout. Failures degrade to a zero fix /
     all-null biometrics; they never abort the pass.
  5. Build the record against the active configuration and deliver it.
  6. Update SyncLog (status="success" | "error").

Passes of different classes run side by side. The background coordinator
may cancel a pass mid-flight; the SyncLog row is closed as an error, the
status goes back to what it showed before the pass, and the cancellation
propagates.

Without a foreground context biometrics are never pulled: biometric-only
passes are skipped and combined passes collect location alone. Sync history
is best effort; a failed SyncLog write is logged and the pass carries on.
"""
import asyncio
import logging
from enum import Enum
from typing import Callable, Optional, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from tracker.collectors.base import Collector
from tracker.collectors.principal import NoPrincipalError, PrincipalStore
from tracker.models.record import MetricClass, SyncKind
from tracker.models.snapshots import BiometricSnapshot, DeviceInfo, LocationSnapshot, utcnow
from tracker.models.sync import SyncLog
from tracker.sync.config_resolver import ConfigResolver
from tracker.sync.delivery import DeliveryPipeline
from tracker.sync.payload import build_record
from tracker.sync.status import SyncStatus, SyncStatusProjection

logger = logging.getLogger(__name__)


class PassOutcome(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"      # delivery failed, record queued
    DROPPED = "dropped"    # same-class pass already running
    SKIPPED = "skipped"    # no principal, or biometrics without a foreground


class SyncEngine:
    """Orchestrates collectors, payload builder and delivery for each pass."""

    def __init__(
        self,
        collector: Collector,
        principal: PrincipalStore,
        config: ConfigResolver,
        pipeline: DeliveryPipeline,
        status: SyncStatusProjection,
        device: DeviceInfo,
        db_engine=None,
        collector_timeout_seconds: float = 20.0,
        foreground_available: Callable[[], bool] = lambda: True,
    ):
        """
        Args:
            collector: Source of biometric and location snapshots.
            principal: Lookup for the logged-in user id.
            config: Resolver owning the active configuration.
            pipeline: Delivery pipeline (owns queue + status updates on delivery).
            status: Shared status projection.
            device: Device metadata stamped on every record.
            db_engine: SQLAlchemy engine for the SyncLog history. None disables it.
            collector_timeout_seconds: Upper bound for each provider pull.
            foreground_available: Whether biometric collection is allowed right now.
        """
        self.collector = collector
        self.principal = principal
        self.config = config
        self.pipeline = pipeline
        self.status = status
        self.device = device
        self.db_engine = db_engine
        self._collector_timeout = collector_timeout_seconds
        self.foreground_available = foreground_available
        self._busy: Set[MetricClass] = set()

    def is_busy(self, kind: SyncKind) -> bool:
        return bool(kind.classes & self._busy)

    async def run_pass(
        self, kind: SyncKind, collect_biometrics: Optional[bool] = None
    ) -> PassOutcome:
        """
        Run one pass of the given kind.

        Args:
            kind: What triggered the pass.
            collect_biometrics: Override for kind.collects_biometrics. None
                means collect them when the kind asks for it and a foreground
                context is available.
        """
        if kind is SyncKind.BIOMETRIC and not self.foreground_available():
            logger.info("Skipping biometric pass: no foreground context")
            self._record_not_run(kind, "skipped")
            return PassOutcome.SKIPPED

        if self.is_busy(kind):
            logger.info(
                "Dropping %s pass: %s still in progress",
                kind.value,
                ", ".join(sorted(c.value for c in kind.classes & self._busy)),
            )
            self._record_not_run(kind, "dropped")
            return PassOutcome.DROPPED

        self._busy |= kind.classes
        try:
            return await self._run(kind, collect_biometrics)
        finally:
            self._busy -= kind.classes

    async def _run(self, kind: SyncKind, collect_biometrics: Optional[bool]) -> PassOutcome:
        previous = self.status.current
        syncing = SyncStatus.syncing()
        self.status.publish(syncing)
        log = self._create_sync_log(kind)

        try:
            principal_id = self.principal.load_principal_id()
        except NoPrincipalError as exc:
            logger.warning("Sync skipped: %s", exc)
            self.status.publish(SyncStatus.error("No user ID"))
            self._finish_sync_log(log, status="error", error_message="No user ID")
            return PassOutcome.SKIPPED

        try:
            if kind is SyncKind.MANUAL:
                await self.config.fetch(principal_id)

            if collect_biometrics is None:
                want_biometrics = kind.collects_biometrics and self.foreground_available()
            else:
                want_biometrics = collect_biometrics
            location, biometric = await self._collect(want_biometrics)
            record = build_record(
                principal_id,
                location,
                biometric,
                self.device,
                self.config.current,
            )
            logger.info(
                "%s pass for %s: lat=%.5f lon=%.5f biometrics=%s",
                kind.value,
                principal_id,
                location.latitude,
                location.longitude,
                "skipped" if biometric is None else len(biometric.wire_fields()),
            )
            result = await self.pipeline.deliver(record, kind)
        except asyncio.CancelledError:
            self._finish_sync_log(
                log, status="error", user_id=principal_id, error_message="Cancelled"
            )
            if self.status.current is syncing:
                self.status.publish(previous)
            raise

        self._finish_sync_log(
            log,
            status="success" if result.delivered else "error",
            user_id=principal_id,
            queue_depth=result.queue_depth,
            error_message=result.message,
        )
        return PassOutcome.DELIVERED if result.delivered else PassOutcome.FAILED

    # ─── Collection ──────────────────────────────────────────────────────────

    async def _collect(
        self, want_biometrics: bool
    ) -> Tuple[LocationSnapshot, Optional[BiometricSnapshot]]:
        pulls = [self._bounded(self.collector.pull_location(), "location")]
        if want_biometrics:
            pulls.append(self._bounded(self.collector.pull_biometrics(), "biometrics"))

        results = await asyncio.gather(*pulls)

        location = results[0] or LocationSnapshot.zero()
        biometric = None
        if want_biometrics:
            biometric = results[1] or BiometricSnapshot.empty()
        return location, biometric

    async def _bounded(self, pull, name: str):
        """Await a provider pull with a timeout; any failure degrades to None."""
        try:
            return await asyncio.wait_for(pull, timeout=self._collector_timeout)
        except asyncio.TimeoutError:
            logger.warning("%s pull timed out after %.0fs", name, self._collector_timeout)
        except Exception as exc:
            logger.warning("%s pull failed: %s", name, exc)
        return None

    # ─── App lifecycle ───────────────────────────────────────────────────────

    async def app_did_become_active(self) -> Optional[PassOutcome]:
        """Foreground activation: sync if the configuration asks for it."""
        if not self.config.current.sync_on_app_open:
            logger.debug("sync_on_app_open disabled; not syncing on activation")
            return None
        return await self.run_pass(SyncKind.MANUAL)

    async def app_did_enter_background(self) -> PassOutcome:
        """Last foreground pass before the app loses execution time."""
        return await self.run_pass(SyncKind.MANUAL, collect_biometrics=True)

    async def request_authorizations(self) -> Tuple[bool, bool]:
        """Forward the one-shot authorization prompts. Returns (biometric, location)."""
        biometric, location = await asyncio.gather(
            self.collector.request_biometric_authorization(),
            self.collector.request_location_authorization(),
        )
        logger.info(
            "Authorization: biometrics %s, location %s",
            "granted" if biometric else "denied",
            "granted" if location else "denied",
        )
        return biometric, location

    # ─── Sync history ────────────────────────────────────────────────────────

    def _create_sync_log(self, kind: SyncKind) -> Optional[SyncLog]:
        if self.db_engine is None:
            return None
        log = SyncLog(kind=kind.value, started_at=utcnow(), status="running")
        try:
            with Session(self.db_engine) as s:
                s.add(log)
                s.commit()
                s.refresh(log)
        except SQLAlchemyError as exc:
            logger.warning("Could not record %s pass in sync history: %s", kind.value, exc)
            return None
        return log

    def _finish_sync_log(
        self,
        log: Optional[SyncLog],
        *,
        status: str,
        user_id: Optional[str] = None,
        queue_depth: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        if log is None:
            return
        try:
            with Session(self.db_engine) as s:
                db_log = s.get(SyncLog, log.id)
                db_log.status = status
                if user_id is not None:
                    db_log.user_id = user_id
                db_log.finished_at = utcnow()
                db_log.queue_depth = (
                    self.pipeline.queue_depth() if queue_depth is None else queue_depth
                )
                db_log.error_message = error_message
                s.add(db_log)
                s.commit()
        except SQLAlchemyError as exc:
            logger.warning("Could not close sync history row %s: %s", log.id, exc)

    def _record_not_run(self, kind: SyncKind, status: str) -> None:
        """History row for a pass that never started (dropped or skipped)."""
        if self.db_engine is None:
            return
        now = utcnow()
        try:
            with Session(self.db_engine) as s:
                s.add(SyncLog(
                    kind=kind.value,
                    started_at=now,
                    finished_at=now,
                    status=status,
                    queue_depth=self.pipeline.queue_depth(),
                ))
                s.commit()
        except SQLAlchemyError as exc:
            logger.warning("Could not record %s %s pass: %s", status, kind.value, exc)
