"""
Composition root: builds every engine component once and wires them together.

Nothing in the engine looks anything up globally; the runtime owns the one
instance of each shared resource (configuration, status, offline queue) and
passes references down.

    ConfigResolver ──listener──▶ IntervalScheduler ──fires──▶ SyncEngine.run_pass
                                                                   │
    BackgroundCoordinator ──combined pass──────────────────────────┘
                                                                   ▼
                               Collector → build_record → DeliveryPipeline → OfflineQueue
                                                                   │
                                                          SyncStatusProjection
"""
import logging
from typing import Optional

import httpx

from tracker.collectors.base import Collector
from tracker.collectors.file_source import FileCollector
from tracker.collectors.principal import NoPrincipalError, PrincipalStore
from tracker.config import Settings, get_settings
from tracker.models.config import SyncConfiguration
from tracker.models.snapshots import DeviceInfo
from tracker.scheduler.background import BackgroundCoordinator, GrantHost, LocalGrantHost
from tracker.scheduler.jobs import IntervalScheduler, build_scheduler
from tracker.sync.config_resolver import ConfigResolver
from tracker.sync.delivery import DeliveryPipeline
from tracker.sync.engine import PassOutcome, SyncEngine
from tracker.sync.offline_queue import OfflineQueue
from tracker.sync.status import SyncStatusProjection

logger = logging.getLogger(__name__)


class TrackerRuntime:
    """Owns the engine's components for one process lifetime."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        collector: Optional[Collector] = None,
        grant_host: Optional[GrantHost] = None,
        db_engine=None,
    ):
        """
        Args:
            settings: Process settings. Defaults to get_settings().
            http_client: Shared httpx client; created (and later closed) if omitted.
            collector: Data provider bridge. Defaults to FileCollector(settings.snapshot_dir).
            grant_host: Background window host. Defaults to LocalGrantHost.
            db_engine: SQLAlchemy engine for sync history; None disables history.
        """
        self.settings = settings or get_settings()
        s = self.settings

        self._owns_http = http_client is None
        self.http = http_client or httpx.AsyncClient()
        self.foreground = True

        defaults = SyncConfiguration.defaults(
            s.endpoint,
            location_minutes=s.default_location_minutes,
            biometric_minutes=s.default_biometric_minutes,
        )
        self.status = SyncStatusProjection()
        self.config = ConfigResolver(
            defaults, http_client=self.http, timeout_seconds=s.config_timeout_seconds
        )
        self.queue = OfflineQueue(s.queue_path, defaults.endpoint)
        self.pipeline = DeliveryPipeline(
            self.http,
            self.queue,
            self.status,
            self.config,
            timeout_seconds=s.delivery_timeout_seconds,
            replay_backlog=s.replay_backlog,
        )
        self.principal = PrincipalStore(s.session_path)
        self.collector = collector or FileCollector(s.snapshot_dir)
        self.engine = SyncEngine(
            self.collector,
            self.principal,
            self.config,
            self.pipeline,
            self.status,
            DeviceInfo.current(s.app_version),
            db_engine=db_engine,
            collector_timeout_seconds=s.collector_timeout_seconds,
            foreground_available=lambda: self.foreground,
        )

        self.scheduler = build_scheduler()
        self.intervals = IntervalScheduler(self.scheduler, self.engine.run_pass)
        self.config.add_listener(self.intervals.reschedule)

        self.grant_host = grant_host or LocalGrantHost(
            self.scheduler,
            window_seconds=s.background_window_seconds,
            lead_seconds=s.background_lead_seconds,
        )
        self.background = BackgroundCoordinator(
            self.grant_host,
            self.engine.run_pass,
            interval=lambda: self.config.current.location_interval,
            foreground_available=lambda: self.foreground,
            safety_margin_seconds=s.background_safety_margin_seconds,
        )

    def principal_id(self) -> Optional[str]:
        try:
            return self.principal.load_principal_id()
        except NoPrincipalError:
            return None

    async def start(self) -> None:
        """Restore the queue, arm the timers, then try the control plane."""
        self.queue.load()
        self.intervals.reschedule(self.config.current)
        self.scheduler.start()
        logger.info(
            "Scheduler started (location every %s, biometric every %s)",
            self.config.current.location_interval,
            self.config.current.biometric_interval,
        )

        principal_id = self.principal_id()
        if principal_id:
            await self.config.fetch(principal_id)
        else:
            logger.warning("No user logged in; running on built-in sync config")

        await self.engine.request_authorizations()
        self.background.request_grant()

    async def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.config.aclose()
        if self._owns_http:
            await self.http.aclose()
        logger.info("Runtime stopped (%d records left in offline queue)", self.queue.count())

    # ─── Presentation-layer hooks ────────────────────────────────────────────

    async def become_active(self) -> Optional[PassOutcome]:
        self.foreground = True
        return await self.engine.app_did_become_active()

    async def enter_background(self) -> PassOutcome:
        self.foreground = False
        outcome = await self.engine.app_did_enter_background()
        self.background.request_grant()
        return outcome

    def update_config(self, new_config: SyncConfiguration):
        """Local settings edit; see ConfigResolver.update."""
        return self.config.update(new_config, self.principal_id())
