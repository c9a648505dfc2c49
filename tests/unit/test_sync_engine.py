"""Tests for SyncEngine pass orchestration."""
import asyncio

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine, select

from tracker.collectors.principal import PrincipalStore
from tracker.models.record import SyncKind
from tracker.models.snapshots import BiometricSnapshot, DeviceInfo
from tracker.models.sync import SyncLog
from tracker.sync.config_resolver import ConfigResolver
from tracker.sync.delivery import DeliveryPipeline
from tracker.sync.engine import PassOutcome, SyncEngine
from tracker.sync.offline_queue import OfflineQueue
from tracker.sync.status import SyncState, SyncStatusProjection

DEVICE = DeviceInfo(device_model="arm64", os_version="6.1", app_version="1.0")


def _build(tmp_path, collector, http, sync_config, db_engine=None, logged_in=True, **kwargs) -> SyncEngine:
    principal = PrincipalStore(tmp_path / "session.json")
    if logged_in:
        principal.save({"id": "u1"})
    status = SyncStatusProjection()
    config = ConfigResolver(sync_config, http_client=http)
    queue = OfflineQueue(tmp_path / "offline_queue.json", sync_config.endpoint)
    pipeline = DeliveryPipeline(http, queue, status, config)
    return SyncEngine(
        collector=collector,
        principal=principal,
        config=config,
        pipeline=pipeline,
        status=status,
        device=DEVICE,
        db_engine=db_engine,
        **kwargs,
    )


def _block_first_location_pull(collector) -> asyncio.Event:
    """Make the first pull_location wait on the returned event."""
    gate = asyncio.Event()
    original = collector.pull_location
    calls = 0

    async def pull():
        nonlocal calls
        calls += 1
        if calls == 1:
            await gate.wait()
        return await original()

    collector.pull_location = pull
    return gate


def _logs(db_engine):
    with Session(db_engine) as s:
        return s.exec(select(SyncLog).order_by(SyncLog.id)).all()


# ─── Single pass ─────────────────────────────────────────────────────────────

class TestRunPass:
    @pytest.mark.asyncio
    async def test_location_pass_delivers_without_biometrics(self, tmp_path, collector, http, server, sync_config):
        engine = _build(tmp_path, collector, http, sync_config)

        outcome = await engine.run_pass(SyncKind.LOCATION)

        assert outcome is PassOutcome.DELIVERED
        assert collector.biometric_pulls == 0
        body = server.posted()[0]
        assert body["userId"] == "u1"
        assert body["latitude"] == 37.0
        assert "steps" not in body
        assert engine.status.current.state is SyncState.SUCCESS

    @pytest.mark.asyncio
    async def test_biometric_pass_includes_present_metrics(self, tmp_path, collector, http, server, sync_config):
        collector.biometric = BiometricSnapshot(
            timestamp=collector.location.timestamp, steps=8123, heart_rate=61
        )
        engine = _build(tmp_path, collector, http, sync_config)

        await engine.run_pass(SyncKind.BIOMETRIC)

        body = server.posted()[0]
        assert body["steps"] == 8123
        assert body["heartRate"] == 61
        assert "bloodOxygen" not in body

    @pytest.mark.asyncio
    async def test_collect_biometrics_override(self, tmp_path, collector, http, sync_config):
        engine = _build(tmp_path, collector, http, sync_config)

        await engine.run_pass(SyncKind.COMBINED, collect_biometrics=False)

        assert collector.biometric_pulls == 0
        assert collector.location_pulls == 1

    @pytest.mark.asyncio
    async def test_manual_pass_refreshes_config_first(self, tmp_path, collector, http, server, sync_config):
        engine = _build(tmp_path, collector, http, sync_config)

        await engine.run_pass(SyncKind.MANUAL)

        assert [r.method for r in server.requests] == ["GET", "POST"]
        assert server.posted()[0]["settings"]["locationPollIntervalMinutes"] == 10

    @pytest.mark.asyncio
    async def test_timer_pass_does_not_fetch_config(self, tmp_path, collector, http, server, sync_config):
        engine = _build(tmp_path, collector, http, sync_config)

        await engine.run_pass(SyncKind.LOCATION)

        assert [r.method for r in server.requests] == ["POST"]

    @pytest.mark.asyncio
    async def test_no_principal_skips_without_network(self, tmp_path, collector, http, server, sync_config):
        engine = _build(tmp_path, collector, http, sync_config, logged_in=False)

        outcome = await engine.run_pass(SyncKind.MANUAL)

        assert outcome is PassOutcome.SKIPPED
        assert engine.status.current.state is SyncState.ERROR
        assert engine.status.current.message == "No user ID"
        assert server.requests == []
        assert collector.location_pulls == 0

    @pytest.mark.asyncio
    async def test_delivery_failure_reported_as_failed(self, tmp_path, collector, http, server, sync_config):
        server.post_codes = [500]
        engine = _build(tmp_path, collector, http, sync_config)

        outcome = await engine.run_pass(SyncKind.LOCATION)

        assert outcome is PassOutcome.FAILED
        assert engine.pipeline.queue_depth() == 1
        assert engine.status.current.description == "Sync failed: Server error: 500"


# ─── Degraded collection ─────────────────────────────────────────────────────

class TestCollectorFailures:
    @pytest.mark.asyncio
    async def test_location_failure_sends_zero_fix(self, tmp_path, collector, http, server, sync_config):
        async def broken():
            raise RuntimeError("location services off")

        collector.pull_location = broken
        engine = _build(tmp_path, collector, http, sync_config)

        outcome = await engine.run_pass(SyncKind.LOCATION)

        assert outcome is PassOutcome.DELIVERED
        body = server.posted()[0]
        assert (body["latitude"], body["longitude"], body["accuracy"]) == (0.0, 0.0, 0.0)

    @pytest.mark.asyncio
    async def test_no_fix_yet_sends_zero_fix(self, tmp_path, collector, http, server, sync_config):
        collector.location = None
        engine = _build(tmp_path, collector, http, sync_config)

        await engine.run_pass(SyncKind.LOCATION)

        assert server.posted()[0]["latitude"] == 0.0

    @pytest.mark.asyncio
    async def test_biometric_failure_sends_no_biometric_keys(self, tmp_path, collector, http, server, sync_config):
        async def broken():
            raise PermissionError("not authorized")

        collector.pull_biometrics = broken
        engine = _build(tmp_path, collector, http, sync_config)

        outcome = await engine.run_pass(SyncKind.BIOMETRIC)

        assert outcome is PassOutcome.DELIVERED
        assert "steps" not in server.posted()[0]

    @pytest.mark.asyncio
    async def test_slow_collector_is_bounded(self, tmp_path, collector, http, server, sync_config):
        _block_first_location_pull(collector)
        engine = _build(tmp_path, collector, http, sync_config, collector_timeout_seconds=0.05)

        outcome = await engine.run_pass(SyncKind.LOCATION)

        assert outcome is PassOutcome.DELIVERED
        assert server.posted()[0]["latitude"] == 0.0


# ─── Concurrency ─────────────────────────────────────────────────────────────

class TestOverlap:
    @pytest.mark.asyncio
    async def test_same_class_overlap_is_dropped(self, tmp_path, collector, http, server, sync_config):
        gate = _block_first_location_pull(collector)
        engine = _build(tmp_path, collector, http, sync_config)

        first = asyncio.ensure_future(engine.run_pass(SyncKind.LOCATION))
        await asyncio.sleep(0)
        assert engine.is_busy(SyncKind.LOCATION)

        second = await engine.run_pass(SyncKind.LOCATION)
        gate.set()

        assert second is PassOutcome.DROPPED
        assert await first is PassOutcome.DELIVERED
        assert len(server.posted()) == 1

    @pytest.mark.asyncio
    async def test_manual_pass_dropped_while_timer_pass_runs(self, tmp_path, collector, http, sync_config):
        gate = _block_first_location_pull(collector)
        engine = _build(tmp_path, collector, http, sync_config)

        first = asyncio.ensure_future(engine.run_pass(SyncKind.LOCATION))
        await asyncio.sleep(0)

        assert await engine.run_pass(SyncKind.MANUAL) is PassOutcome.DROPPED
        gate.set()
        await first

    @pytest.mark.asyncio
    async def test_different_classes_run_concurrently(self, tmp_path, collector, http, server, sync_config):
        gate = _block_first_location_pull(collector)
        engine = _build(tmp_path, collector, http, sync_config)

        first = asyncio.ensure_future(engine.run_pass(SyncKind.LOCATION))
        await asyncio.sleep(0)

        assert await engine.run_pass(SyncKind.BIOMETRIC) is PassOutcome.DELIVERED
        assert not first.done()

        gate.set()
        assert await first is PassOutcome.DELIVERED
        assert len(server.posted()) == 2

    @pytest.mark.asyncio
    async def test_busy_released_after_failure(self, tmp_path, collector, http, server, sync_config):
        server.post_codes = [500]
        engine = _build(tmp_path, collector, http, sync_config)

        await engine.run_pass(SyncKind.LOCATION)

        assert engine.is_busy(SyncKind.LOCATION) is False
        assert await engine.run_pass(SyncKind.LOCATION) is PassOutcome.DELIVERED

    @pytest.mark.asyncio
    async def test_cancelled_pass_releases_classes(self, tmp_path, collector, http, sync_config, engine):
        _block_first_location_pull(collector)
        sync_engine = _build(tmp_path, collector, http, sync_config, db_engine=engine)

        task = asyncio.ensure_future(sync_engine.run_pass(SyncKind.COMBINED))
        await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert sync_engine.is_busy(SyncKind.COMBINED) is False
        log = _logs(engine)[-1]
        assert log.status == "error"
        assert log.error_message == "Cancelled"

    @pytest.mark.asyncio
    async def test_cancelled_pass_restores_previous_status(self, tmp_path, collector, http, sync_config):
        _block_first_location_pull(collector)
        sync_engine = _build(tmp_path, collector, http, sync_config)

        task = asyncio.ensure_future(sync_engine.run_pass(SyncKind.COMBINED))
        await asyncio.sleep(0)
        assert sync_engine.status.current.state is SyncState.SYNCING
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert sync_engine.status.current.state is SyncState.IDLE


# ─── Lifecycle ───────────────────────────────────────────────────────────────

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_become_active_syncs_when_enabled(self, tmp_path, collector, http, sync_config):
        engine = _build(tmp_path, collector, http, sync_config)
        assert await engine.app_did_become_active() is PassOutcome.DELIVERED

    @pytest.mark.asyncio
    async def test_become_active_respects_sync_on_app_open(self, tmp_path, collector, http, server, sync_config):
        engine = _build(tmp_path, collector, http, sync_config.with_changes(sync_on_app_open=False))

        assert await engine.app_did_become_active() is None
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_enter_background_runs_manual_pass(self, tmp_path, collector, http, server, sync_config):
        engine = _build(tmp_path, collector, http, sync_config, foreground_available=lambda: False)

        assert await engine.app_did_enter_background() is PassOutcome.DELIVERED
        assert collector.biometric_pulls == 1

    @pytest.mark.asyncio
    async def test_request_authorizations(self, tmp_path, collector, http, sync_config):
        engine = _build(tmp_path, collector, http, sync_config)
        assert await engine.request_authorizations() == (True, True)


# ─── Sync history ────────────────────────────────────────────────────────────

class TestSyncLog:
    @pytest.mark.asyncio
    async def test_success_row(self, tmp_path, collector, http, sync_config, engine):
        sync_engine = _build(tmp_path, collector, http, sync_config, db_engine=engine)

        await sync_engine.run_pass(SyncKind.LOCATION)

        [log] = _logs(engine)
        assert log.kind == "location"
        assert log.status == "success"
        assert log.user_id == "u1"
        assert log.queue_depth == 0
        assert log.finished_at is not None

    @pytest.mark.asyncio
    async def test_error_row(self, tmp_path, collector, http, server, sync_config, engine):
        server.post_codes = [502]
        sync_engine = _build(tmp_path, collector, http, sync_config, db_engine=engine)

        await sync_engine.run_pass(SyncKind.BIOMETRIC)

        [log] = _logs(engine)
        assert log.status == "error"
        assert log.error_message == "Server error: 502"
        assert log.queue_depth == 1

    @pytest.mark.asyncio
    async def test_skipped_row(self, tmp_path, collector, http, sync_config, engine):
        sync_engine = _build(tmp_path, collector, http, sync_config, db_engine=engine, logged_in=False)

        await sync_engine.run_pass(SyncKind.MANUAL)

        [log] = _logs(engine)
        assert log.status == "error"
        assert log.error_message == "No user ID"
        assert log.user_id is None

    @pytest.mark.asyncio
    async def test_dropped_row(self, tmp_path, collector, http, sync_config, engine):
        gate = _block_first_location_pull(collector)
        sync_engine = _build(tmp_path, collector, http, sync_config, db_engine=engine)

        first = asyncio.ensure_future(sync_engine.run_pass(SyncKind.LOCATION))
        await asyncio.sleep(0)
        await sync_engine.run_pass(SyncKind.LOCATION)
        gate.set()
        await first

        statuses = sorted(log.status for log in _logs(engine))
        assert statuses == ["dropped", "success"]

    @pytest.mark.asyncio
    async def test_history_failure_does_not_abort_pass(self, tmp_path, collector, http, server, sync_config):
        # No tables: every history write fails
        broken = create_engine(
            "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
        )
        sync_engine = _build(tmp_path, collector, http, sync_config, db_engine=broken)

        assert await sync_engine.run_pass(SyncKind.LOCATION) is PassOutcome.DELIVERED
        assert len(server.posted()) == 1
        assert sync_engine.status.current.state is SyncState.SUCCESS


# ─── Background context ──────────────────────────────────────────────────────

class TestBackgroundContext:
    @pytest.mark.asyncio
    async def test_biometric_pass_skipped_without_foreground(self, tmp_path, collector, http, server, sync_config, engine):
        sync_engine = _build(
            tmp_path, collector, http, sync_config, db_engine=engine, foreground_available=lambda: False
        )

        assert await sync_engine.run_pass(SyncKind.BIOMETRIC) is PassOutcome.SKIPPED
        assert collector.biometric_pulls == 0
        assert server.requests == []
        assert sync_engine.is_busy(SyncKind.BIOMETRIC) is False
        assert [log.status for log in _logs(engine)] == ["skipped"]

    @pytest.mark.asyncio
    async def test_combined_pass_sends_location_only(self, tmp_path, collector, http, server, sync_config):
        sync_engine = _build(tmp_path, collector, http, sync_config, foreground_available=lambda: False)

        assert await sync_engine.run_pass(SyncKind.COMBINED) is PassOutcome.DELIVERED
        assert collector.biometric_pulls == 0
        assert collector.location_pulls == 1
        assert "steps" not in server.posted()[0]

    @pytest.mark.asyncio
    async def test_foreground_returns_biometrics(self, tmp_path, collector, http, sync_config):
        foreground = [False]
        sync_engine = _build(tmp_path, collector, http, sync_config, foreground_available=lambda: foreground[0])

        await sync_engine.run_pass(SyncKind.BIOMETRIC)
        foreground[0] = True
        await sync_engine.run_pass(SyncKind.BIOMETRIC)

        assert collector.biometric_pulls == 1
