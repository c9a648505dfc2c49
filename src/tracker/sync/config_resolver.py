"""
Configuration resolver: remote control plane → active SyncConfiguration.

The control plane answers `GET {endpoint}/status?userId=...` with human
readable cadences:

    {
        "syncConfig": {
            "location_interval": "every 5 minutes",
            "biometric_interval": "every 3 hours",
            "sync_on_app_open": true,
            "notifications_enabled": true,
            "location_precision": "best"
        }
    }

Rules:
  - Cold start uses built-in defaults until the first successful fetch.
  - A failed fetch (network, status, JSON, schema) keeps whatever is active.
    A real configuration is never reset back to the defaults.
  - The endpoint address is a local setting; the control plane cannot move it.
  - Local edits (update) apply immediately, are pushed back as a
    `config_update` in the background, and listeners are told to re-arm
    once the push finishes, whether or not it succeeded.
"""
import asyncio
import logging
import re
from datetime import timedelta
from typing import Callable, List, Optional, Set

import httpx
from pydantic import AliasChoices, BaseModel, Field, ValidationError

from tracker.models.config import LOCATION_PRECISIONS, SyncConfiguration
from tracker.models.snapshots import to_iso, utcnow

logger = logging.getLogger(__name__)

FALLBACK_INTERVAL = timedelta(minutes=30)

_INTERVAL_RE = re.compile(
    r"^\D*?(\d+(?:\.\d+)?)\s*(minute|min|hour|hr)s?\b",
    re.IGNORECASE,
)


class ConfigFetchFailed(RuntimeError):
    """Raised when the control plane cannot be reached or returns junk."""


# ─── Interval text ───────────────────────────────────────────────────────────

def interval_from_text(text: Optional[str]) -> timedelta:
    """
    Parse "every 30 minutes" / "every 3 hours" style cadences.

    Takes the leading number and the unit token right after it. Anything
    unparseable, non-positive or too large for a timedelta falls back to
    30 minutes.
    """
    if not text:
        return FALLBACK_INTERVAL
    match = _INTERVAL_RE.match(text.strip())
    if not match:
        return FALLBACK_INTERVAL

    amount = float(match.group(1))
    if amount <= 0:
        return FALLBACK_INTERVAL
    unit = match.group(2).lower()
    try:
        if unit in ("hour", "hr"):
            return timedelta(hours=amount)
        return timedelta(minutes=amount)
    except (OverflowError, ValueError):
        logger.warning("Interval %r out of range; using %s", text, FALLBACK_INTERVAL)
        return FALLBACK_INTERVAL


def interval_to_text(interval: timedelta) -> str:
    minutes = int(interval.total_seconds() // 60)
    if minutes >= 60 and minutes % 60 == 0:
        hours = minutes // 60
        return f"every {hours} hour" if hours == 1 else f"every {hours} hours"
    return f"every {minutes} minute" if minutes == 1 else f"every {minutes} minutes"


# ─── Remote schema ───────────────────────────────────────────────────────────

class RemoteSyncConfig(BaseModel):
    location_interval: Optional[str] = None
    biometric_interval: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("biometric_interval", "healthkit_interval", "health_interval"),
    )
    sync_on_app_open: Optional[bool] = None
    notifications_enabled: Optional[bool] = None
    location_precision: Optional[str] = None


class StatusResponse(BaseModel):
    syncConfig: RemoteSyncConfig
    sync_on_app_open: Optional[bool] = None
    notifications_enabled: Optional[bool] = None


ConfigListener = Callable[[SyncConfiguration], None]


# ─── Resolver ────────────────────────────────────────────────────────────────

class ConfigResolver:
    """Owns the active SyncConfiguration. The only writer of it."""

    def __init__(
        self,
        defaults: SyncConfiguration,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 10.0,
    ):
        """
        Args:
            defaults: Built-in configuration used until the first successful fetch.
            http_client: Shared httpx client. One is created lazily if omitted.
            timeout_seconds: Per-request timeout for fetch and push calls.
        """
        self._current = defaults
        self._http_client = http_client
        self._timeout = timeout_seconds
        self._listeners: List[ConfigListener] = []
        self._pending: Set[asyncio.Task] = set()
        self.fetched = False

    @property
    def current(self) -> SyncConfiguration:
        return self._current

    def add_listener(self, listener: ConfigListener) -> None:
        self._listeners.append(listener)

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
        return self._http_client

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._current)
            except Exception as exc:
                logger.error("Config listener %r failed: %s", listener, exc)

    # ─── Fetch ───────────────────────────────────────────────────────────────

    async def fetch(self, principal_id: str) -> SyncConfiguration:
        """
        Pull the remote configuration and make it active.

        Never raises: on ConfigFetchFailed the active configuration is kept
        and returned unchanged.
        """
        try:
            fetched = await self._fetch_remote(principal_id)
        except ConfigFetchFailed as exc:
            logger.warning(
                "Config fetch failed, keeping %s configuration: %s",
                "remote" if self.fetched else "built-in",
                exc,
            )
            return self._current

        changed = fetched != self._current
        self._current = fetched
        self.fetched = True
        if changed:
            logger.info(
                "Sync config updated: location every %s, biometric every %s",
                fetched.location_interval,
                fetched.biometric_interval,
            )
            self._notify()
        return fetched

    async def _fetch_remote(self, principal_id: str) -> SyncConfiguration:
        url = f"{self._current.endpoint}/status"
        try:
            response = await self._client().get(
                url, params={"userId": principal_id}, timeout=self._timeout
            )
        except httpx.HTTPError as exc:
            raise ConfigFetchFailed(f"GET {url} failed: {exc}") from exc

        if response.status_code != 200:
            raise ConfigFetchFailed(f"GET {url} returned {response.status_code}")

        try:
            body = StatusResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise ConfigFetchFailed(f"Undecodable status response: {exc}") from exc

        return self._merge(body)

    def _merge(self, body: StatusResponse) -> SyncConfiguration:
        remote = body.syncConfig
        base = self._current

        sync_on_app_open = _first(remote.sync_on_app_open, body.sync_on_app_open, base.sync_on_app_open)
        notifications = _first(
            remote.notifications_enabled, body.notifications_enabled, base.notifications_enabled
        )
        precision = remote.location_precision
        if precision not in LOCATION_PRECISIONS:
            precision = base.location_precision

        return base.with_changes(
            location_interval=(
                interval_from_text(remote.location_interval)
                if remote.location_interval is not None
                else base.location_interval
            ),
            biometric_interval=(
                interval_from_text(remote.biometric_interval)
                if remote.biometric_interval is not None
                else base.biometric_interval
            ),
            sync_on_app_open=sync_on_app_open,
            notifications_enabled=notifications,
            location_precision=precision,
        )

    # ─── Local edits ─────────────────────────────────────────────────────────

    def update(self, new_config: SyncConfiguration, principal_id: Optional[str] = None) -> asyncio.Task:
        """
        Apply a locally edited configuration and push it upstream.

        Returns immediately. The push runs as a background task which notifies
        listeners when it finishes, success or not.

        Returns:
            The push task (callers may await it; nobody has to).
        """
        self._current = new_config
        logger.info("Sync config edited locally: %s", new_config.settings_wire())

        task = asyncio.ensure_future(self._push_then_notify(new_config, principal_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _push_then_notify(self, config: SyncConfiguration, principal_id: Optional[str]) -> bool:
        try:
            return await self._push(config, principal_id)
        finally:
            self._notify()

    async def _push(self, config: SyncConfiguration, principal_id: Optional[str]) -> bool:
        url = f"{config.endpoint}/location"
        body = {
            "type": "config_update",
            "userId": principal_id,
            "timestamp": to_iso(utcnow()),
            "syncConfig": {
                "location_interval": interval_to_text(config.location_interval),
                "biometric_interval": interval_to_text(config.biometric_interval),
                "sync_on_app_open": config.sync_on_app_open,
                "notifications_enabled": config.notifications_enabled,
                "location_precision": config.location_precision,
            },
        }
        try:
            response = await self._client().post(url, json=body, timeout=self._timeout)
        except httpx.HTTPError as exc:
            logger.warning("Config push failed: %s", exc)
            return False

        if response.status_code != 200:
            logger.warning("Config push rejected: HTTP %d", response.status_code)
            return False
        logger.info("Config push accepted")
        return True

    async def aclose(self) -> None:
        """Wait for outstanding pushes. Does not close a shared http client."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)


def _first(*values):
    for value in values:
        if value is not None:
            return value
    return None
