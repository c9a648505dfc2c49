"""
Collector backed by snapshot files dropped by a device bridge.

The bridge (a companion process talking to the platform health store and
location service) writes the latest readings as JSON into one directory:

    <snapshot_dir>/biometrics.json   {"timestamp": "...", "steps": 8123, "heartRate": 61, ...}
    <snapshot_dir>/location.json     {"timestamp": "...", "latitude": 37.0, ...}

Keys use the same camelCase names as the upload schema. File reads run in
the thread pool so a slow disk never blocks the event loop.
"""
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from tracker.collectors.base import Collector, CollectorUnavailable
from tracker.models.snapshots import (
    BiometricSnapshot,
    LocationSnapshot,
    from_iso,
    utcnow,
)

logger = logging.getLogger(__name__)

BIOMETRICS_FILE = "biometrics.json"
LOCATION_FILE = "location.json"


class FileCollector(Collector):
    def __init__(self, snapshot_dir: Path):
        self._dir = Path(snapshot_dir)

    async def _run(self, fn, *args):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, lambda: fn(*args))

    def _read(self, name: str) -> Dict[str, Any]:
        path = self._dir / name
        if not path.exists():
            raise CollectorUnavailable(f"No snapshot at {path}")
        try:
            data = json.loads(path.read_text())
        except (OSError, ValueError) as exc:
            raise CollectorUnavailable(f"Unreadable snapshot {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise CollectorUnavailable(f"Snapshot {path} is not a JSON object")
        return data

    async def pull_biometrics(self) -> BiometricSnapshot:
        try:
            data = await self._run(self._read, BIOMETRICS_FILE)
        except CollectorUnavailable as exc:
            logger.warning("Biometrics unavailable: %s", exc)
            return BiometricSnapshot.empty()

        timestamp = _timestamp(data)
        return BiometricSnapshot.from_wire(data, timestamp) or BiometricSnapshot.empty(timestamp)

    async def pull_location(self) -> Optional[LocationSnapshot]:
        try:
            data = await self._run(self._read, LOCATION_FILE)
            return LocationSnapshot(
                timestamp=_timestamp(data),
                latitude=float(data["latitude"]),
                longitude=float(data["longitude"]),
                accuracy=float(data.get("accuracy", 0.0)),
                altitude=float(data.get("altitude", 0.0)),
                speed=float(data.get("speed", 0.0)),
            )
        except CollectorUnavailable as exc:
            logger.debug("No location fix yet: %s", exc)
            return None
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Malformed location snapshot: %s", exc)
            return None

    async def request_biometric_authorization(self) -> bool:
        return await self._run(self._bridge_present)

    async def request_location_authorization(self) -> bool:
        return await self._run(self._bridge_present)

    def _bridge_present(self) -> bool:
        present = self._dir.is_dir()
        if not present:
            logger.warning("Snapshot directory %s does not exist; bridge not running?", self._dir)
        return present


def _timestamp(data: Dict[str, Any]):
    raw = data.get("timestamp")
    if isinstance(raw, str):
        try:
            return from_iso(raw)
        except ValueError:
            pass  # fall back to now
    return utcnow()
