"""
SyncRecord (the upload payload) and the pass kinds that produce it.

The collection endpoint expects a flat JSON object: location, biometric and
device fields all live at the top level, next to `userId` and `timestamp`.
Only `settings` stays nested. Absent biometric metrics are omitted entirely.

Example (location-only pass):

    {
        "userId": "u1",
        "timestamp": "2025-01-15T07:30:00Z",
        "latitude": 37.0, "longitude": -122.0, "accuracy": 5.0,
        "altitude": 12.0, "speed": 0.0,
        "deviceModel": "arm64", "osVersion": "17.2", "appVersion": "1.0",
        "isSimulator": false,
        "settings": {"locationPollIntervalMinutes": 5, ...}
    }
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from tracker.models.config import SyncConfiguration
from tracker.models.snapshots import (
    BiometricSnapshot,
    DeviceInfo,
    LocationSnapshot,
    from_iso,
    to_iso,
)


class MetricClass(str, Enum):
    LOCATION = "location"
    BIOMETRIC = "biometric"


class SyncKind(str, Enum):
    """What triggered a pass, and therefore what it collects."""

    LOCATION = "location"      # location timer
    BIOMETRIC = "biometric"    # biometric timer
    COMBINED = "combined"      # background execution window
    MANUAL = "manual"          # user request or app activation

    @property
    def classes(self) -> FrozenSet[MetricClass]:
        """Metric classes this pass occupies while it runs."""
        if self is SyncKind.LOCATION:
            return frozenset({MetricClass.LOCATION})
        if self is SyncKind.BIOMETRIC:
            return frozenset({MetricClass.BIOMETRIC})
        return frozenset({MetricClass.LOCATION, MetricClass.BIOMETRIC})

    @property
    def collects_biometrics(self) -> bool:
        return self is not SyncKind.LOCATION


@dataclass(frozen=True)
class SyncRecord:
    """One upload. Immutable once built."""

    user_id: str
    timestamp: datetime
    location: LocationSnapshot
    device: DeviceInfo
    settings: SyncConfiguration
    biometric: Optional[BiometricSnapshot] = None

    def to_wire(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "userId": self.user_id,
            "timestamp": to_iso(self.timestamp),
        }
        body.update(self.location.wire_fields())
        if self.biometric is not None:
            body.update(self.biometric.wire_fields())
        body.update(self.device.wire_fields())
        body["settings"] = self.settings.settings_wire()
        return body

    @classmethod
    def from_wire(cls, data: Dict[str, Any], endpoint: str) -> "SyncRecord":
        """
        Rebuild a record from its flattened form (offline queue reload).

        Snapshot timestamps are not on the wire; they collapse onto the
        record timestamp.
        """
        timestamp = from_iso(data["timestamp"])
        location = LocationSnapshot(
            timestamp=timestamp,
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            accuracy=float(data.get("accuracy", 0.0)),
            altitude=float(data.get("altitude", 0.0)),
            speed=float(data.get("speed", 0.0)),
        )
        return cls(
            user_id=data["userId"],
            timestamp=timestamp,
            location=location,
            biometric=BiometricSnapshot.from_wire(data, timestamp),
            device=DeviceInfo.from_wire(data),
            settings=SyncConfiguration.from_settings_wire(
                data.get("settings") or {}, endpoint
            ),
        )
