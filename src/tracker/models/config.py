"""Active sync configuration, as dictated by the remote control plane."""
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, Dict

LOCATION_PRECISIONS = ("best", "tenMeters", "hundredMeters", "kilometer")


@dataclass(frozen=True)
class SyncConfiguration:
    location_interval: timedelta
    biometric_interval: timedelta
    endpoint: str
    sync_on_app_open: bool = True
    notifications_enabled: bool = True
    location_precision: str = "best"

    @classmethod
    def defaults(
        cls,
        endpoint: str,
        location_minutes: int = 5,
        biometric_minutes: int = 180,
    ) -> "SyncConfiguration":
        """Built-in configuration used until the first successful fetch."""
        return cls(
            location_interval=timedelta(minutes=location_minutes),
            biometric_interval=timedelta(minutes=biometric_minutes),
            endpoint=endpoint.rstrip("/"),
        )

    def with_changes(self, **changes: Any) -> "SyncConfiguration":
        return replace(self, **changes)

    def settings_wire(self) -> Dict[str, Any]:
        """The nested `settings` object copied into every upload."""
        return {
            "locationPollIntervalMinutes": _minutes(self.location_interval),
            "healthkitSyncIntervalHours": _hours(self.biometric_interval),
            "syncOnAppOpen": self.sync_on_app_open,
            "notificationsEnabled": self.notifications_enabled,
            "locationPrecision": self.location_precision,
        }

    @classmethod
    def from_settings_wire(cls, data: Dict[str, Any], endpoint: str) -> "SyncConfiguration":
        return cls(
            location_interval=timedelta(minutes=data.get("locationPollIntervalMinutes", 5)),
            biometric_interval=timedelta(hours=data.get("healthkitSyncIntervalHours", 3)),
            endpoint=endpoint,
            sync_on_app_open=data.get("syncOnAppOpen", True),
            notifications_enabled=data.get("notificationsEnabled", True),
            location_precision=data.get("locationPrecision", "best"),
        )


def _minutes(interval: timedelta) -> int:
    return int(interval.total_seconds() // 60)


def _hours(interval: timedelta):
    """Whole hours as an int, otherwise fractional hours."""
    hours = interval.total_seconds() / 3600
    return int(hours) if hours.is_integer() else round(hours, 4)
