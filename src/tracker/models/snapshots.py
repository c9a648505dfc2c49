"""Point-in-time readings pulled from the device's data providers."""
import os
import platform
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Biometric attribute → wire key. Order matches the upload schema.
BIOMETRIC_WIRE_KEYS: Dict[str, str] = {
    "steps": "steps",
    "heart_rate": "heartRate",
    "resting_heart_rate": "restingHeartRate",
    "heart_rate_variability": "heartRateVariability",
    "blood_pressure_systolic": "bloodPressureSystolic",
    "blood_pressure_diastolic": "bloodPressureDiastolic",
    "blood_oxygen": "bloodOxygen",
    "active_energy": "activeEnergy",
    "distance": "distance",
    "flights_climbed": "flightsClimbed",
    "sleep_duration": "sleepDuration",
    "workout_duration": "workoutDuration",
    "workout_type": "workoutType",
    "workout_calories": "workoutCalories",
}

LOCATION_WIRE_KEYS = ("latitude", "longitude", "accuracy", "altitude", "speed")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """ISO-8601 in UTC with a trailing Z, e.g. 2025-01-15T07:30:00Z."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def from_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class BiometricSnapshot:
    """Biometric reading. Every metric is independently optional."""

    timestamp: datetime
    steps: Optional[int] = None
    heart_rate: Optional[int] = None
    resting_heart_rate: Optional[int] = None
    heart_rate_variability: Optional[float] = None
    blood_pressure_systolic: Optional[int] = None
    blood_pressure_diastolic: Optional[int] = None
    blood_oxygen: Optional[float] = None
    active_energy: Optional[float] = None
    distance: Optional[float] = None
    flights_climbed: Optional[int] = None
    sleep_duration: Optional[float] = None  # seconds
    workout_duration: Optional[float] = None  # seconds
    workout_type: Optional[str] = None
    workout_calories: Optional[float] = None

    @classmethod
    def empty(cls, timestamp: Optional[datetime] = None) -> "BiometricSnapshot":
        """All-null snapshot, used when the provider has nothing to offer."""
        return cls(timestamp=timestamp or utcnow())

    def is_empty(self) -> bool:
        return all(getattr(self, attr) is None for attr in BIOMETRIC_WIRE_KEYS)

    def wire_fields(self) -> Dict[str, Any]:
        """Present metrics keyed by their wire name. Absent metrics are omitted."""
        return {
            key: getattr(self, attr)
            for attr, key in BIOMETRIC_WIRE_KEYS.items()
            if getattr(self, attr) is not None
        }

    @classmethod
    def from_wire(cls, data: Dict[str, Any], timestamp: datetime) -> Optional["BiometricSnapshot"]:
        """Rebuild from a flattened record; None when no biometric key is present."""
        values = {
            attr: data[key]
            for attr, key in BIOMETRIC_WIRE_KEYS.items()
            if data.get(key) is not None
        }
        if not values:
            return None
        return cls(timestamp=timestamp, **values)


@dataclass(frozen=True)
class LocationSnapshot:
    """Last known position fix. Always fully populated."""

    timestamp: datetime
    latitude: float
    longitude: float
    accuracy: float
    altitude: float
    speed: float

    @classmethod
    def zero(cls, timestamp: Optional[datetime] = None) -> "LocationSnapshot":
        """Neutral stand-in when no fix has been obtained yet."""
        return cls(
            timestamp=timestamp or utcnow(),
            latitude=0.0,
            longitude=0.0,
            accuracy=0.0,
            altitude=0.0,
            speed=0.0,
        )

    def wire_fields(self) -> Dict[str, float]:
        return {key: getattr(self, key) for key in LOCATION_WIRE_KEYS}


@dataclass(frozen=True)
class DeviceInfo:
    """Static metadata about the device the engine runs on."""

    device_model: str
    os_version: str
    app_version: str
    is_simulator: bool = False

    @classmethod
    def current(cls, app_version: str = "1.0") -> "DeviceInfo":
        return cls(
            device_model=platform.machine() or "Unknown",
            os_version=platform.release() or "Unknown",
            app_version=app_version,
            is_simulator="SIMULATOR_DEVICE_NAME" in os.environ,
        )

    def wire_fields(self) -> Dict[str, Any]:
        return {
            "deviceModel": self.device_model,
            "osVersion": self.os_version,
            "appVersion": self.app_version,
            "isSimulator": self.is_simulator,
        }

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "DeviceInfo":
        return cls(
            device_model=data.get("deviceModel", "Unknown"),
            os_version=data.get("osVersion", "Unknown"),
            app_version=data.get("appVersion", "1.0"),
            is_simulator=bool(data.get("isSimulator", False)),
        )
