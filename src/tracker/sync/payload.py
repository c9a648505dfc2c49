"""Payload builder: snapshots + device metadata + active config → SyncRecord."""
from datetime import datetime
from typing import Optional

from tracker.models.config import SyncConfiguration
from tracker.models.record import SyncRecord
from tracker.models.snapshots import (
    BiometricSnapshot,
    DeviceInfo,
    LocationSnapshot,
    utcnow,
)


def build_record(
    principal_id: str,
    location: LocationSnapshot,
    biometric: Optional[BiometricSnapshot],
    device: DeviceInfo,
    settings: SyncConfiguration,
    timestamp: Optional[datetime] = None,
) -> SyncRecord:
    """
    Compose one upload record. Pure: no I/O, no shared state.

    Args:
        principal_id: Current user id.
        location: Latest fix (or LocationSnapshot.zero()).
        biometric: Biometric snapshot, or None when the pass skipped biometrics.
        device: Device metadata.
        settings: Active configuration, copied into the record as-is.
        timestamp: Record time. Defaults to now (UTC).
    """
    return SyncRecord(
        user_id=principal_id,
        timestamp=timestamp or utcnow(),
        location=location,
        biometric=biometric,
        device=device,
        settings=settings,
    )
