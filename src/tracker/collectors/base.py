"""
Pull-based contract over the device's two data providers.

Providers are external: a health store for biometrics and a positioning
service for location. The engine only ever pulls the latest snapshot; it
never subscribes to provider updates.

Contract:
  - pull_biometrics() never fails. Missing authorization or a missing data
    source shows up as null fields, not as an exception.
  - pull_location() returns the last known fix, or None before the first fix.
  - request_*_authorization() are one-shot, user-facing prompts. The engine
    forwards them but cannot influence the outcome.
"""
from abc import ABC, abstractmethod
from typing import Optional

from tracker.models.snapshots import BiometricSnapshot, LocationSnapshot


class CollectorUnavailable(RuntimeError):
    """Raised by provider adapters when a data source is absent or not authorized."""


class Collector(ABC):
    @abstractmethod
    async def pull_biometrics(self) -> BiometricSnapshot:
        ...

    @abstractmethod
    async def pull_location(self) -> Optional[LocationSnapshot]:
        ...

    @abstractmethod
    async def request_biometric_authorization(self) -> bool:
        ...

    @abstractmethod
    async def request_location_authorization(self) -> bool:
        ...
