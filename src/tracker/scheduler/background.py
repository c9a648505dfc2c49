"""
Background execution coordinator.

The host only lets the engine run in the background inside short, one-shot
execution windows. A window is requested for "not before T"; the host opens
it whenever it sees fit and hands over an ExecutionGrant with a hard
deadline. The grant must be completed before that deadline, or the host
may suspend the process mid-work.

Per window the coordinator:
  1. re-requests the next window straight away (grants never repeat),
  2. runs one combined pass: location always, biometrics only if a
     foreground-capable context exists (they are skipped, not retried),
  3. completes the grant before the deadline. If the pass is still running
     at deadline minus the safety margin it is cancelled and left behind,
     and the grant is completed with success=False.

    idle ──request──▶ requested ──grant──▶ running ──▶ completed
                          ▲                   │
                          │                   └──deadline──▶ expired
                          └────── re-armed at the start of every window
"""
import asyncio
import logging
import random
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from tracker.models.record import SyncKind
from tracker.sync.engine import PassOutcome

logger = logging.getLogger(__name__)

GRANT_JOB_ID = "background_grant"


class GrantState(str, Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    RUNNING = "running"
    COMPLETED = "completed"
    EXPIRED = "expired"


class ExecutionGrant:
    """A single-use execution window handed out by the host."""

    def __init__(self, deadline: datetime, on_complete: Callable[[bool], None]):
        self.deadline = deadline
        self._on_complete = on_complete
        self._completed = False

    @property
    def completed(self) -> bool:
        return self._completed

    def seconds_left(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (self.deadline - now).total_seconds()

    def complete(self, success: bool) -> None:
        """Hand the window back. Only the first call counts."""
        if self._completed:
            logger.warning("Execution grant completed twice; ignoring")
            return
        self._completed = True
        self._on_complete(success)


GrantCallback = Callable[[ExecutionGrant], Awaitable[object]]


class GrantHost(ABC):
    """The host side: accepts window requests and opens windows later."""

    @abstractmethod
    def submit(self, not_before: timedelta, on_granted: GrantCallback) -> None:
        """Request a window no earlier than now + not_before. Replaces any outstanding request."""


class LocalGrantHost(GrantHost):
    """
    In-process host built on APScheduler.

    Opens a window at now + not_before + a random lead time, and gives it
    window_seconds to finish. Outstanding requests are replaced, as a mobile
    OS does for a repeated task identifier.
    """

    def __init__(
        self,
        scheduler: AsyncIOScheduler,
        window_seconds: float = 30.0,
        lead_seconds: float = 60.0,
    ):
        self.scheduler = scheduler
        self._window = window_seconds
        self._lead = lead_seconds
        self.completions = []  # success flags, newest last

    def submit(self, not_before: timedelta, on_granted: GrantCallback) -> None:
        run_at = (
            datetime.now(timezone.utc)
            + not_before
            + timedelta(seconds=random.uniform(0, self._lead))
        )
        if self.scheduler.get_job(GRANT_JOB_ID) is not None:
            self.scheduler.remove_job(GRANT_JOB_ID)
        self.scheduler.add_job(
            self._open_window,
            trigger="date",
            run_date=run_at,
            id=GRANT_JOB_ID,
            # Late windows still run
            misfire_grace_time=None,
            coalesce=True,
            kwargs={"on_granted": on_granted},
        )
        logger.info("Background window requested for %s", run_at.isoformat())

    async def _open_window(self, on_granted: GrantCallback) -> None:
        deadline = datetime.now(timezone.utc) + timedelta(seconds=self._window)
        grant = ExecutionGrant(deadline, self._record_completion)
        await on_granted(grant)

    def _record_completion(self, success: bool) -> None:
        self.completions.append(success)
        logger.info("Background window completed (success=%s)", success)


class BackgroundCoordinator:
    """Requests, runs and hands back background execution windows."""

    def __init__(
        self,
        host: GrantHost,
        run_pass: Callable[..., Awaitable[object]],
        interval: Callable[[], timedelta],
        foreground_available: Callable[[], bool] = lambda: False,
        safety_margin_seconds: float = 2.0,
    ):
        """
        Args:
            host: Grant host (LocalGrantHost, or a platform bridge).
            run_pass: SyncEngine.run_pass; called as
                      run_pass(SyncKind.COMBINED, collect_biometrics=bool).
            interval: Returns the not-before delay for the next request,
                      normally the active location interval.
            foreground_available: True when biometrics can be collected.
            safety_margin_seconds: How long before the deadline the pass is abandoned.
        """
        self._host = host
        self._run_pass = run_pass
        self._interval = interval
        self._foreground_available = foreground_available
        self._margin = safety_margin_seconds
        self._state = GrantState.IDLE

    @property
    def state(self) -> GrantState:
        return self._state

    def request_grant(self, not_before: Optional[timedelta] = None) -> None:
        delay = self._interval() if not_before is None else not_before
        self._host.submit(delay, self.on_granted)
        if self._state is not GrantState.RUNNING:
            self._state = GrantState.REQUESTED

    async def on_granted(self, grant: ExecutionGrant) -> GrantState:
        """Run one window. Always completes the grant before returning."""
        if self._state is GrantState.RUNNING:
            logger.warning("Background window opened while another is running; declining")
            grant.complete(False)
            return self._state

        self.request_grant()
        self._state = GrantState.RUNNING

        budget = grant.seconds_left() - self._margin
        if budget <= 0:
            logger.warning("Background window arrived with no usable time left")
            return self._expire(grant, None)

        collect_biometrics = self._foreground_available()
        task = asyncio.ensure_future(
            self._run_pass(SyncKind.COMBINED, collect_biometrics=collect_biometrics)
        )
        done, _ = await asyncio.wait({task}, timeout=budget)
        if task not in done:
            return self._expire(grant, task)

        success = False
        if task.cancelled():
            logger.warning("Background pass was cancelled")
        elif task.exception() is not None:
            logger.error("Background pass failed: %s", task.exception())
        else:
            outcome = task.result()
            success = outcome is PassOutcome.DELIVERED
            logger.info("Background pass finished: %s", outcome)

        self._state = GrantState.COMPLETED
        grant.complete(success)
        return self._state

    def _expire(self, grant: ExecutionGrant, task: Optional[asyncio.Task]) -> GrantState:
        if task is not None:
            task.cancel()  # abandoned; not awaited
        self._state = GrantState.EXPIRED
        logger.warning("Background window expired; in-flight pass abandoned")
        grant.complete(False)
        return self._state
