from __future__ import annotations

import enum
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from snaprelay.utils.types import Frame, SessionState, UploadOutcome


logger = logging.getLogger("snaprelay.pipeline.scheduler")


class SnapshotSource(Protocol):
    def latest_snapshot(self) -> Optional[Frame]:
        ...


class StateSource(Protocol):
    @property
    def state(self) -> SessionState:
        ...


class TickResult(enum.Enum):
    STARTED = "started"
    SKIPPED_IN_FLIGHT = "skipped_in_flight"
    NO_SNAPSHOT = "no_snapshot"
    UNCHANGED = "unchanged"
    DEGRADED = "degraded"


@dataclass
class SchedulerStats:
    ticks: int = 0
    started: int = 0
    skipped_in_flight: int = 0
    no_snapshot: int = 0
    unchanged: int = 0
    degraded: int = 0
    uploads_ok: int = 0
    uploads_failed: int = 0
    uploads_rejected: int = 0


class Scheduler:
    """Fixed-rate snapshot cadence for one camera.

    Ticks land on `start + k * interval`; a tick that finds the previous upload
    still running is dropped, and ticks missed while the thread was late are
    skipped rather than replayed. Uploads run on a single worker, so at most one
    is ever in flight.
    """

    def __init__(
        self,
        camera_id: str,
        interval_s: float,
        session: StateSource,
        extractor: SnapshotSource,
        upload: Callable[[Frame], UploadOutcome],
        stop_event: threading.Event,
        resend_unchanged: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval_s <= 0.0:
            raise ValueError("interval_s must be > 0")
        self._camera_id = camera_id
        self._interval_s = float(interval_s)
        self._session = session
        self._extractor = extractor
        self._upload = upload
        self._stop = stop_event
        self._resend_unchanged = resend_unchanged
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"upload-{camera_id}")
        self._future: Optional[Future] = None
        self._degraded = False
        self._last_uploaded_seq: Optional[int] = None
        self.stats = SchedulerStats()

    @property
    def interval_s(self) -> float:
        return self._interval_s

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def in_flight(self) -> bool:
        return self._future is not None and not self._future.done()

    def run(self) -> None:
        next_t = self._clock() + self._interval_s
        while not self._stop.wait(max(0.0, next_t - self._clock())):
            self.tick()
            next_t += self._interval_s
            now = self._clock()
            if next_t <= now:
                missed = int((now - next_t) // self._interval_s) + 1
                logger.warning("Scheduler for camera=%s fell behind, skipping %d tick(s)", self._camera_id, missed)
                next_t += missed * self._interval_s

    def tick(self) -> TickResult:
        self.stats.ticks += 1
        if self._degraded:
            self.stats.degraded += 1
            return TickResult.DEGRADED
        if self.in_flight:
            self.stats.skipped_in_flight += 1
            logger.debug("Upload still in flight camera=%s, skipping tick", self._camera_id)
            return TickResult.SKIPPED_IN_FLIGHT
        if self._session.state != SessionState.STREAMING:
            self.stats.no_snapshot += 1
            return TickResult.NO_SNAPSHOT
        frame = self._extractor.latest_snapshot()
        if frame is None:
            self.stats.no_snapshot += 1
            logger.debug("No snapshot available yet camera=%s", self._camera_id)
            return TickResult.NO_SNAPSHOT
        if not self._resend_unchanged and frame.sequence == self._last_uploaded_seq:
            self.stats.unchanged += 1
            logger.debug("Snapshot seq=%d already uploaded camera=%s", frame.sequence, self._camera_id)
            return TickResult.UNCHANGED

        self.stats.started += 1
        self._future = self._executor.submit(self._run_upload, frame)
        return TickResult.STARTED

    def _run_upload(self, frame: Frame) -> UploadOutcome:
        try:
            outcome = self._upload(frame)
        except Exception:
            logger.exception("Upload crashed camera=%s seq=%d", self._camera_id, frame.sequence)
            self.stats.uploads_failed += 1
            return UploadOutcome.TRANSIENT_FAILURE
        if outcome == UploadOutcome.SUCCESS:
            self.stats.uploads_ok += 1
            self._last_uploaded_seq = frame.sequence
        elif outcome == UploadOutcome.REJECTED_BY_SERVER:
            self.stats.uploads_rejected += 1
            self._degraded = True
            logger.error(
                "Camera=%s marked degraded: endpoint rejected its credential or payload; "
                "no further uploads until the configuration is reloaded",
                self._camera_id,
            )
        else:
            self.stats.uploads_failed += 1
        return outcome

    def wait_idle(self, timeout_s: Optional[float] = None) -> bool:
        fut = self._future
        if fut is None:
            return True
        try:
            fut.result(timeout=timeout_s)
        except FutureTimeoutError:
            return False
        return True

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
