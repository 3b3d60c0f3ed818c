import threading
import time
from typing import List, Optional

import numpy as np

from snaprelay.pipeline.scheduler import Scheduler, TickResult
from snaprelay.utils.types import Frame, SessionState, UploadOutcome


class _State:
    def __init__(self, state: SessionState = SessionState.STREAMING) -> None:
        self.state = state


class _Holder:
    def __init__(self) -> None:
        self.frame: Optional[Frame] = None

    def put(self, seq: int) -> None:
        self.frame = Frame(sequence=seq, timestamp_s=float(seq), image_bgr=np.zeros((2, 2, 3), dtype=np.uint8))

    def latest_snapshot(self) -> Optional[Frame]:
        return self.frame


class _Upload:
    def __init__(self, outcome: UploadOutcome = UploadOutcome.SUCCESS, block: bool = False) -> None:
        self.outcome = outcome
        self.seen: List[int] = []
        self.release = threading.Event()
        if not block:
            self.release.set()

    def __call__(self, frame: Frame) -> UploadOutcome:
        self.seen.append(frame.sequence)
        self.release.wait(5.0)
        return self.outcome


def _scheduler(upload: _Upload, holder: _Holder, state: _State, interval_s: float = 1.0, **kw) -> Scheduler:
    return Scheduler("cam", interval_s, session=state, extractor=holder, upload=upload, stop_event=threading.Event(), **kw)


def test_tick_uploads_latest_frame() -> None:
    holder, upload = _Holder(), _Upload()
    sched = _scheduler(upload, holder, _State())
    holder.put(1)
    holder.put(2)
    assert sched.tick() == TickResult.STARTED
    assert sched.wait_idle(2.0)
    assert upload.seen == [2]
    assert sched.stats.uploads_ok == 1
    sched.shutdown()


def test_tick_skipped_while_upload_in_flight() -> None:
    holder, upload = _Holder(), _Upload(block=True)
    sched = _scheduler(upload, holder, _State())
    holder.put(1)
    assert sched.tick() == TickResult.STARTED
    holder.put(2)
    assert sched.tick() == TickResult.SKIPPED_IN_FLIGHT
    assert sched.tick() == TickResult.SKIPPED_IN_FLIGHT
    upload.release.set()
    assert sched.wait_idle(2.0)
    assert upload.seen == [1]
    assert sched.stats.skipped_in_flight == 2
    assert sched.tick() == TickResult.STARTED
    assert sched.wait_idle(2.0)
    assert upload.seen == [1, 2]
    sched.shutdown()


def test_no_upload_without_snapshot_or_stream() -> None:
    holder, upload = _Holder(), _Upload()
    state = _State(SessionState.BACKOFF)
    sched = _scheduler(upload, holder, state)
    assert sched.tick() == TickResult.NO_SNAPSHOT
    holder.put(1)
    assert sched.tick() == TickResult.NO_SNAPSHOT
    state.state = SessionState.STREAMING
    holder.frame = None
    assert sched.tick() == TickResult.NO_SNAPSHOT
    assert upload.seen == []
    sched.shutdown()


def test_unchanged_frame_not_resent() -> None:
    holder, upload = _Holder(), _Upload()
    sched = _scheduler(upload, holder, _State())
    holder.put(1)
    assert sched.tick() == TickResult.STARTED
    sched.wait_idle(2.0)
    assert sched.tick() == TickResult.UNCHANGED
    sched.shutdown()

    holder2, upload2 = _Holder(), _Upload()
    resend = _scheduler(upload2, holder2, _State(), resend_unchanged=True)
    holder2.put(1)
    resend.tick()
    resend.wait_idle(2.0)
    assert resend.tick() == TickResult.STARTED
    resend.wait_idle(2.0)
    assert upload2.seen == [1, 1]
    resend.shutdown()


def test_failed_upload_is_retried_on_next_tick() -> None:
    holder, upload = _Holder(), _Upload(outcome=UploadOutcome.TRANSIENT_FAILURE)
    sched = _scheduler(upload, holder, _State())
    holder.put(1)
    sched.tick()
    sched.wait_idle(2.0)
    assert sched.tick() == TickResult.STARTED
    sched.wait_idle(2.0)
    assert sched.stats.uploads_failed == 2
    assert not sched.degraded
    sched.shutdown()


def test_rejection_marks_camera_degraded() -> None:
    holder, upload = _Holder(), _Upload(outcome=UploadOutcome.REJECTED_BY_SERVER)
    sched = _scheduler(upload, holder, _State())
    holder.put(1)
    sched.tick()
    sched.wait_idle(2.0)
    assert sched.degraded
    holder.put(2)
    assert sched.tick() == TickResult.DEGRADED
    assert upload.seen == [1]
    sched.shutdown()


def test_crashing_upload_counts_as_failure() -> None:
    holder = _Holder()

    def _boom(frame: Frame) -> UploadOutcome:
        raise RuntimeError("boom")

    sched = Scheduler("cam", 1.0, session=_State(), extractor=holder, upload=_boom, stop_event=threading.Event())
    holder.put(1)
    sched.tick()
    assert sched.wait_idle(2.0)
    assert sched.stats.uploads_failed == 1
    sched.shutdown()


def test_run_keeps_fixed_cadence() -> None:
    holder, upload = _Holder(), _Upload(outcome=UploadOutcome.TRANSIENT_FAILURE)
    holder.put(1)
    stop = threading.Event()
    sched = Scheduler("cam", 0.1, session=_State(), extractor=holder, upload=upload, stop_event=stop)
    t = threading.Thread(target=sched.run, daemon=True)
    t.start()
    time.sleep(1.0)
    stop.set()
    t.join(timeout=2.0)
    assert not t.is_alive()
    assert 7 <= sched.stats.ticks <= 11
    sched.shutdown()


class _RecordingStop:
    def __init__(self, stop_after: int) -> None:
        self.waits: List[float] = []
        self.stop_after = stop_after

    def wait(self, timeout: Optional[float] = None) -> bool:
        self.waits.append(round(float(timeout or 0.0), 6))
        return len(self.waits) > self.stop_after


def test_late_ticks_are_skipped_not_replayed() -> None:
    now = [0.0]
    stop = _RecordingStop(stop_after=3)
    sched = Scheduler(
        "cam", 1.0, session=_State(), extractor=_Holder(), upload=_Upload(), stop_event=stop, clock=lambda: now[0]  # type: ignore[arg-type]
    )

    def _slow_tick() -> TickResult:
        now[0] += 3.5
        sched.stats.ticks += 1
        return TickResult.NO_SNAPSHOT

    sched.tick = _slow_tick  # type: ignore[assignment]
    sched.run()
    assert sched.stats.ticks == 3
    # deadlines stay on the 1s grid: 1, then 4, 8, 11
    assert stop.waits == [1.0, 0.5, 1.0, 0.5]
    sched.shutdown()
