import threading
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List

from snaprelay.pipeline.camera_pipeline import CameraPipelineConfig
from snaprelay.pipeline.supervisor import RelayConfig, Supervisor
from snaprelay.utils.backoff import BackoffConfig
from snaprelay.utils.types import CameraConfig


def _wait_for(cond: Callable[[], bool], timeout_s: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if cond():
            return True
        time.sleep(0.01)
    return cond()


def _relay(*tokens: str, interval_s: float = 1.0) -> RelayConfig:
    cams = tuple(CameraConfig(token=t, url=f"rtsp://cam-{t}.local/stream") for t in tokens)
    return RelayConfig(
        snapshot_interval_s=interval_s,
        cameras=cams,
        restart_backoff=BackoffConfig(base_s=0.01, max_s=0.05),
        stop_timeout_s=2.0,
    )


class _FakePipeline:
    def __init__(self, cfg: CameraPipelineConfig, crash: bool) -> None:
        self.cfg = cfg
        self.crash = crash
        self.degraded = False
        self.stopped = threading.Event()

    def run(self) -> None:
        if self.crash:
            raise RuntimeError("decoder exploded")
        self.stopped.wait()

    def stop(self) -> None:
        self.stopped.set()

    def status(self) -> Dict[str, Any]:
        return {"camera": self.cfg.camera.camera_id, "crash": self.crash}


class _Factory:
    def __init__(self, crashing: tuple = ()) -> None:
        self.crashing = set(crashing)
        self.built: List[_FakePipeline] = []
        self._lock = threading.Lock()

    def __call__(self, cfg: CameraPipelineConfig) -> _FakePipeline:
        p = _FakePipeline(cfg, crash=cfg.camera.token in self.crashing)
        with self._lock:
            self.built.append(p)
        return p

    def count(self, token: str) -> int:
        with self._lock:
            return sum(1 for p in self.built if p.cfg.camera.token == token)


def test_each_camera_gets_its_own_pipeline() -> None:
    factory = _Factory()
    sup = Supervisor(_relay("aaaa0001", "bbbb0002"), pipeline_factory=factory)
    sup.start()
    try:
        assert _wait_for(lambda: len(factory.built) == 2)
        names = {h.thread.name for h in sup.handles.values() if h.thread is not None}
        assert names == {"pipeline-aaaa0001", "pipeline-bbbb0002"}
    finally:
        sup.stop()
    assert sup.wait(0.1)
    assert all(p.stopped.is_set() for p in factory.built)


def test_crashing_pipeline_is_restarted_without_affecting_others() -> None:
    factory = _Factory(crashing=("bad00001",))
    sup = Supervisor(_relay("bad00001", "good0001"), pipeline_factory=factory)
    sup.start()
    try:
        assert _wait_for(lambda: factory.count("bad00001") >= 3)
        assert factory.count("good0001") == 1
        handles = sup.handles
        assert handles["bad00001"].restarts >= 2
        assert handles["good0001"].restarts == 0
        statuses = {s["camera"]: s for s in sup.status()}
        assert statuses["good0001"]["restarts"] == 0
    finally:
        sup.stop()
    healthy = [p for p in factory.built if not p.crash]
    assert all(p.stopped.is_set() for p in healthy)


def test_failing_factory_is_retried() -> None:
    calls = []

    def _factory(cfg: CameraPipelineConfig) -> _FakePipeline:
        calls.append(cfg.camera.token)
        if len(calls) < 3:
            raise OSError("camera config unreadable")
        return _FakePipeline(cfg, crash=False)

    sup = Supervisor(_relay("flaky001"), pipeline_factory=_factory)
    sup.start()
    try:
        assert _wait_for(lambda: len(calls) == 3)
    finally:
        sup.stop()
    assert sup.handles == {}


def test_reload_restarts_only_changed_cameras() -> None:
    factory = _Factory()
    cfg = _relay("keep0001", "edit0001", "gone0001")
    sup = Supervisor(cfg, pipeline_factory=factory)
    sup.start()
    try:
        assert _wait_for(lambda: len(factory.built) == 3)
        kept_before = sup.handles["keep0001"]

        edited = CameraConfig(token="edit0001", url="rtsp://cam-edit0001.local/other")
        new_cams = (cfg.cameras[0], edited, CameraConfig(token="new00001", url="rtsp://cam-new.local/stream"))
        sup.reload(replace(cfg, cameras=new_cams))

        assert _wait_for(lambda: len(factory.built) == 5)
        handles = sup.handles
        assert set(handles) == {"keep0001", "edit0001", "new00001"}
        assert handles["keep0001"] is kept_before
        assert handles["edit0001"].cfg.camera.url.endswith("/other")
        stopped = {p.cfg.camera.token for p in factory.built if p.stopped.is_set()}
        assert stopped == {"edit0001", "gone0001"}
    finally:
        sup.stop()


def test_reload_with_new_interval_restarts_all() -> None:
    factory = _Factory()
    cfg = _relay("one00001", "two00001")
    sup = Supervisor(cfg, pipeline_factory=factory)
    sup.start()
    try:
        assert _wait_for(lambda: len(factory.built) == 2)
        sup.reload(replace(cfg, snapshot_interval_s=5.0))
        assert _wait_for(lambda: len(factory.built) == 4)
        assert all(h.cfg.interval_s == 5.0 for h in sup.handles.values())
    finally:
        sup.stop()


def test_reload_restarts_degraded_camera_with_same_config() -> None:
    factory = _Factory()
    cfg = _relay("deg00001", "fine0001")
    sup = Supervisor(cfg, pipeline_factory=factory)
    sup.start()
    try:
        assert _wait_for(lambda: len(factory.built) == 2)
        first = next(p for p in factory.built if p.cfg.camera.token == "deg00001")
        first.degraded = True
        fine_before = sup.handles["fine0001"]

        sup.reload(cfg)

        assert _wait_for(lambda: factory.count("deg00001") == 2)
        assert first.stopped.is_set()
        assert sup.handles["fine0001"] is fine_before
        assert factory.count("fine0001") == 1
        assert not sup.handles["deg00001"].degraded
    finally:
        sup.stop()
