from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from snaprelay.capture.extractor import FrameExtractorConfig
from snaprelay.io.session import SessionConfig
from snaprelay.output.uploader import UploadConfig, UrlOpen
from snaprelay.pipeline.camera_pipeline import CameraPipeline, CameraPipelineConfig
from snaprelay.utils.backoff import BackoffConfig, ExponentialBackoff
from snaprelay.utils.config import load_yaml, section
from snaprelay.utils.errors import ConfigError
from snaprelay.utils.types import CameraConfig


logger = logging.getLogger("snaprelay.pipeline.supervisor")


@dataclass(frozen=True)
class RelayConfig:
    snapshot_interval_s: float
    cameras: Tuple[CameraConfig, ...]
    session: SessionConfig = field(default_factory=SessionConfig)
    extractor: FrameExtractorConfig = field(default_factory=FrameExtractorConfig)
    upload: UploadConfig = field(default_factory=UploadConfig)
    restart_backoff: BackoffConfig = field(default_factory=lambda: BackoffConfig(base_s=1.0, max_s=60.0))
    resend_unchanged: bool = False
    stop_timeout_s: float = 10.0

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "RelayConfig":
        if "snapshot_interval" not in d and "snapshot_interval_s" not in d:
            raise ConfigError("snapshot_interval_s is required")
        interval = float(d.get("snapshot_interval_s", d.get("snapshot_interval")))
        if interval <= 0.0:
            raise ConfigError("snapshot_interval_s must be > 0")

        raw_cams = d.get("cameras", d.get("camera")) or []
        if not isinstance(raw_cams, list):
            raise ConfigError("cameras must be a list")
        if not raw_cams:
            raise ConfigError("no cameras specified")
        cameras: List[CameraConfig] = []
        seen = set()
        for i, raw in enumerate(raw_cams):
            if not isinstance(raw, dict):
                raise ConfigError(f"cameras[{i}] must be a mapping")
            try:
                cam = CameraConfig.from_dict(raw)
            except ConfigError as e:
                raise ConfigError(f"cameras[{i}]: {e}") from e
            if cam.token in seen:
                raise ConfigError(f"cameras[{i}]: duplicate token")
            seen.add(cam.token)
            cameras.append(cam)

        supervisor = section(d, "supervisor")
        return RelayConfig(
            snapshot_interval_s=interval,
            cameras=tuple(cameras),
            session=SessionConfig.from_dict(section(d, "session")),
            extractor=FrameExtractorConfig.from_dict(section(d, "decoder")),
            upload=UploadConfig.from_dict(section(d, "upload")),
            restart_backoff=BackoffConfig.from_dict(
                dict(supervisor.get("restart_backoff", {}) or {}), BackoffConfig(base_s=1.0, max_s=60.0)
            ),
            resend_unchanged=bool(supervisor.get("resend_unchanged", False)),
            stop_timeout_s=float(supervisor.get("stop_timeout_s", 10.0)),
        )

    @staticmethod
    def load(path: str) -> "RelayConfig":
        try:
            data = load_yaml(path)
        except OSError as e:
            raise ConfigError(f"Cannot read config {path}: {e}") from e
        try:
            return RelayConfig.from_dict(data)
        except (TypeError, ValueError) as e:
            if isinstance(e, ConfigError):
                raise
            raise ConfigError(f"Invalid config {path}: {e}") from e

    def pipeline_config(self, camera: CameraConfig) -> CameraPipelineConfig:
        return CameraPipelineConfig(
            camera=camera,
            interval_s=camera.effective_interval_s(self.snapshot_interval_s),
            session=self.session,
            extractor=self.extractor,
            upload=self.upload,
            resend_unchanged=self.resend_unchanged,
            stop_timeout_s=self.stop_timeout_s,
        )


class Pipeline(Protocol):
    def run(self) -> None:
        ...

    def stop(self) -> None:
        ...

    @property
    def degraded(self) -> bool:
        ...

    def status(self) -> Dict[str, Any]:
        ...


PipelineFactory = Callable[[CameraPipelineConfig], Pipeline]


@dataclass
class PipelineHandle:
    cfg: CameraPipelineConfig
    thread: Optional[threading.Thread] = None
    pipeline: Optional[Pipeline] = None
    restarts: int = 0
    stop_event: threading.Event = field(default_factory=threading.Event)
    lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def camera_id(self) -> str:
        return self.cfg.camera.camera_id

    @property
    def degraded(self) -> bool:
        pipeline = self.pipeline
        return pipeline is not None and pipeline.degraded

    def request_stop(self) -> None:
        with self.lock:
            self.stop_event.set()
            pipeline = self.pipeline
        if pipeline is not None:
            pipeline.stop()


class Supervisor:
    """Runs one thread per camera pipeline and restarts any that crash.

    A pipeline failure is logged and retried after its own backoff; nothing a
    pipeline raises reaches another pipeline or the caller.
    """

    def __init__(
        self,
        cfg: RelayConfig,
        pipeline_factory: Optional[PipelineFactory] = None,
        urlopen: Optional[UrlOpen] = None,
    ) -> None:
        self._cfg = cfg
        self._urlopen = urlopen
        self._factory: PipelineFactory = pipeline_factory or self._default_factory
        self._handles: Dict[str, PipelineHandle] = {}
        self._lock = threading.Lock()
        self._stopped = threading.Event()

    @property
    def config(self) -> RelayConfig:
        return self._cfg

    @property
    def handles(self) -> Dict[str, PipelineHandle]:
        with self._lock:
            return dict(self._handles)

    def _default_factory(self, cfg: CameraPipelineConfig) -> Pipeline:
        return CameraPipeline(cfg, urlopen=self._urlopen)

    def start(self) -> None:
        self._stopped.clear()
        logger.info("Starting %d camera pipeline(s)", len(self._cfg.cameras))
        with self._lock:
            for cam in self._cfg.cameras:
                if cam.token not in self._handles:
                    self._handles[cam.token] = self._spawn(self._cfg.pipeline_config(cam))

    def _spawn(self, cfg: CameraPipelineConfig) -> PipelineHandle:
        handle = PipelineHandle(cfg=cfg)
        t = threading.Thread(target=self._worker, args=(handle,), name=f"pipeline-{handle.camera_id}", daemon=True)
        handle.thread = t
        t.start()
        return handle

    def _worker(self, handle: PipelineHandle) -> None:
        backoff = ExponentialBackoff(self._cfg.restart_backoff)
        while True:
            with handle.lock:
                if handle.stop_event.is_set():
                    break
                try:
                    handle.pipeline = self._factory(handle.cfg)
                except Exception:
                    logger.exception("Failed to construct pipeline camera=%s", handle.camera_id)
                    handle.pipeline = None
                pipeline = handle.pipeline
            if pipeline is not None:
                try:
                    pipeline.run()
                except Exception:
                    logger.exception("Camera pipeline failed camera=%s", handle.camera_id)
                else:
                    if handle.stop_event.is_set():
                        break
                    logger.warning("Camera pipeline exited unexpectedly camera=%s", handle.camera_id)
            handle.restarts += 1
            delay = backoff.next_delay_s()
            logger.info("Restarting pipeline camera=%s in %.2fs", handle.camera_id, delay)
            if handle.stop_event.wait(delay):
                break

    def stop(self, timeout_s: Optional[float] = None) -> None:
        timeout = self._cfg.stop_timeout_s if timeout_s is None else float(timeout_s)
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        logger.info("Stopping %d camera pipeline(s)", len(handles))
        for h in handles:
            h.request_stop()
        self._join(handles, timeout)
        self._stopped.set()

    def _join(self, handles: List[PipelineHandle], timeout_s: float) -> None:
        for h in handles:
            if h.thread is None:
                continue
            h.thread.join(timeout=timeout_s)
            if h.thread.is_alive():
                logger.warning("Pipeline did not stop cleanly camera=%s", h.camera_id)

    def reload(self, cfg: RelayConfig) -> None:
        """Swap in a new configuration, restarting pipelines whose settings changed.

        Degraded pipelines are restarted even when unchanged, so a reload is
        also how an operator retries a camera after fixing its credential.
        """
        wanted = {cam.token: cfg.pipeline_config(cam) for cam in cfg.cameras}
        with self._lock:
            stale = [h for tok, h in self._handles.items() if wanted.get(tok) != h.cfg or h.degraded]
            for h in stale:
                del self._handles[h.cfg.camera.token]
            self._cfg = cfg
        for h in stale:
            h.request_stop()
        self._join(stale, self._cfg.stop_timeout_s)
        with self._lock:
            started = 0
            for tok, pcfg in wanted.items():
                if tok not in self._handles:
                    self._handles[tok] = self._spawn(pcfg)
                    started += 1
        logger.info("Reloaded configuration: %d pipeline(s) stopped, %d started", len(stale), started)

    def wait(self, timeout_s: Optional[float] = None) -> bool:
        return self._stopped.wait(timeout_s)

    def status(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for h in self.handles.values():
            pipeline = h.pipeline
            st: Dict[str, Any] = pipeline.status() if pipeline is not None else {"camera": h.camera_id}
            st["restarts"] = h.restarts
            out.append(st)
        return out
