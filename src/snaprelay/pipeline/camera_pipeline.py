from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from snaprelay.capture.decoder import Decoder
from snaprelay.capture.extractor import FrameExtractor, FrameExtractorConfig
from snaprelay.io.session import Session, SessionConfig
from snaprelay.output.uploader import UploadConfig, Uploader, UrlOpen
from snaprelay.pipeline.scheduler import Scheduler
from snaprelay.utils.types import CameraConfig, Frame, SessionState, UploadOutcome


logger = logging.getLogger("snaprelay.pipeline.camera")


@dataclass(frozen=True)
class CameraPipelineConfig:
    camera: CameraConfig
    interval_s: float
    session: SessionConfig
    extractor: FrameExtractorConfig
    upload: UploadConfig
    resend_unchanged: bool = False
    stop_timeout_s: float = 10.0


class CameraPipeline:
    def __init__(
        self,
        cfg: CameraPipelineConfig,
        decoder: Optional[Decoder] = None,
        urlopen: Optional[UrlOpen] = None,
    ) -> None:
        self._cfg = cfg
        self._camera = cfg.camera
        self._stop = threading.Event()
        self._extractor = FrameExtractor(self._camera.camera_id, cfg.extractor, decoder=decoder)
        self._session = Session(
            self._camera,
            cfg.session,
            on_media=self._extractor.feed,
            on_state_change=self._on_session_state,
        )
        self._uploader = Uploader(
            cfg.upload,
            fingerprint=self._camera.upload_fingerprint,
            stop_event=self._stop,
            urlopen=urlopen,
        )
        self._scheduler = Scheduler(
            camera_id=self._camera.camera_id,
            interval_s=cfg.interval_s,
            session=self._session,
            extractor=self._extractor,
            upload=self._upload,
            stop_event=self._stop,
            resend_unchanged=cfg.resend_unchanged,
        )

    @property
    def camera(self) -> CameraConfig:
        return self._camera

    @property
    def config(self) -> CameraPipelineConfig:
        return self._cfg

    @property
    def session(self) -> Session:
        return self._session

    @property
    def extractor(self) -> FrameExtractor:
        return self._extractor

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def uploader(self) -> Uploader:
        return self._uploader

    @property
    def degraded(self) -> bool:
        return self._scheduler.degraded

    def run(self) -> None:
        logger.info(
            "Starting pipeline camera=%s url=%s interval=%.1fs",
            self._camera.camera_id,
            self._session_url_for_log(),
            self._cfg.interval_s,
        )
        self._session.start()
        try:
            self._scheduler.run()
        finally:
            self._stop.set()
            self._session.stop(timeout_s=self._cfg.stop_timeout_s)
            self._scheduler.shutdown(wait=True)
            logger.info("Pipeline stopped camera=%s", self._camera.camera_id)

    def stop(self) -> None:
        self._stop.set()

    def status(self) -> Dict[str, Any]:
        sched = self._scheduler.stats
        out: Dict[str, Any] = {
            "camera": self._camera.camera_id,
            "state": self._session.state.value,
            "degraded": self._scheduler.degraded,
            "consecutive_failures": self._session.consecutive_failures,
            "uploads_ok": sched.uploads_ok,
            "uploads_failed": sched.uploads_failed,
            "ticks": sched.ticks,
            "frames_decoded": self._extractor.stats.decoded,
        }
        frame = self._extractor.latest_snapshot()
        out["snapshot_seq"] = frame.sequence if frame is not None else None
        out["snapshot_keyframe"] = frame.keyframe if frame is not None else None
        pending = self._uploader.current
        if pending is not None and pending.deadline_s > 0.0:
            out["upload_retry_in_s"] = max(0.0, pending.deadline_s - time.monotonic())
        last = self._uploader.last
        if last is not None:
            out["last_upload_status"] = last.last_status
            out["last_upload_attempts"] = last.attempt
            out["last_upload_error"] = last.errors[-1] if last.errors else None
        return out

    def _upload(self, frame: Frame) -> UploadOutcome:
        return self._uploader.upload(frame, self._camera.token)

    def _on_session_state(self, state: SessionState) -> None:
        # the new state is already published when this runs
        if state != SessionState.STREAMING:
            self._extractor.reset()

    def _session_url_for_log(self) -> str:
        url = self._camera.url
        if "@" in url:
            scheme, _, rest = url.partition("://")
            return f"{scheme}://***@{rest.split('@', 1)[1]}"
        return url
