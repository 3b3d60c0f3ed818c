from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import cv2

from snaprelay.capture.decoder import Decoder, create_decoder
from snaprelay.io.rtp import AccessUnit
from snaprelay.utils.errors import DecodeError
from snaprelay.utils.types import Frame


logger = logging.getLogger("snaprelay.capture.extractor")


@dataclass(frozen=True)
class FrameExtractorConfig:
    backend: str = "pyav"
    decoder_threads: int = 1
    keyframes_only: bool = False
    resize_enabled: bool = False
    resize_width: int = 1280
    resize_height: int = 720

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "FrameExtractorConfig":
        resize = d.get("resize", {}) or {}
        return FrameExtractorConfig(
            backend=str(d.get("backend", "pyav")),
            decoder_threads=int(d.get("decoder_threads", 1)),
            keyframes_only=bool(d.get("keyframes_only", False)),
            resize_enabled=bool(resize.get("enabled", False)),
            resize_width=int(resize.get("width", 1280)),
            resize_height=int(resize.get("height", 720)),
        )


@dataclass
class ExtractorStats:
    fed: int = 0
    decoded: int = 0
    dropped: int = 0
    decode_errors: int = 0


class FrameExtractor:
    """Holds the single most recently decoded frame for one camera.

    `feed` runs on the session thread and `latest_snapshot` on the scheduler
    thread; a newer frame replaces the resident one and is never queued.
    """

    def __init__(
        self,
        camera_id: str,
        cfg: FrameExtractorConfig,
        decoder: Optional[Decoder] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._camera_id = camera_id
        self._cfg = cfg
        self._decoder = decoder if decoder is not None else create_decoder(cfg.backend, cfg.decoder_threads)
        self._clock = clock
        self._lock = threading.Lock()
        self._latest: Optional[Frame] = None
        self._seq = itertools.count(1)
        self._need_keyframe = True
        self.stats = ExtractorStats()

    def feed(self, au: AccessUnit) -> Optional[Frame]:
        self.stats.fed += 1
        if self._need_keyframe and not au.random_access:
            self.stats.dropped += 1
            return None
        if self._cfg.keyframes_only and not au.random_access:
            return None
        try:
            images = self._decoder.decode(au)
        except DecodeError as e:
            self.stats.decode_errors += 1
            self.stats.dropped += 1
            logger.debug("Decode error camera=%s, waiting for next keyframe: %s", self._camera_id, e)
            self._decoder.reset()
            self._need_keyframe = True
            return None
        self._need_keyframe = False
        if not images:
            return None

        image = images[-1]
        if self._cfg.resize_enabled:
            image = cv2.resize(image, (self._cfg.resize_width, self._cfg.resize_height), interpolation=cv2.INTER_AREA)
        frame = Frame(sequence=next(self._seq), timestamp_s=float(self._clock()), image_bgr=image, keyframe=au.random_access)
        with self._lock:
            self._latest = frame
        self.stats.decoded += 1
        return frame

    def latest_snapshot(self) -> Optional[Frame]:
        with self._lock:
            return self._latest

    def reset(self) -> None:
        with self._lock:
            self._latest = None
        self._decoder.reset()
        self._need_keyframe = True
