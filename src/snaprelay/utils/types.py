from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional
from urllib.parse import urlsplit

import cv2
import numpy as np

from snaprelay.utils.errors import ConfigError

TransportKind = Literal["tcp", "udp"]


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    BACKOFF = "backoff"


class UploadOutcome(enum.Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    REJECTED_BY_SERVER = "rejected_by_server"


@dataclass(frozen=True)
class CameraConfig:
    token: str
    url: str
    username: Optional[str] = None
    password: Optional[str] = None
    interval_s: Optional[float] = None
    fingerprint: Optional[str] = None
    transport: TransportKind = "tcp"

    @property
    def camera_id(self) -> str:
        # tokens are secrets, only a prefix goes into logs
        return self.token[:8]

    @property
    def upload_fingerprint(self) -> str:
        return self.fingerprint or self.token

    def effective_interval_s(self, default_s: float) -> float:
        return float(self.interval_s) if self.interval_s is not None else float(default_s)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "CameraConfig":
        token = str(d.get("token", "") or "").strip()
        if not token:
            raise ConfigError("camera.token is required")
        url = str(d.get("url", "") or "").strip()
        parts = urlsplit(url)
        if parts.scheme.lower() != "rtsp" or not parts.hostname:
            raise ConfigError(f"camera.url must be an rtsp:// address with a host: {url!r}")

        username = d.get("username")
        password = d.get("password")
        if username is not None and password is None:
            raise ConfigError("camera.username set without camera.password")

        interval = d.get("interval_s", d.get("snapshot_interval"))
        if interval is not None:
            interval = float(interval)
            if interval <= 0.0:
                raise ConfigError("camera.interval_s must be > 0")

        transport = str(d.get("transport", "tcp")).lower()
        if transport not in ("tcp", "udp"):
            raise ConfigError(f"Unknown camera.transport: {transport}")

        fingerprint = d.get("fingerprint")
        return CameraConfig(
            token=token,
            url=url,
            username=str(username) if username is not None else None,
            password=str(password) if password is not None else None,
            interval_s=interval,
            fingerprint=str(fingerprint) if fingerprint else None,
            transport=transport,  # type: ignore[arg-type]
        )


@dataclass(frozen=True, eq=False)
class Frame:
    sequence: int
    timestamp_s: float
    image_bgr: np.ndarray
    keyframe: bool = False

    @property
    def width(self) -> int:
        return int(self.image_bgr.shape[1])

    @property
    def height(self) -> int:
        return int(self.image_bgr.shape[0])

    def to_jpeg(self, quality: int = 90) -> bytes:
        ok, buf = cv2.imencode(".jpg", self.image_bgr, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
        if not ok:
            raise RuntimeError(f"JPEG encoding failed for frame {self.sequence}")
        return buf.tobytes()


@dataclass
class UploadAttempt:
    camera_id: str
    sequence: int
    attempt: int = 0
    deadline_s: float = 0.0
    last_status: Optional[int] = None
    errors: List[str] = field(default_factory=list)
