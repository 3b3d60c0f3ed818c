from __future__ import annotations

import http.client
import logging
import random
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from snaprelay.utils.backoff import BackoffConfig, ExponentialBackoff
from snaprelay.utils.errors import AuthError, ConfigError, UploadTransientError
from snaprelay.utils.types import Frame, UploadAttempt, UploadOutcome


logger = logging.getLogger("snaprelay.output.uploader")

DEFAULT_ENDPOINT = "https://webcam.connect.prusa3d.com/c/snapshot"

# 4xx codes that mean "try again later" rather than "this request is wrong"
RETRYABLE_CLIENT_STATUSES = frozenset({408, 425, 429})


@dataclass(frozen=True)
class UploadConfig:
    endpoint: str = DEFAULT_ENDPOINT
    method: str = "PUT"
    timeout_s: float = 10.0
    max_attempts: int = 3
    jpeg_quality: int = 90
    content_type: str = "image/jpg"
    backoff: BackoffConfig = field(default_factory=lambda: BackoffConfig(base_s=1.0, max_s=8.0))

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "UploadConfig":
        cfg = UploadConfig(
            endpoint=str(d.get("endpoint", DEFAULT_ENDPOINT)),
            method=str(d.get("method", "PUT")).upper(),
            timeout_s=float(d.get("timeout_s", 10.0)),
            max_attempts=int(d.get("max_attempts", 3)),
            jpeg_quality=int(d.get("jpeg_quality", 90)),
            content_type=str(d.get("content_type", "image/jpg")),
            backoff=BackoffConfig.from_dict(dict(d.get("backoff", {}) or {}), BackoffConfig(base_s=1.0, max_s=8.0)),
        )
        if not cfg.endpoint.lower().startswith(("http://", "https://")):
            raise ConfigError(f"upload.endpoint must be an http(s) URL: {cfg.endpoint!r}")
        if cfg.max_attempts < 1:
            raise ConfigError("upload.max_attempts must be >= 1")
        if cfg.timeout_s <= 0.0:
            raise ConfigError("upload.timeout_s must be > 0")
        if not 1 <= cfg.jpeg_quality <= 100:
            raise ConfigError("upload.jpeg_quality must be in [1, 100]")
        return cfg


UrlOpen = Callable[..., Any]


class Uploader:
    def __init__(
        self,
        cfg: UploadConfig,
        fingerprint: Optional[str] = None,
        stop_event: Optional[threading.Event] = None,
        urlopen: Optional[UrlOpen] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._cfg = cfg
        self._fingerprint = fingerprint
        self._stop = stop_event or threading.Event()
        self._urlopen = urlopen or urllib.request.urlopen
        self._rng = rng
        self.current: Optional[UploadAttempt] = None
        self.last: Optional[UploadAttempt] = None

    def upload(self, frame: Frame, credential: str) -> UploadOutcome:
        camera_id = credential[:8]
        body = frame.to_jpeg(self._cfg.jpeg_quality)
        backoff = ExponentialBackoff(self._cfg.backoff, rng=self._rng)
        attempt = UploadAttempt(camera_id=camera_id, sequence=frame.sequence)
        self.current = attempt
        try:
            while True:
                attempt.attempt += 1
                attempt.deadline_s = 0.0
                try:
                    status = self._send(body, credential)
                except AuthError as e:
                    attempt.last_status = e.status
                    attempt.errors.append(str(e))
                    logger.error(
                        "Snapshot rejected camera=%s seq=%d status=%d: %s", camera_id, frame.sequence, e.status, e
                    )
                    return UploadOutcome.REJECTED_BY_SERVER
                except UploadTransientError as e:
                    attempt.last_status = e.status or None
                    attempt.errors.append(str(e))
                    if attempt.attempt >= self._cfg.max_attempts:
                        logger.warning(
                            "Snapshot upload failed camera=%s seq=%d after %d attempt(s): %s",
                            camera_id,
                            frame.sequence,
                            attempt.attempt,
                            e,
                        )
                        return UploadOutcome.TRANSIENT_FAILURE
                    delay = backoff.next_delay_s()
                    attempt.deadline_s = time.monotonic() + delay
                    logger.info(
                        "Retrying upload camera=%s seq=%d in %.2fs (attempt %d): %s",
                        camera_id,
                        frame.sequence,
                        delay,
                        attempt.attempt,
                        e,
                    )
                    if self._stop.wait(delay):
                        logger.debug("Upload cancelled camera=%s seq=%d", camera_id, frame.sequence)
                        return UploadOutcome.TRANSIENT_FAILURE
                    continue
                attempt.last_status = status
                logger.debug(
                    "Uploaded snapshot camera=%s seq=%d bytes=%d status=%d", camera_id, frame.sequence, len(body), status
                )
                return UploadOutcome.SUCCESS
        finally:
            self.current = None
            self.last = attempt

    def _send(self, body: bytes, credential: str) -> int:
        req = urllib.request.Request(self._cfg.endpoint, data=body, method=self._cfg.method)
        req.add_header("Content-Type", self._cfg.content_type)
        req.add_header("Token", credential)
        req.add_header("Fingerprint", self._fingerprint or credential)
        try:
            with self._urlopen(req, timeout=float(self._cfg.timeout_s)) as resp:
                status = int(getattr(resp, "status", 200))
                resp.read()
        except urllib.error.HTTPError as e:
            raise _classify(int(e.code), str(e.reason)) from e
        except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
            # URLError wraps socket timeouts and refused connections
            raise UploadTransientError(f"request failed: {e}") from e
        if 200 <= status < 300:
            return status
        raise _classify(status, "unexpected status")


def _classify(status: int, reason: str) -> Exception:
    if status >= 500 or status in RETRYABLE_CLIENT_STATUSES:
        return UploadTransientError(f"HTTP {status} {reason}", status=status)
    return AuthError(f"HTTP {status} {reason}", status=status)
