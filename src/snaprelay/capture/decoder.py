from __future__ import annotations

from typing import List, Optional, Protocol

import av
from av.error import FFmpegError
import numpy as np

from snaprelay.io.rtp import AccessUnit
from snaprelay.utils.errors import DecodeError


class Decoder(Protocol):
    def decode(self, au: AccessUnit) -> List[np.ndarray]:
        ...

    def reset(self) -> None:
        ...


class PyAvH264Decoder:
    def __init__(self, threads: int = 1) -> None:
        self._threads = max(1, int(threads))
        self._ctx: Optional[av.CodecContext] = None

    def _context(self) -> av.CodecContext:
        if self._ctx is None:
            ctx = av.CodecContext.create("h264", "r")
            ctx.thread_count = self._threads
            self._ctx = ctx
        return self._ctx

    def decode(self, au: AccessUnit) -> List[np.ndarray]:
        ctx = self._context()
        out: List[np.ndarray] = []
        try:
            for frame in ctx.decode(av.Packet(au.data)):
                out.append(frame.to_ndarray(format="bgr24"))
        except (FFmpegError, ValueError) as e:
            raise DecodeError(f"H.264 decode failed: {e}") from e
        return out

    def reset(self) -> None:
        self._ctx = None


def create_decoder(backend: str, threads: int = 1) -> Decoder:
    if backend == "pyav":
        return PyAvH264Decoder(threads=threads)
    raise ValueError(f"Unknown decoder backend: {backend}")
