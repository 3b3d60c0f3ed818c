from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from snaprelay.utils.errors import DecodeError


logger = logging.getLogger("snaprelay.io.rtp")

START_CODE = b"\x00\x00\x00\x01"

NAL_IDR = 5
NAL_SPS = 7
NAL_PPS = 8
NAL_STAP_A = 24
NAL_FU_A = 28


@dataclass(frozen=True)
class RtpPacket:
    payload_type: int
    sequence: int
    timestamp: int
    ssrc: int
    marker: bool
    payload: bytes


def parse_rtp(data: bytes) -> RtpPacket:
    if len(data) < 12:
        raise DecodeError(f"RTP packet too short: {len(data)} bytes")
    b0, b1 = data[0], data[1]
    if (b0 >> 6) != 2:
        raise DecodeError(f"Unsupported RTP version: {b0 >> 6}")
    offset = 12 + 4 * (b0 & 0x0F)
    if b0 & 0x10:
        if len(data) < offset + 4:
            raise DecodeError("Truncated RTP header extension")
        ext_words = int.from_bytes(data[offset + 2 : offset + 4], "big")
        offset += 4 + 4 * ext_words
    end = len(data)
    if b0 & 0x20:
        pad = data[-1]
        end -= pad
    if offset > end:
        raise DecodeError("RTP header exceeds packet length")
    return RtpPacket(
        payload_type=b1 & 0x7F,
        sequence=int.from_bytes(data[2:4], "big"),
        timestamp=int.from_bytes(data[4:8], "big"),
        ssrc=int.from_bytes(data[8:12], "big"),
        marker=bool(b1 & 0x80),
        payload=bytes(data[offset:end]),
    )


@dataclass(frozen=True)
class AccessUnit:
    timestamp: int
    data: bytes
    random_access: bool
    nal_types: Tuple[int, ...]


class H264Depacketizer:
    """Reassembles RTP H.264 payloads (single NAL, STAP-A, FU-A) into access units.

    Output is Annex-B. Any loss inside an access unit drops that unit and every
    following one until the next IDR, so a decoder never sees a unit that
    references missing data.
    """

    def __init__(self, parameter_sets: Sequence[bytes] = ()) -> None:
        self._sps: Optional[bytes] = None
        self._pps: Optional[bytes] = None
        for ps in parameter_sets:
            self._remember_parameter_set(ps)
        self._nals: List[bytes] = []
        self._ts: Optional[int] = None
        self._fu: Optional[bytearray] = None
        self._last_seq: Optional[int] = None
        self._corrupt = False
        self._need_keyframe = True
        self.dropped_units = 0
        self.dropped_packets = 0

    def reset(self) -> None:
        self._nals = []
        self._ts = None
        self._fu = None
        self._last_seq = None
        self._corrupt = False
        self._need_keyframe = True

    def push(self, pkt: RtpPacket) -> List[AccessUnit]:
        out: List[AccessUnit] = []
        if self._last_seq is not None and pkt.sequence != ((self._last_seq + 1) & 0xFFFF):
            logger.debug("RTP sequence gap: %d -> %d", self._last_seq, pkt.sequence)
            self._fu = None
            self._corrupt = True
        self._last_seq = pkt.sequence

        if self._ts is not None and pkt.timestamp != self._ts and (self._nals or self._corrupt):
            au = self._flush()
            if au is not None:
                out.append(au)
        self._ts = pkt.timestamp

        try:
            self._consume(pkt.payload)
        except DecodeError as e:
            logger.debug("Dropping RTP payload: %s", e)
            self.dropped_packets += 1
            self._fu = None
            self._corrupt = True

        if pkt.marker:
            au = self._flush()
            if au is not None:
                out.append(au)
        return out

    def _consume(self, payload: bytes) -> None:
        if not payload:
            raise DecodeError("Empty H.264 payload")
        header = payload[0]
        if header & 0x80:
            raise DecodeError("Forbidden bit set in NAL header")
        nal_type = header & 0x1F
        if 1 <= nal_type <= 23:
            self._fu = None
            self._nals.append(payload)
            return
        if nal_type == NAL_STAP_A:
            pos = 1
            while pos + 2 <= len(payload):
                size = int.from_bytes(payload[pos : pos + 2], "big")
                pos += 2
                if size == 0 or pos + size > len(payload):
                    raise DecodeError("Truncated STAP-A aggregation unit")
                self._nals.append(payload[pos : pos + size])
                pos += size
            return
        if nal_type == NAL_FU_A:
            if len(payload) < 2:
                raise DecodeError("Truncated FU-A header")
            fu = payload[1]
            start, end = bool(fu & 0x80), bool(fu & 0x40)
            if start:
                self._fu = bytearray([(header & 0xE0) | (fu & 0x1F)])
            elif self._fu is None:
                raise DecodeError("FU-A continuation without start fragment")
            self._fu.extend(payload[2:])
            if end:
                self._nals.append(bytes(self._fu))
                self._fu = None
            return
        raise DecodeError(f"Unsupported H.264 packetization type: {nal_type}")

    def _flush(self) -> Optional[AccessUnit]:
        nals, ts = self._nals, self._ts
        corrupt = self._corrupt or self._fu is not None
        self._nals = []
        self._fu = None
        self._corrupt = False
        if corrupt:
            self.dropped_units += 1
            self._need_keyframe = True
            return None
        if not nals or ts is None:
            return None

        types = tuple(n[0] & 0x1F for n in nals)
        for n in nals:
            if (n[0] & 0x1F) in (NAL_SPS, NAL_PPS):
                self._remember_parameter_set(n)
        random_access = NAL_IDR in types
        if self._need_keyframe and not random_access:
            self.dropped_units += 1
            return None
        self._need_keyframe = False

        parts: List[bytes] = []
        if random_access:
            if NAL_SPS not in types and self._sps is not None:
                parts.append(self._sps)
            if NAL_PPS not in types and self._pps is not None:
                parts.append(self._pps)
        parts.extend(nals)
        data = b"".join(START_CODE + n for n in parts)
        return AccessUnit(timestamp=ts, data=data, random_access=random_access, nal_types=types)

    def _remember_parameter_set(self, nal: bytes) -> None:
        if not nal:
            return
        t = nal[0] & 0x1F
        if t == NAL_SPS:
            self._sps = bytes(nal)
        elif t == NAL_PPS:
            self._pps = bytes(nal)
