import pytest

from snaprelay.io.rtp import START_CODE, H264Depacketizer, RtpPacket, parse_rtp
from snaprelay.utils.errors import DecodeError

SPS = bytes([0x67, 0x42, 0x00, 0x1F])
PPS = bytes([0x68, 0xCE, 0x3C, 0x80])
IDR = bytes([0x65, 0x88, 0x84, 0x21])
P_SLICE = bytes([0x41, 0x9A, 0x02])


def _pkt(seq: int, ts: int, payload: bytes, marker: bool = True) -> RtpPacket:
    return RtpPacket(payload_type=96, sequence=seq, timestamp=ts, ssrc=1, marker=marker, payload=payload)


def _stap_a(*nals: bytes) -> bytes:
    out = bytearray([0x18])
    for n in nals:
        out += len(n).to_bytes(2, "big") + n
    return bytes(out)


def _fu_a(nal: bytes, chunk: int) -> list:
    header, body = nal[0], nal[1:]
    pieces = [body[i : i + chunk] for i in range(0, len(body), chunk)]
    out = []
    for i, piece in enumerate(pieces):
        fu = header & 0x1F
        if i == 0:
            fu |= 0x80
        if i == len(pieces) - 1:
            fu |= 0x40
        out.append(bytes([(header & 0xE0) | 28, fu]) + piece)
    return out


def test_parse_rtp_header_fields_and_csrc() -> None:
    raw = bytes([0x81, 0xE0, 0x00, 0x07, 0, 0, 0x03, 0xE8, 0, 0, 0, 9]) + b"\x00\x00\x00\x01" + b"pay"
    pkt = parse_rtp(raw)
    assert pkt.payload_type == 96
    assert pkt.marker is True
    assert pkt.sequence == 7
    assert pkt.timestamp == 1000
    assert pkt.payload == b"pay"


def test_parse_rtp_rejects_short_and_wrong_version() -> None:
    with pytest.raises(DecodeError):
        parse_rtp(b"\x80\x60")
    with pytest.raises(DecodeError):
        parse_rtp(bytes([0x40]) + bytes(11))


def test_stap_a_keyframe_becomes_annex_b_access_unit() -> None:
    d = H264Depacketizer()
    aus = d.push(_pkt(1, 3000, _stap_a(SPS, PPS, IDR)))
    assert len(aus) == 1
    au = aus[0]
    assert au.random_access is True
    assert au.data == START_CODE + SPS + START_CODE + PPS + START_CODE + IDR


def test_fu_a_fragments_reassemble_and_sdp_parameter_sets_are_prepended() -> None:
    big_idr = bytes([0x65]) + bytes(range(1, 200))
    d = H264Depacketizer(parameter_sets=[SPS, PPS])
    frags = _fu_a(big_idr, 50)
    out = []
    for i, payload in enumerate(frags):
        out += d.push(_pkt(10 + i, 9000, payload, marker=(i == len(frags) - 1)))
    assert len(out) == 1
    assert out[0].data == START_CODE + SPS + START_CODE + PPS + START_CODE + big_idr


def test_units_before_first_keyframe_are_dropped() -> None:
    d = H264Depacketizer()
    assert d.push(_pkt(1, 100, P_SLICE)) == []
    assert d.dropped_units == 1
    assert len(d.push(_pkt(2, 200, IDR))) == 1
    assert len(d.push(_pkt(3, 300, P_SLICE))) == 1


def test_sequence_gap_drops_partial_unit_until_next_keyframe() -> None:
    d = H264Depacketizer()
    d.push(_pkt(1, 100, IDR))
    frags = _fu_a(bytes([0x41]) + bytes(100), 30)
    assert d.push(_pkt(2, 200, frags[0], marker=False)) == []
    # fragment with seq 3 lost
    assert d.push(_pkt(4, 200, frags[2], marker=True)) == []
    assert d.push(_pkt(5, 300, P_SLICE)) == []
    resumed = d.push(_pkt(6, 400, IDR))
    assert len(resumed) == 1 and resumed[0].random_access


def test_timestamp_change_flushes_unit_without_marker() -> None:
    d = H264Depacketizer()
    assert d.push(_pkt(1, 100, IDR, marker=False)) == []
    aus = d.push(_pkt(2, 200, P_SLICE, marker=True))
    assert [a.timestamp for a in aus] == [100, 200]
