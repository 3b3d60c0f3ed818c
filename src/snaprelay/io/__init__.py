from .rtp import AccessUnit, H264Depacketizer, RtpPacket, parse_rtp
from .rtsp import Credentials, MessageReader, parse_sdp
from .session import Session, SessionConfig, TcpInterleavedTransport, UdpTransport

__all__ = [
    "AccessUnit",
    "Credentials",
    "H264Depacketizer",
    "MessageReader",
    "RtpPacket",
    "Session",
    "SessionConfig",
    "TcpInterleavedTransport",
    "UdpTransport",
    "parse_rtp",
    "parse_sdp",
]
