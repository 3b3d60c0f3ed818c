from __future__ import annotations

import base64
import hashlib
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import unquote, urlsplit, urlunsplit

from snaprelay.utils.errors import ProtocolError


logger = logging.getLogger("snaprelay.io.rtsp")

RTSP_VERSION = "RTSP/1.0"
DEFAULT_PORT = 554
MAX_HEADER_BYTES = 64 * 1024


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str


@dataclass(frozen=True)
class RtspMessage:
    start_line: str
    headers: Tuple[Tuple[str, str], ...]
    body: bytes = b""

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        key = name.lower()
        for k, v in self.headers:
            if k.lower() == key:
                return v
        return default

    def header_all(self, name: str) -> List[str]:
        key = name.lower()
        return [v for k, v in self.headers if k.lower() == key]

    @property
    def cseq(self) -> Optional[int]:
        raw = self.header("CSeq")
        if raw is None:
            return None
        try:
            return int(raw.strip())
        except ValueError:
            return None


@dataclass(frozen=True)
class RtspResponse(RtspMessage):
    status: int = 0
    reason: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@dataclass(frozen=True)
class RtspRequest(RtspMessage):
    method: str = ""
    uri: str = ""


@dataclass(frozen=True)
class InterleavedFrame:
    channel: int
    payload: bytes


Message = Union[RtspResponse, RtspRequest, InterleavedFrame]


def build_request(method: str, uri: str, cseq: int, headers: Optional[Sequence[Tuple[str, str]]] = None, body: bytes = b"") -> bytes:
    lines = [f"{method} {uri} {RTSP_VERSION}", f"CSeq: {int(cseq)}"]
    for k, v in headers or ():
        lines.append(f"{k}: {v}")
    if body:
        lines.append(f"Content-Length: {len(body)}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("utf-8") + body


class MessageReader:
    """Incremental parser for an RTSP connection.

    The same TCP stream carries RTSP responses, occasional server requests, and
    `$`-prefixed interleaved binary frames. Bytes are pushed with `feed` and
    complete messages popped with `next_message`, which returns None until a
    whole message is buffered.
    """

    def __init__(self) -> None:
        self._buf = bytearray()

    def feed(self, data: bytes) -> None:
        self._buf.extend(data)

    def next_message(self) -> Optional[Message]:
        buf = self._buf
        if not buf:
            return None
        if buf[0] == 0x24:
            if len(buf) < 4:
                return None
            size = (buf[2] << 8) | buf[3]
            if len(buf) < 4 + size:
                return None
            frame = InterleavedFrame(channel=int(buf[1]), payload=bytes(buf[4 : 4 + size]))
            del buf[: 4 + size]
            return frame

        end = buf.find(b"\r\n\r\n")
        if end < 0:
            if len(buf) > MAX_HEADER_BYTES:
                raise ProtocolError("RTSP header block exceeds limit")
            return None
        head = bytes(buf[:end]).decode("utf-8", errors="replace")
        lines = head.split("\r\n")
        start_line = lines[0].strip()
        headers: List[Tuple[str, str]] = []
        for line in lines[1:]:
            if not line:
                continue
            if ":" not in line:
                raise ProtocolError(f"Malformed RTSP header line: {line!r}")
            k, v = line.split(":", 1)
            headers.append((k.strip(), v.strip()))

        length = 0
        for k, v in headers:
            if k.lower() == "content-length":
                try:
                    length = int(v)
                except ValueError as e:
                    raise ProtocolError(f"Bad Content-Length: {v!r}") from e
        total = end + 4 + length
        if len(buf) < total:
            return None
        body = bytes(buf[end + 4 : total])
        del buf[:total]
        return _make_message(start_line, tuple(headers), body)


def _make_message(start_line: str, headers: Tuple[Tuple[str, str], ...], body: bytes) -> Message:
    if start_line.startswith("RTSP/"):
        parts = start_line.split(" ", 2)
        if len(parts) < 2 or not parts[1].isdigit():
            raise ProtocolError(f"Malformed RTSP status line: {start_line!r}")
        reason = parts[2] if len(parts) > 2 else ""
        return RtspResponse(start_line=start_line, headers=headers, body=body, status=int(parts[1]), reason=reason)
    parts = start_line.split(" ")
    if len(parts) != 3 or not parts[2].startswith("RTSP/"):
        raise ProtocolError(f"Malformed RTSP start line: {start_line!r}")
    return RtspRequest(start_line=start_line, headers=headers, body=body, method=parts[0], uri=parts[1])


def split_credentials(url: str) -> Tuple[str, Optional[Credentials]]:
    parts = urlsplit(url)
    if parts.username is None:
        return url, None
    host = parts.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    netloc = f"{host}:{parts.port}" if parts.port else host
    clean = urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))
    return clean, Credentials(username=unquote(parts.username), password=unquote(parts.password or ""))


def host_port(url: str) -> Tuple[str, int]:
    parts = urlsplit(url)
    if not parts.hostname:
        raise ProtocolError(f"No host in stream url: {url}")
    return parts.hostname, int(parts.port or DEFAULT_PORT)


_AUTH_PARAM_RE = re.compile(r'(\w+)\s*=\s*(?:"((?:[^"\\]|\\.)*)"|([^\s,]+))')


def parse_auth_challenge(value: str) -> Tuple[str, Dict[str, str]]:
    scheme, _, rest = value.strip().partition(" ")
    params: Dict[str, str] = {}
    for m in _AUTH_PARAM_RE.finditer(rest):
        params[m.group(1).lower()] = m.group(2) if m.group(2) is not None else m.group(3)
    return scheme.lower(), params


class Authenticator:
    def __init__(self, credentials: Optional[Credentials]) -> None:
        self._creds = credentials
        self._scheme: Optional[str] = None
        self._params: Dict[str, str] = {}
        self._nc = 0

    @property
    def has_credentials(self) -> bool:
        return self._creds is not None

    def challenge(self, values: Sequence[str]) -> None:
        if self._creds is None:
            raise ProtocolError("Camera requires authentication but no credentials are configured")
        parsed = [parse_auth_challenge(v) for v in values if v.strip()]
        digest = [p for s, p in parsed if s == "digest"]
        basic = [p for s, p in parsed if s == "basic"]
        if digest:
            params = digest[0]
            algorithm = params.get("algorithm", "MD5").upper()
            if algorithm != "MD5":
                raise ProtocolError(f"Unsupported digest algorithm: {algorithm}")
            self._scheme = "digest"
            self._params = params
            self._nc = 0
        elif basic:
            self._scheme = "basic"
            self._params = basic[0]
        else:
            raise ProtocolError(f"Unsupported WWW-Authenticate challenge: {list(values)!r}")

    def header(self, method: str, uri: str) -> Optional[str]:
        if self._creds is None or self._scheme is None:
            return None
        if self._scheme == "basic":
            token = base64.b64encode(f"{self._creds.username}:{self._creds.password}".encode("utf-8")).decode("ascii")
            return f"Basic {token}"
        return self._digest(method, uri)

    def _digest(self, method: str, uri: str) -> str:
        assert self._creds is not None
        realm = self._params.get("realm", "")
        nonce = self._params.get("nonce", "")
        ha1 = _md5(f"{self._creds.username}:{realm}:{self._creds.password}")
        ha2 = _md5(f"{method}:{uri}")
        fields = [
            f'username="{self._creds.username}"',
            f'realm="{realm}"',
            f'nonce="{nonce}"',
            f'uri="{uri}"',
        ]
        qops = [q.strip() for q in self._params.get("qop", "").split(",") if q.strip()]
        if "auth" in qops:
            self._nc += 1
            nc = f"{self._nc:08x}"
            cnonce = os.urandom(8).hex()
            response = _md5(f"{ha1}:{nonce}:{nc}:{cnonce}:auth:{ha2}")
            fields += ["qop=auth", f"nc={nc}", f'cnonce="{cnonce}"']
        else:
            response = _md5(f"{ha1}:{nonce}:{ha2}")
        fields.append(f'response="{response}"')
        if "opaque" in self._params:
            fields.append(f'opaque="{self._params["opaque"]}"')
        return "Digest " + ", ".join(fields)


def _md5(s: str) -> str:
    return hashlib.md5(s.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class MediaDescription:
    media: str
    payload_type: int
    encoding_name: str = ""
    clock_rate: int = 0
    control: str = ""
    fmtp: Dict[str, str] = field(default_factory=dict)

    def parameter_sets(self) -> List[bytes]:
        raw = self.fmtp.get("sprop-parameter-sets", "")
        out: List[bytes] = []
        for item in raw.split(","):
            item = item.strip()
            if not item:
                continue
            try:
                out.append(base64.b64decode(item + "=" * (-len(item) % 4)))
            except ValueError:
                logger.debug("Ignoring undecodable sprop-parameter-set: %r", item)
        return out


@dataclass(frozen=True)
class SessionDescription:
    control: str
    media: Tuple[MediaDescription, ...]


def parse_sdp(text: str) -> SessionDescription:
    session_control = ""
    media: List[MediaDescription] = []
    cur: Optional[Dict[str, object]] = None

    def _flush() -> None:
        if cur is not None:
            media.append(
                MediaDescription(
                    media=str(cur["media"]),
                    payload_type=int(cur["pt"]),  # type: ignore[call-overload]
                    encoding_name=str(cur.get("encoding", "")),
                    clock_rate=int(cur.get("clock", 0)),  # type: ignore[call-overload]
                    control=str(cur.get("control", "")),
                    fmtp=dict(cur.get("fmtp", {})),  # type: ignore[call-overload]
                )
            )

    for raw in text.splitlines():
        line = raw.strip()
        if len(line) < 2 or line[1] != "=":
            continue
        kind, value = line[0], line[2:]
        if kind == "m":
            _flush()
            parts = value.split()
            if len(parts) < 4:
                raise ProtocolError(f"Malformed SDP media line: {line!r}")
            try:
                pt = int(parts[3])
            except ValueError:
                pt = -1
            cur = {"media": parts[0], "pt": pt}
            continue
        if kind != "a":
            continue
        attr, _, arg = value.partition(":")
        if attr == "control":
            if cur is None:
                session_control = arg.strip()
            else:
                cur["control"] = arg.strip()
        elif attr == "rtpmap" and cur is not None:
            pt_s, _, enc = arg.partition(" ")
            if pt_s.strip() == str(cur["pt"]):
                name, _, rest = enc.strip().partition("/")
                cur["encoding"] = name
                clock = rest.split("/")[0]
                cur["clock"] = int(clock) if clock.isdigit() else 0
        elif attr == "fmtp" and cur is not None:
            _, _, params = arg.partition(" ")
            fmtp: Dict[str, str] = {}
            for kv in params.split(";"):
                k, sep, v = kv.strip().partition("=")
                if sep:
                    fmtp[k.strip().lower()] = v.strip()
            cur["fmtp"] = fmtp
    _flush()
    return SessionDescription(control=session_control, media=tuple(media))


def select_h264(sdp: SessionDescription) -> MediaDescription:
    for m in sdp.media:
        if m.media == "video" and m.encoding_name.upper() == "H264":
            return m
    raise ProtocolError("no H264 stream")


def resolve_control(base: str, control: str) -> str:
    if not control or control == "*":
        return base
    if control.lower().startswith("rtsp://"):
        return control
    if not base.endswith("/"):
        base = base + "/"
    return base + control.lstrip("/")


def parse_session_header(value: str) -> Tuple[str, Optional[float]]:
    parts = [p.strip() for p in value.split(";")]
    session_id = parts[0]
    timeout: Optional[float] = None
    for p in parts[1:]:
        k, _, v = p.partition("=")
        if k.strip().lower() == "timeout":
            try:
                timeout = float(v)
            except ValueError:
                timeout = None
    if not session_id:
        raise ProtocolError("Empty Session header")
    return session_id, timeout


def parse_transport_header(value: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    # servers may list alternatives; the first one is what was selected
    first = value.split(",")[0]
    for i, part in enumerate(first.split(";")):
        part = part.strip()
        if i == 0:
            out["protocol"] = part
            continue
        k, _, v = part.partition("=")
        out[k.strip().lower()] = v.strip()
    return out


def parse_port_pair(value: str) -> Tuple[int, int]:
    a, _, b = value.partition("-")
    try:
        lo = int(a)
        hi = int(b) if b else lo + 1
    except ValueError as e:
        raise ProtocolError(f"Bad port/channel pair: {value!r}") from e
    return lo, hi
