from __future__ import annotations

import logging
import random
import selectors
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from snaprelay.io.rtp import AccessUnit, H264Depacketizer, parse_rtp
from snaprelay.io.rtsp import (
    Authenticator,
    Credentials,
    InterleavedFrame,
    MediaDescription,
    MessageReader,
    RtspRequest,
    RtspResponse,
    build_request,
    host_port,
    parse_port_pair,
    parse_sdp,
    parse_session_header,
    parse_transport_header,
    resolve_control,
    select_h264,
    split_credentials,
)
from snaprelay.utils.backoff import BackoffConfig, ExponentialBackoff
from snaprelay.utils.errors import DecodeError, ProtocolError, StreamConnectionError
from snaprelay.utils.types import CameraConfig, SessionState


logger = logging.getLogger("snaprelay.io.session")

MediaCallback = Callable[[AccessUnit], None]
StateCallback = Callable[[SessionState], None]


@dataclass(frozen=True)
class SessionConfig:
    connect_timeout_s: float = 10.0
    liveness_s: float = 30.0
    read_poll_s: float = 0.5
    keepalive_s: Optional[float] = None
    user_agent: str = "snaprelay"
    backoff: BackoffConfig = field(default_factory=lambda: BackoffConfig(base_s=1.0, max_s=60.0))

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "SessionConfig":
        keepalive = d.get("keepalive_s")
        return SessionConfig(
            connect_timeout_s=float(d.get("connect_timeout_s", 10.0)),
            liveness_s=float(d.get("liveness_s", 30.0)),
            read_poll_s=float(d.get("read_poll_s", 0.5)),
            keepalive_s=float(keepalive) if keepalive is not None else None,
            user_agent=str(d.get("user_agent", "snaprelay")),
            backoff=BackoffConfig.from_dict(dict(d.get("backoff", {}) or {}), BackoffConfig(base_s=1.0, max_s=60.0)),
        )


@dataclass
class SessionStats:
    connect_attempts: int = 0
    failures: int = 0
    bytes_received: int = 0
    rtp_packets: int = 0
    access_units: int = 0


class _Stopped(Exception):
    pass


@dataclass
class TcpInterleavedTransport:
    rtp_channel: int = 0
    rtcp_channel: int = 1

    kind = "tcp"

    def transport_header(self) -> str:
        return f"RTP/AVP/TCP;unicast;interleaved={self.rtp_channel}-{self.rtcp_channel}"

    def accept_reply(self, params: Dict[str, str], server_host: str) -> None:
        if "interleaved" in params:
            self.rtp_channel, self.rtcp_channel = parse_port_pair(params["interleaved"])

    def register(self, sel: selectors.BaseSelector) -> None:
        return None

    def close(self) -> None:
        return None


@dataclass
class UdpTransport:
    bind_host: str = "0.0.0.0"
    rtp_sock: Optional[socket.socket] = None
    rtcp_sock: Optional[socket.socket] = None

    kind = "udp"

    def open(self) -> None:
        # RTP wants an even port with RTCP on the next odd one
        for _ in range(16):
            rtp = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            rtp.bind((self.bind_host, 0))
            port = rtp.getsockname()[1]
            if port % 2:
                rtp.close()
                continue
            rtcp = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            try:
                rtcp.bind((self.bind_host, port + 1))
            except OSError:
                rtp.close()
                rtcp.close()
                continue
            rtp.setblocking(False)
            rtcp.setblocking(False)
            self.rtp_sock, self.rtcp_sock = rtp, rtcp
            return
        raise StreamConnectionError("Unable to allocate an RTP/RTCP UDP port pair")

    @property
    def client_ports(self) -> Tuple[int, int]:
        if self.rtp_sock is None:
            self.open()
        assert self.rtp_sock is not None
        port = int(self.rtp_sock.getsockname()[1])
        return port, port + 1

    def transport_header(self) -> str:
        lo, hi = self.client_ports
        return f"RTP/AVP;unicast;client_port={lo}-{hi}"

    def accept_reply(self, params: Dict[str, str], server_host: str) -> None:
        if "interleaved" in params:
            raise ProtocolError("Server answered a UDP SETUP with an interleaved transport")
        if "server_port" in params and self.rtp_sock is not None:
            lo, _ = parse_port_pair(params["server_port"])
            source = params.get("source", server_host)
            self.rtp_sock.connect((source, lo))

    def register(self, sel: selectors.BaseSelector) -> None:
        if self.rtp_sock is not None:
            sel.register(self.rtp_sock, selectors.EVENT_READ, "rtp")
        if self.rtcp_sock is not None:
            sel.register(self.rtcp_sock, selectors.EVENT_READ, "rtcp")

    def close(self) -> None:
        for s in (self.rtp_sock, self.rtcp_sock):
            if s is not None:
                s.close()
        self.rtp_sock = None
        self.rtcp_sock = None


Transport = Union[TcpInterleavedTransport, UdpTransport]


def make_transport(kind: str) -> Transport:
    if kind == "tcp":
        return TcpInterleavedTransport()
    if kind == "udp":
        return UdpTransport()
    raise ValueError(f"Unknown transport: {kind}")


class Session:
    """One RTSP connection to one camera, kept alive on a worker thread.

    The worker cycles DISCONNECTED -> CONNECTING -> STREAMING and, on any
    connection or protocol failure, through BACKOFF with an exponential delay
    before reconnecting. Decoded media never leaves this class except through
    `on_media`; the socket is only ever touched by the worker thread.
    """

    def __init__(
        self,
        camera: CameraConfig,
        cfg: SessionConfig,
        on_media: Optional[MediaCallback] = None,
        on_state_change: Optional[StateCallback] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._camera = camera
        self._cfg = cfg
        self._on_media = on_media
        self._on_state_change = on_state_change
        self._backoff = ExponentialBackoff(cfg.backoff, rng=rng)
        self._url, url_creds = split_credentials(camera.url)
        if camera.username is not None:
            self._creds: Optional[Credentials] = Credentials(username=camera.username, password=camera.password or "")
        else:
            self._creds = url_creds
        self._state = SessionState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.stats = SessionStats()
        self.last_delays: List[float] = []

        self._sock: Optional[socket.socket] = None
        self._transport: Optional[Transport] = None
        self._reader = MessageReader()
        self._auth = Authenticator(self._creds)
        self._cseq = 0
        self._session_id: Optional[str] = None
        self._session_timeout_s: Optional[float] = None
        self._depacketizer: Optional[H264Depacketizer] = None
        self._media: Optional[MediaDescription] = None
        self._supports_get_parameter = False
        self._last_media_t = 0.0

    @property
    def camera_id(self) -> str:
        return self._camera.camera_id

    @property
    def state(self) -> SessionState:
        with self._state_lock:
            return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._backoff.failures

    def start(self) -> None:
        with self._state_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._run, name=f"session-{self.camera_id}", daemon=True)
            self._thread.start()

    def stop(self, timeout_s: Optional[float] = None) -> None:
        self._stop.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout=timeout_s)
            if t.is_alive():
                logger.warning("Session thread did not stop in time: camera=%s", self.camera_id)
        self._set_state(SessionState.DISCONNECTED)

    def wait_stopped(self, timeout_s: Optional[float] = None) -> bool:
        t = self._thread
        if t is None:
            return True
        t.join(timeout=timeout_s)
        return not t.is_alive()

    def _set_state(self, state: SessionState) -> None:
        with self._state_lock:
            if self._state == state:
                return
            prev, self._state = self._state, state
        logger.debug("Session state camera=%s %s -> %s", self.camera_id, prev.value, state.value)
        if self._on_state_change is not None:
            self._on_state_change(state)

    def _run(self) -> None:
        while not self._stop.is_set():
            self._set_state(SessionState.CONNECTING)
            self.stats.connect_attempts += 1
            try:
                self._connect_and_stream()
            except _Stopped:
                break
            except (StreamConnectionError, ProtocolError, OSError) as e:
                self.stats.failures += 1
                logger.warning("Stream failure camera=%s url=%s: %s", self.camera_id, self._url, e)
            except Exception:
                self.stats.failures += 1
                logger.exception("Unexpected stream error camera=%s url=%s", self.camera_id, self._url)
            finally:
                self._teardown()

            if self._stop.is_set():
                break
            self._set_state(SessionState.DISCONNECTED)
            delay = self._backoff.next_delay_s()
            self.last_delays.append(delay)
            del self.last_delays[:-32]
            self._set_state(SessionState.BACKOFF)
            logger.info(
                "Reconnecting camera=%s in %.2fs (failure %d)", self.camera_id, delay, self._backoff.failures
            )
            if self._stop.wait(delay):
                break
        self._set_state(SessionState.DISCONNECTED)

    def _connect_and_stream(self) -> None:
        host, port = host_port(self._url)
        logger.debug("Connecting camera=%s to %s:%d", self.camera_id, host, port)
        try:
            sock = socket.create_connection((host, port), timeout=self._cfg.connect_timeout_s)
        except OSError as e:
            raise StreamConnectionError(f"connect to {host}:{port} failed: {e}") from e
        sock.settimeout(self._cfg.read_poll_s)
        self._sock = sock
        self._reader = MessageReader()
        self._auth = Authenticator(self._creds)
        self._session_id = None
        self._session_timeout_s = None
        self._transport = make_transport(self._camera.transport)

        self._handshake(host)

        self._set_state(SessionState.STREAMING)
        self._backoff.reset()
        logger.info("Streaming camera=%s transport=%s", self.camera_id, self._transport.kind)
        self._stream_loop()

    def _handshake(self, server_host: str) -> None:
        assert self._transport is not None
        options = self._request("OPTIONS", self._url)
        public = (options.header("Public") or "").upper()
        self._supports_get_parameter = "GET_PARAMETER" in public

        describe = self._request("DESCRIBE", self._url, [("Accept", "application/sdp")])
        sdp = parse_sdp(describe.body.decode("utf-8", errors="replace"))
        media = select_h264(sdp)
        self._media = media
        base = describe.header("Content-Base") or describe.header("Content-Location") or self._url
        session_url = resolve_control(base, sdp.control) if sdp.control else base
        track_url = resolve_control(session_url, media.control)
        logger.debug("camera=%s H264 track pt=%d control=%s", self.camera_id, media.payload_type, track_url)

        setup = self._request("SETUP", track_url, [("Transport", self._transport.transport_header())])
        session_hdr = setup.header("Session")
        if session_hdr is None:
            raise ProtocolError("SETUP reply without Session header")
        self._session_id, self._session_timeout_s = parse_session_header(session_hdr)
        transport_hdr = setup.header("Transport")
        if transport_hdr is None:
            raise ProtocolError("SETUP reply without Transport header")
        self._transport.accept_reply(parse_transport_header(transport_hdr), server_host)

        self._depacketizer = H264Depacketizer(media.parameter_sets())
        self._last_media_t = time.monotonic()
        self._request("PLAY", session_url, [("Range", "npt=0.000-")])

    def _stream_loop(self) -> None:
        assert self._sock is not None and self._transport is not None
        sel = selectors.DefaultSelector()
        try:
            sel.register(self._sock, selectors.EVENT_READ, "rtsp")
            self._transport.register(sel)
            self._last_media_t = time.monotonic()
            next_keepalive = time.monotonic() + self._keepalive_interval_s()
            while not self._stop.is_set():
                for key, _ in sel.select(timeout=self._cfg.read_poll_s):
                    if key.data == "rtsp":
                        self._recv_rtsp()
                        self._drain_reader()
                    elif key.data == "rtp":
                        self._recv_udp(key.fileobj, media=True)  # type: ignore[arg-type]
                    else:
                        self._recv_udp(key.fileobj, media=False)  # type: ignore[arg-type]

                now = time.monotonic()
                if now - self._last_media_t > self._cfg.liveness_s:
                    raise StreamConnectionError(f"no media data for {self._cfg.liveness_s:.1f}s")
                if now >= next_keepalive:
                    self._send_keepalive()
                    next_keepalive = now + self._keepalive_interval_s()
        finally:
            sel.close()

    def _keepalive_interval_s(self) -> float:
        if self._cfg.keepalive_s is not None:
            return max(1.0, float(self._cfg.keepalive_s))
        timeout = self._session_timeout_s or 60.0
        return max(1.0, timeout / 2.0)

    def _send_keepalive(self) -> None:
        method = "GET_PARAMETER" if self._supports_get_parameter else "OPTIONS"
        # replies are consumed asynchronously by the stream loop
        self._send(method, self._url, [])

    def _recv_rtsp(self) -> None:
        assert self._sock is not None
        try:
            data = self._sock.recv(65536)
        except socket.timeout:
            return
        if not data:
            raise StreamConnectionError("connection closed by peer")
        self.stats.bytes_received += len(data)
        self._reader.feed(data)

    def _recv_udp(self, sock: socket.socket, media: bool) -> None:
        try:
            data = sock.recv(65536)
        except (BlockingIOError, InterruptedError):
            return
        except ConnectionRefusedError:
            # ICMP port unreachable from a connected UDP socket
            return
        self.stats.bytes_received += len(data)
        if media:
            self._handle_rtp(data)

    def _drain_reader(self) -> None:
        while True:
            msg = self._reader.next_message()
            if msg is None:
                return
            self._dispatch(msg)

    def _dispatch(self, msg: Union[RtspResponse, RtspRequest, InterleavedFrame]) -> None:
        if isinstance(msg, InterleavedFrame):
            transport = self._transport
            if isinstance(transport, TcpInterleavedTransport) and msg.channel == transport.rtp_channel:
                self._handle_rtp(msg.payload)
            return
        if isinstance(msg, RtspRequest):
            logger.debug("Ignoring server request camera=%s method=%s", self.camera_id, msg.method)
            return
        if not msg.ok:
            logger.debug("Keepalive reply camera=%s status=%d", self.camera_id, msg.status)

    def _handle_rtp(self, data: bytes) -> None:
        self._last_media_t = time.monotonic()
        if self._depacketizer is None or self._media is None:
            return
        try:
            pkt = parse_rtp(data)
        except DecodeError as e:
            logger.debug("Dropping RTP packet camera=%s: %s", self.camera_id, e)
            return
        if pkt.payload_type != self._media.payload_type:
            return
        self.stats.rtp_packets += 1
        for au in self._depacketizer.push(pkt):
            self.stats.access_units += 1
            if self._on_media is not None:
                self._on_media(au)

    def _send(self, method: str, url: str, headers: List[Tuple[str, str]]) -> int:
        if self._sock is None:
            raise StreamConnectionError("not connected")
        self._cseq += 1
        hdrs = [("User-Agent", self._cfg.user_agent)]
        if self._session_id is not None:
            hdrs.append(("Session", self._session_id))
        auth = self._auth.header(method, url)
        if auth is not None:
            hdrs.append(("Authorization", auth))
        hdrs.extend(headers)
        try:
            self._sock.sendall(build_request(method, url, self._cseq, hdrs))
        except OSError as e:
            raise StreamConnectionError(f"{method} send failed: {e}") from e
        return self._cseq

    def _request(self, method: str, url: str, headers: Optional[List[Tuple[str, str]]] = None) -> RtspResponse:
        headers = list(headers or [])
        retried_auth = False
        while True:
            cseq = self._send(method, url, headers)
            resp = self._await_response(cseq, method)
            if resp.status == 401 and not retried_auth and self._auth.has_credentials:
                self._auth.challenge(resp.header_all("WWW-Authenticate"))
                retried_auth = True
                continue
            if resp.status == 401:
                raise ProtocolError(f"{method} rejected: camera authentication failed")
            if not resp.ok:
                raise ProtocolError(f"{method} failed: {resp.status} {resp.reason}")
            return resp

    def _await_response(self, cseq: int, method: str) -> RtspResponse:
        assert self._sock is not None
        deadline = time.monotonic() + self._cfg.connect_timeout_s
        while True:
            msg = self._reader.next_message()
            if msg is not None:
                if isinstance(msg, RtspResponse):
                    if msg.cseq == cseq:
                        return msg
                    if msg.cseq is None:
                        raise ProtocolError(f"{method} reply without CSeq")
                    logger.debug("Skipping stale reply camera=%s cseq=%s", self.camera_id, msg.cseq)
                else:
                    self._dispatch(msg)
                continue
            if self._stop.is_set():
                raise _Stopped()
            if time.monotonic() > deadline:
                raise StreamConnectionError(f"timed out waiting for {method} reply")
            self._recv_rtsp()

    def _teardown(self) -> None:
        sock = self._sock
        if sock is not None and self._session_id is not None:
            try:
                sock.settimeout(1.0)
                self._send("TEARDOWN", self._url, [])
            except (StreamConnectionError, OSError) as e:
                logger.debug("TEARDOWN failed camera=%s: %s", self.camera_id, e)
        if sock is not None:
            try:
                sock.close()
            except OSError:
                pass
        if self._transport is not None:
            self._transport.close()
        self._sock = None
        self._transport = None
        self._session_id = None
        self._depacketizer = None
        self._media = None
