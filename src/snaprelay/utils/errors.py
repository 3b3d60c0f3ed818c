from __future__ import annotations


class SnapRelayError(Exception):
    pass


class ConfigError(SnapRelayError, ValueError):
    pass


class StreamConnectionError(SnapRelayError, ConnectionError):
    pass


class ProtocolError(SnapRelayError):
    pass


class DecodeError(SnapRelayError):
    pass


class AuthError(SnapRelayError):
    def __init__(self, message: str, status: int = 0) -> None:
        super().__init__(message)
        self.status = int(status)


class UploadTransientError(SnapRelayError):
    def __init__(self, message: str, status: int = 0) -> None:
        super().__init__(message)
        self.status = int(status)
