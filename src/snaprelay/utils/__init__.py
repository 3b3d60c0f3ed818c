from .backoff import BackoffConfig, ExponentialBackoff
from .config import load_yaml, resolve_path
from .errors import (
    AuthError,
    ConfigError,
    DecodeError,
    ProtocolError,
    SnapRelayError,
    StreamConnectionError,
    UploadTransientError,
)
from .logging import setup_logging
from .types import CameraConfig, Frame, SessionState, UploadAttempt, UploadOutcome

__all__ = [
    "AuthError",
    "BackoffConfig",
    "CameraConfig",
    "ConfigError",
    "DecodeError",
    "ExponentialBackoff",
    "Frame",
    "ProtocolError",
    "SessionState",
    "SnapRelayError",
    "StreamConnectionError",
    "UploadAttempt",
    "UploadOutcome",
    "UploadTransientError",
    "load_yaml",
    "resolve_path",
    "setup_logging",
]
