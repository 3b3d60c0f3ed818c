from .uploader import DEFAULT_ENDPOINT, UploadConfig, Uploader

__all__ = [
    "DEFAULT_ENDPOINT",
    "UploadConfig",
    "Uploader",
]
