from __future__ import annotations

import logging
from typing import Optional, Sequence

# FFmpeg reports every corrupt slice through PyAV; those drops are already
# counted by the extractor
NOISY_LOGGERS = ("libav",)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    quiet: Sequence[str] = NOISY_LOGGERS,
) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    root_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s %(message)s",
        handlers=handlers,
    )
    for name in quiet:
        logging.getLogger(name).setLevel(root_level if root_level <= logging.DEBUG else max(root_level, logging.WARNING))
