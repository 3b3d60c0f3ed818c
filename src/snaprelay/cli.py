from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
import time
from typing import List, Optional

from snaprelay.pipeline.supervisor import RelayConfig, Supervisor
from snaprelay.utils.config import resolve_path
from snaprelay.utils.errors import ConfigError
from snaprelay.utils.logging import setup_logging


logger = logging.getLogger("snaprelay.cli")


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Relay periodic RTSP camera snapshots to a remote endpoint")
    ap.add_argument("config", nargs="?", default="config.yaml", help="Relay YAML config")
    ap.add_argument("--log-level", default="INFO")
    ap.add_argument("--log-file", default=None)
    ap.add_argument("--status-interval", type=float, default=300.0, help="Seconds between status log lines (0 disables)")
    args = ap.parse_args(argv)

    setup_logging(level=args.log_level, log_file=args.log_file)
    config_path = resolve_path(args.config)
    logger.info("Loading config from %s", config_path)
    try:
        cfg = RelayConfig.load(config_path)
    except ConfigError as e:
        logger.error("Error reading config: %s", e)
        return 2

    supervisor = Supervisor(cfg)
    shutdown = threading.Event()
    reload_requested = threading.Event()

    def _on_stop(signum, _frame) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown.set()

    def _on_reload(signum, _frame) -> None:
        reload_requested.set()

    signal.signal(signal.SIGINT, _on_stop)
    signal.signal(signal.SIGTERM, _on_stop)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, _on_reload)

    supervisor.start()
    status_s = float(args.status_interval)
    next_status = time.monotonic() + status_s
    try:
        while not shutdown.wait(timeout=1.0):
            if reload_requested.is_set():
                reload_requested.clear()
                _reload(supervisor, config_path)
            if status_s > 0 and time.monotonic() >= next_status:
                next_status = time.monotonic() + status_s
                for st in supervisor.status():
                    logger.info("status %s", st)
    finally:
        supervisor.stop()
    return 0


def _reload(supervisor: Supervisor, config_path: str) -> None:
    logger.info("Reloading config from %s", config_path)
    try:
        cfg = RelayConfig.load(config_path)
    except ConfigError as e:
        logger.error("Config reload rejected, keeping current pipelines: %s", e)
        return
    supervisor.reload(cfg)


if __name__ == "__main__":
    sys.exit(main())
