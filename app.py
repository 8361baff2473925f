from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import List, Optional

from dds.api import create_app
from dds.cluster_client import KubernetesClusterClient
from dds.config import ControllerSettings, parse_duration
from dds.controller import ResourceMonitor
from dds.watcher import ResourceWatcher

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]], settings: ControllerSettings) -> ControllerSettings:
    """Apply command line overrides on top of environment-derived settings."""
    parser = argparse.ArgumentParser(description="Dynamic device scaler controller")
    parser.add_argument("--scan-interval", default=None, help="time between full scans (e.g. 60s, 1m)")
    parser.add_argument("--device-no-removal", default=None, help="grace period after last use before detach")
    parser.add_argument("--device-no-allocation", default=None, help="timeout before an unbound claim is rescheduled")
    parser.add_argument("--config-namespace", default=settings.config_namespace)
    parser.add_argument("--config-name", default=settings.config_name)
    parser.add_argument("--status-port", type=int, default=settings.status_port)
    parser.add_argument("--no-watch", action="store_true", help="rely on the scan interval only")
    parser.add_argument("--log-level", default=settings.log_level)
    args = parser.parse_args(argv)

    if args.scan_interval is not None:
        settings.scan_interval_s = parse_duration(args.scan_interval)
    if args.device_no_removal is not None:
        settings.device_no_removal_s = parse_duration(args.device_no_removal)
    if args.device_no_allocation is not None:
        settings.device_no_allocation_s = parse_duration(args.device_no_allocation)
    settings.config_namespace = args.config_namespace
    settings.config_name = args.config_name
    settings.status_port = args.status_port
    if args.no_watch:
        settings.watch_enabled = False
    settings.log_level = args.log_level.upper()
    return settings


def main(argv: Optional[List[str]] = None) -> None:
    settings = parse_args(argv, ControllerSettings.from_env())
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cluster = KubernetesClusterClient.from_environment()
    monitor = ResourceMonitor(cluster, settings)

    app = create_app(monitor)
    status_thread = threading.Thread(
        target=app.run,
        kwargs={"host": settings.status_host, "port": settings.status_port, "use_reloader": False},
        name="status-server",
        daemon=True,
    )
    status_thread.start()
    logger.info(f"Status endpoints on {settings.status_host}:{settings.status_port}")

    watcher = None
    if settings.watch_enabled:
        watcher = ResourceWatcher(cluster, on_event=monitor.trigger)
        watcher.start()

    stop = threading.Event()

    def _shutdown(signum, frame) -> None:
        logger.info(f"Received signal {signum}, shutting down")
        stop.set()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    monitor.start()
    stop.wait()

    if watcher is not None:
        watcher.stop()
    monitor.stop()


if __name__ == "__main__":
    main()
