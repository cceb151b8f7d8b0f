"""
Main entry point - IP traffic monitor with a Prometheus exporter
"""
from __future__ import annotations
import argparse
import logging
import os
import signal
import sys
import threading
from typing import List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
import uvicorn

from ip_traffic_monitor.aggregator import METRICS_CONTENT_TYPE, TrafficAggregator
from ip_traffic_monitor.bpftrace_monitor import BpftraceMonitor
from ip_traffic_monitor.geoip import GeoIPLookup
from ip_traffic_monitor.iftop_monitor import IftopMonitor
from ip_traffic_monitor.models import Backend, GeoInfoModel, HealthStatus, IpTraffic, MonitorConfig, TrafficList
from ip_traffic_monitor.monitor import MonitorInitError, TrafficMonitor
from ip_traffic_monitor.resolver import ConnectionResolver
from ip_traffic_monitor.sampler import SamplingLoop

logger = logging.getLogger(__name__)


def create_app(aggregator: TrafficAggregator, threshold: int, backend_name: str) -> FastAPI:
    """Build the exporter app around an existing aggregator"""
    app = FastAPI(
        title="IP Traffic Monitor",
        description="Per remote IP traffic totals in Prometheus format",
        version="1.0.0",
    )
    app.state.aggregator = aggregator
    app.state.threshold = threshold
    app.state.backend_name = backend_name

    @app.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> PlainTextResponse:
        """Prometheus scrape endpoint"""
        body = request.app.state.aggregator.render(request.app.state.threshold)
        return PlainTextResponse(body, media_type=METRICS_CONTENT_TYPE)

    @app.get("/stats", response_model=TrafficList)
    def stats(request: Request, limit: int = Query(100, ge=1)) -> TrafficList:
        """Cumulative totals per IP, largest first"""
        agg: TrafficAggregator = request.app.state.aggregator
        totals = sorted(agg.totals().items(), key=lambda kv: kv[1].total_bytes, reverse=True)
        items = []
        for ip, s in totals[:limit]:
            geo = GeoInfoModel(**agg.geo_info(ip).to_dict())
            items.append(IpTraffic(ip=ip, total_bytes=s.total_bytes, geo=geo, **s.to_dict()))
        return TrafficList(items=items, total=len(totals))

    @app.get("/health", response_model=HealthStatus)
    def health(request: Request) -> HealthStatus:
        agg: TrafficAggregator = request.app.state.aggregator
        return HealthStatus(
            backend=request.app.state.backend_name,
            cycles=agg.cycles,
            tracked_ips=len(agg.totals()),
        )

    return app


def build_monitor(config: MonitorConfig) -> TrafficMonitor:
    if config.backend == Backend.BPFTRACE:
        return BpftraceMonitor(config.sample_interval, config.bpftrace_script)
    return IftopMonitor(config.iface, config.sample_interval)


def check_root_permission() -> None:
    if os.geteuid() != 0:
        raise MonitorInitError("This program needs root privileges, run it with sudo")


def parse_args(argv: Optional[List[str]] = None) -> MonitorConfig:
    parser = argparse.ArgumentParser(description="Per remote IP traffic monitor (iftop or bpftrace backend)")
    parser.add_argument("-b", "--backend", default="iftop", choices=[b.value for b in Backend], help="Capture backend")
    parser.add_argument("-i", "--iface", default=os.environ.get("NET_IFACE"), help="Network interface, required for iftop (e.g., eth0, ens33)")
    parser.add_argument("-d", "--duration", type=int, default=30, help="Seconds to monitor, 0 runs forever")
    parser.add_argument("-s", "--sample-interval", dest="sample_interval", type=int, default=2, help="Seconds per sampling cycle")
    parser.add_argument("-p", "--prometheus-port", dest="prometheus_port", type=int, default=None, help="Serve /metrics on this port")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("-g", "--geoip-db", dest="geoip_db", default=os.environ.get("GEOIP_DB_PATH"), help="GeoIP2 City database, e.g. GeoLite2-City.mmdb")
    parser.add_argument("-t", "--prometheus-export-threshold", dest="prometheus_export_threshold", type=int, default=1024 * 1024, help="Bytes; IPs at or below this total are not exported")
    parser.add_argument("--bpftrace-script", dest="bpftrace_script", default=None, help="Custom bpftrace script (bpftrace backend only)")
    parser.add_argument("--log-level", dest="log_level", default="INFO")
    args = parser.parse_args(argv)

    try:
        return MonitorConfig(**vars(args))
    except ValidationError as e:
        parser.error(str(e))


def start_exporter(app: FastAPI, host: str, port: int) -> threading.Thread:
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="info"))
    thread = threading.Thread(target=server.run, name="prometheus-exporter", daemon=True)
    thread.start()
    logger.info(f"Prometheus exporter listening on http://{host}:{port}/metrics")
    return thread


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    config = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    monitor = build_monitor(config)
    logger.info(f"IP traffic monitor (backend: {monitor.name()})")
    if config.duration == 0:
        logger.info(f"Running until interrupted, sample interval {config.sample_interval}s")
    else:
        logger.info(f"Monitoring for {config.duration}s, sample interval {config.sample_interval}s")

    try:
        check_root_permission()
        monitor.init()
    except MonitorInitError as e:
        logger.error(str(e))
        return 1

    try:
        geoip = GeoIPLookup.open(config.geoip_db)
    except MonitorInitError as e:
        logger.warning(f"{e}; continuing without geo data")
        geoip = GeoIPLookup(None)

    aggregator = TrafficAggregator(resolver=ConnectionResolver(), geoip=geoip)
    sampler = SamplingLoop(monitor, aggregator, config.duration, config.sample_interval)

    def handle_signal(signum, frame):
        logger.info("Received exit signal, shutting down...")
        sampler.stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    if config.prometheus_port:
        app = create_app(aggregator, config.prometheus_export_threshold, monitor.name())
        start_exporter(app, config.host, config.prometheus_port)

    try:
        sampler.run()
    finally:
        monitor.stop()
        geoip.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
