"""
Traffic aggregator - cumulative per-IP totals and the Prometheus metrics document
"""
from __future__ import annotations
import logging
import threading
from typing import Dict, List, Optional, Tuple

from ip_traffic_monitor.geoip import GeoInfo, GeoIPLookup, UNKNOWN_GEO
from ip_traffic_monitor.monitor import Snapshot, TrafficStats, format_bytes
from ip_traffic_monitor.resolver import ConnectionResolver, ResolvedIdentity

logger = logging.getLogger(__name__)

METRICS_CONTENT_TYPE = "text/plain; version=0.0.4"
DEFAULT_EXPORT_THRESHOLD = 1024 * 1024

TX_METRIC = "ip_traffic_tx_bytes_total"
RX_METRIC = "ip_traffic_rx_bytes_total"


def escape_label(value: str) -> str:
    """Escape a Prometheus label value"""
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _sample_line(metric: str, ip: str, geo: GeoInfo, value: int) -> str:
    labels = ",".join(
        f'{key}="{escape_label(val)}"'
        for key, val in (
            ("remote_ip", ip),
            ("country", geo.country),
            ("province", geo.province),
            ("city", geo.city),
            ("isp", geo.isp),
        )
    )
    return f"{metric}{{{labels}}} {value}\n"


class TrafficAggregator:
    """Owns the cumulative per-IP totals; merged by the sampler, rendered by the exporter"""

    def __init__(
        self,
        resolver: Optional[ConnectionResolver] = None,
        geoip: Optional[GeoIPLookup] = None,
    ) -> None:
        self.lock = threading.Lock()
        self._totals: Dict[str, TrafficStats] = {}
        self.resolver = resolver
        self.geoip = geoip
        self.cycles = 0

    def _resolve(self, ip: str) -> ResolvedIdentity:
        if self.resolver is None:
            return ResolvedIdentity()
        return self.resolver.resolve(ip)

    def geo_info(self, ip: str) -> GeoInfo:
        if self.geoip is None:
            return UNKNOWN_GEO
        return self.geoip.lookup(ip)

    def merge(self, snapshot: Snapshot) -> None:
        """
        Add one sampling interval's deltas into the cumulative totals

        Process attribution happens before taking the lock so a slow /proc
        scan never delays a metrics scrape.
        """
        if not snapshot:
            with self.lock:
                self.cycles += 1
            logger.info("No active network connections")
            return

        # stable sort: ties keep snapshot order
        ordered = sorted(snapshot.items(), key=lambda kv: kv[1].total_bytes, reverse=True)
        identities = {
            ip: self._resolve(ip) for ip, delta in ordered
            if delta.tx_bytes > 0 or delta.rx_bytes > 0
        }

        report: List[Tuple[str, TrafficStats, TrafficStats]] = []
        with self.lock:
            self.cycles += 1
            for ip, delta in ordered:
                total = self._totals.setdefault(ip, TrafficStats())
                total.merge(delta)
                report.append((ip, delta, total.copy()))

        logger.info("Traffic statistics:")
        for ip, delta, total in report:
            identity = identities.get(ip)
            if identity is None:
                continue
            pid = identity.pid if identity.pid is not None else "-"
            pname = identity.process_name or "-"
            logger.info(
                f"  IP: {ip} | TX: {format_bytes(delta.tx_bytes)} | RX: {format_bytes(delta.rx_bytes)}"
                f" | Total TX: {format_bytes(total.tx_bytes)} | Total RX: {format_bytes(total.rx_bytes)}"
                f" | PID: {pid} ({pname})"
            )

    def totals(self) -> Dict[str, TrafficStats]:
        """Copy of the cumulative totals"""
        with self.lock:
            return {ip: stats.copy() for ip, stats in self._totals.items()}

    def render(self, threshold: int = DEFAULT_EXPORT_THRESHOLD) -> str:
        """
        Render the Prometheus text exposition document

        Only IPs whose cumulative byte count is strictly greater than
        `threshold` are exported, tx and rx independently.
        """
        totals = self.totals()
        tx = [(ip, s.tx_bytes) for ip, s in totals.items() if s.tx_bytes > threshold]
        rx = [(ip, s.rx_bytes) for ip, s in totals.items() if s.rx_bytes > threshold]

        out = [
            f"# HELP {TX_METRIC} Total transmitted bytes per IP address\n",
            f"# TYPE {TX_METRIC} counter\n",
        ]
        for ip, value in tx:
            out.append(_sample_line(TX_METRIC, ip, self.geo_info(ip), value))

        out.append(f"\n# HELP {RX_METRIC} Total received bytes per IP address\n")
        out.append(f"# TYPE {RX_METRIC} counter\n")
        for ip, value in rx:
            out.append(_sample_line(RX_METRIC, ip, self.geo_info(ip), value))

        return "".join(out)
