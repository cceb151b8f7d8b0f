"""
iftop backend - one synchronous iftop run per sampling interval
"""
from __future__ import annotations
import logging
import socket
import subprocess
from typing import List, Optional

import psutil

from ip_traffic_monitor.ip_filter import is_valid_ip
from ip_traffic_monitor.monitor import MonitorInitError, Snapshot, TrafficMonitor, TrafficStats

logger = logging.getLogger(__name__)

OUTBOUND_MARKER = "=>"
INBOUND_MARKER = "<="

# suffix -> multiplier to bytes; checked in order, longest suffixes first
_RATE_UNITS = (
    ("Kb", 1024.0 / 8.0),
    ("Mb", 1024.0 ** 2 / 8.0),
    ("Gb", 1024.0 ** 3 / 8.0),
    ("KB", 1024.0),
    ("MB", 1024.0 ** 2),
    ("GB", 1024.0 ** 3),
    ("b", 1.0 / 8.0),
    ("B", 1.0),
)


def parse_rate_to_bytes_per_sec(rate_str: str) -> Optional[float]:
    """
    Convert an iftop rate such as "500Kb" or "10B" to bytes per second

    Returns:
        Bytes per second, or None when the number part is not numeric
    """
    rate_str = rate_str.strip()
    if not rate_str or rate_str == "0":
        return 0.0

    number, multiplier = rate_str, 1.0 / 8.0  # bare numbers are bits
    for suffix, unit in _RATE_UNITS:
        if rate_str.endswith(suffix):
            number, multiplier = rate_str[:-len(suffix)], unit
            break

    try:
        return float(number) * multiplier
    except ValueError:
        return None


def parse_iftop_output(output: str, local_ip: str, sample_interval: int) -> Snapshot:
    """
    Parse `iftop -t` text output into per-remote-IP byte counts

    Each connection is printed as two lines, outbound first::

        1 host.local       =>     500Kb     400Kb     300Kb     1.2MB
          93.184.216.34    <=     100B      120B      110B      5.0KB

    The first rate column (last 2 seconds) is used and scaled by the
    sample interval. iftop has no packet counts.
    """
    stats: Snapshot = {}
    if not local_ip:
        return stats

    lines = output.splitlines()
    for i, raw in enumerate(lines):
        line = raw.strip()
        if OUTBOUND_MARKER not in line or local_ip not in line:
            continue

        parts = line.split(OUTBOUND_MARKER)
        if len(parts) != 2:
            continue
        rate_tokens = parts[1].split()
        if len(rate_tokens) < 4:
            continue
        tx_rate = parse_rate_to_bytes_per_sec(rate_tokens[0])
        if tx_rate is None or i + 1 >= len(lines):
            continue

        next_line = lines[i + 1].strip()
        if INBOUND_MARKER not in next_line:
            continue
        rx_parts = next_line.split(INBOUND_MARKER)
        if len(rx_parts) != 2:
            continue

        ip_tokens = rx_parts[0].split()
        if not ip_tokens or not is_valid_ip(ip_tokens[-1]):
            continue
        remote_ip = ip_tokens[-1]

        rx_tokens = rx_parts[1].split()
        rx_rate = parse_rate_to_bytes_per_sec(rx_tokens[0]) if rx_tokens else 0.0
        if rx_rate is None:
            rx_rate = 0.0

        stats[remote_ip] = TrafficStats(
            tx_bytes=int(tx_rate * sample_interval),
            rx_bytes=int(rx_rate * sample_interval),
        )

    return stats


def get_interface_ip(iface_name: str) -> Optional[str]:
    """First IPv4 address of an interface that is not loopback"""
    for addr in psutil.net_if_addrs().get(iface_name, []):
        if addr.family == socket.AF_INET and not addr.address.startswith("127."):
            return addr.address
    return None


class IftopMonitor(TrafficMonitor):
    """Pull model: every start() runs iftop for exactly one sample interval"""

    def __init__(self, interface: str, sample_interval: int, iftop_bin: str = "iftop") -> None:
        self.interface = interface
        self.sample_interval = sample_interval
        self.iftop_bin = iftop_bin
        self.local_ip: Optional[str] = None

    def name(self) -> str:
        return "iftop"

    def init(self) -> None:
        self.local_ip = get_interface_ip(self.interface)
        if not self.local_ip:
            raise MonitorInitError(f"Cannot determine an IP address for interface {self.interface}")
        logger.info(f"iftop monitor initialized, local IP: {self.local_ip}")

    def _command(self) -> List[str]:
        return [
            self.iftop_bin,
            "-i", self.interface,
            "-t",
            "-s", str(self.sample_interval),
            "-n",
            "-N",
        ]

    def start(self) -> Snapshot:
        try:
            result = subprocess.run(
                self._command(),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                check=False,
            )
        except OSError as e:
            logger.error(f"Failed to run iftop on {self.interface}: {e}")
            return {}

        if result.returncode != 0:
            logger.warning(f"iftop exited with status {result.returncode}: {result.stderr.strip()}")

        return parse_iftop_output(result.stdout, self.local_ip or "", self.sample_interval)

    def stop(self) -> None:
        # iftop already exited inside start()
        pass
