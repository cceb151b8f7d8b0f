"""
Traffic monitor interface - shared stats type and backend contract
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict


class MonitorError(Exception):
    """Base error for traffic monitors"""


class MonitorInitError(MonitorError):
    """A component could not be initialized (tool missing, no address, bad database...)"""


@dataclass
class TrafficStats:
    """Byte and packet counters for one remote IP"""
    tx_bytes: int = 0
    rx_bytes: int = 0
    tx_packets: int = 0
    rx_packets: int = 0

    @property
    def total_bytes(self) -> int:
        return self.tx_bytes + self.rx_bytes

    def merge(self, other: TrafficStats) -> None:
        """Add another set of counters into this one, field by field"""
        self.tx_bytes += other.tx_bytes
        self.rx_bytes += other.rx_bytes
        self.tx_packets += other.tx_packets
        self.rx_packets += other.rx_packets

    def __add__(self, other: TrafficStats) -> TrafficStats:
        result = TrafficStats(self.tx_bytes, self.rx_bytes, self.tx_packets, self.rx_packets)
        result.merge(other)
        return result

    def copy(self) -> TrafficStats:
        return TrafficStats(self.tx_bytes, self.rx_bytes, self.tx_packets, self.rx_packets)

    def to_dict(self) -> dict:
        """Convert to dictionary"""
        return {
            "tx_bytes": self.tx_bytes,
            "rx_bytes": self.rx_bytes,
            "tx_packets": self.tx_packets,
            "rx_packets": self.rx_packets,
        }


# remote IP -> counters for one sampling interval
Snapshot = Dict[str, TrafficStats]


class TrafficMonitor(ABC):
    """Capture backend: turns an external tool's output into per-IP snapshots"""

    @abstractmethod
    def init(self) -> None:
        """Prepare the backend. Raises MonitorInitError when it cannot run."""

    @abstractmethod
    def start(self) -> Snapshot:
        """Block for one sampling interval and return the traffic seen in it"""

    @abstractmethod
    def stop(self) -> None:
        """Release the backend's resources. Safe to call more than once."""

    @abstractmethod
    def name(self) -> str:
        ...


def format_bytes(num_bytes: int) -> str:
    """Human-readable byte count (1024 based)"""
    value = float(num_bytes)
    if value >= 1024 ** 3:
        return f"{value / 1024 ** 3:.2f} GB"
    if value >= 1024 ** 2:
        return f"{value / 1024 ** 2:.2f} MB"
    if value >= 1024:
        return f"{value / 1024:.2f} KB"
    return f"{value:.0f} B"
