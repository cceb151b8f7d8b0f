"""
Sampling loop - drives a traffic monitor cycle by cycle and feeds the aggregator
"""
from __future__ import annotations
import logging
import threading
from typing import Optional

from ip_traffic_monitor.aggregator import TrafficAggregator
from ip_traffic_monitor.monitor import Snapshot, TrafficMonitor

logger = logging.getLogger(__name__)


class SamplingLoop:
    """
    Run monitor.start() once per cycle and merge each snapshot

    Cancellation is cooperative: stop() is only observed between cycles,
    so a cycle is either completed or never started.
    """

    def __init__(
        self,
        monitor: TrafficMonitor,
        aggregator: TrafficAggregator,
        duration: int = 0,
        sample_interval: int = 2,
    ) -> None:
        """
        Args:
            monitor: Initialized capture backend
            aggregator: Receives every snapshot
            duration: Total seconds to monitor, 0 to run until stopped
            sample_interval: Seconds per cycle
        """
        self.monitor = monitor
        self.aggregator = aggregator
        self.duration = duration
        self.sample_interval = sample_interval
        self.cycles_run = 0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def total_cycles(self) -> Optional[int]:
        """Number of cycles to run, None when running forever"""
        if self.duration == 0:
            return None
        return self.duration // self.sample_interval

    def run_cycle(self, label: str) -> Snapshot:
        logger.info(f"[{label}] Collecting traffic data...")
        try:
            snapshot = self.monitor.start()
        except Exception as e:
            # a failed cycle counts as a quiet one
            logger.error(f"[{label}] {self.monitor.name()} monitor failed: {e}")
            snapshot = {}
        self.aggregator.merge(snapshot)
        self.cycles_run += 1
        return snapshot

    def run(self) -> None:
        """Blocking loop, returns when done or stopped"""
        total = self.total_cycles
        cycle = 1
        while not self._stop_event.is_set():
            if total is not None and cycle > total:
                logger.info("Monitoring finished")
                return
            label = f"cycle {cycle}" if total is None else f"{cycle}/{total}"
            self.run_cycle(label)
            cycle += 1
        logger.info("Monitoring stopped")

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name="traffic-sampler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
