import threading

from ip_traffic_monitor.aggregator import TrafficAggregator
from ip_traffic_monitor.monitor import TrafficMonitor, TrafficStats
from ip_traffic_monitor.sampler import SamplingLoop


class ScriptedMonitor(TrafficMonitor):
    """Returns prepared results; an Exception instance in the script is raised"""

    def __init__(self, results):
        self.results = list(results)
        self.calls = 0

    def init(self):
        pass

    def start(self):
        self.calls += 1
        result = self.results.pop(0) if self.results else {}
        if isinstance(result, Exception):
            raise result
        return result

    def stop(self):
        pass

    def name(self):
        return "scripted"


def test_fixed_duration_runs_duration_over_interval_cycles():
    monitor = ScriptedMonitor([{"8.8.8.8": TrafficStats(tx_bytes=1)}] * 10)
    aggregator = TrafficAggregator()
    loop = SamplingLoop(monitor, aggregator, duration=10, sample_interval=3)
    assert loop.total_cycles == 3
    loop.run()
    assert monitor.calls == 3
    assert aggregator.totals()["8.8.8.8"].tx_bytes == 3


def test_failed_cycle_does_not_stop_the_loop():
    monitor = ScriptedMonitor([
        {"8.8.8.8": TrafficStats(rx_bytes=10)},
        RuntimeError("iftop crashed"),
        {"8.8.8.8": TrafficStats(rx_bytes=5)},
    ])
    aggregator = TrafficAggregator()
    loop = SamplingLoop(monitor, aggregator, duration=6, sample_interval=2)
    loop.run()
    assert loop.cycles_run == 3
    assert aggregator.cycles == 3
    assert aggregator.totals()["8.8.8.8"].rx_bytes == 15


def test_stop_is_observed_between_cycles():
    entered = threading.Event()
    release = threading.Event()

    class BlockingMonitor(ScriptedMonitor):
        def start(self):
            self.calls += 1
            entered.set()
            release.wait(5)
            return {"1.1.1.1": TrafficStats(tx_bytes=1)}

    monitor = BlockingMonitor([])
    aggregator = TrafficAggregator()
    loop = SamplingLoop(monitor, aggregator, duration=0, sample_interval=1)
    assert loop.total_cycles is None

    loop.start()
    assert entered.wait(5)
    loop.stop()
    release.set()
    loop.join(5)

    assert not loop.is_running()
    # the cycle in flight was completed, no new one was started
    assert monitor.calls == 1
    assert aggregator.totals()["1.1.1.1"].tx_bytes == 1
