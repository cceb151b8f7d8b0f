"""
bpftrace backend - long-lived kernel tracing agent that prints per-IP counters
"""
from __future__ import annotations
import logging
import os
import queue
import subprocess
import tempfile
import threading
import time
from typing import Dict, IO, List, Optional

from ip_traffic_monitor.ip_filter import is_public
from ip_traffic_monitor.monitor import MonitorInitError, Snapshot, TrafficMonitor, TrafficStats

logger = logging.getLogger(__name__)

START_MARKER = "BPFTRACE_MONITOR_START"
UPDATE_MARKER = "STATS_UPDATE"
END_MARKER = "STATS_END"

SECTION_HEADERS = {
    "TX_BYTES:": "tx_bytes",
    "TX_PACKETS:": "tx_packets",
    "RX_BYTES:": "rx_bytes",
    "RX_PACKETS:": "rx_packets",
}

# Extra seconds to wait past one interval before giving up on a snapshot
RECV_GRACE_SECONDS = 5

SCRIPT_TEMPLATE = """
BEGIN {{
    printf("BPFTRACE_MONITOR_START\\n");
}}

tracepoint:net:netif_receive_skb
{{
    $skb = (struct sk_buff *)args->skbaddr;
    $iph = (struct iphdr *)($skb->head + $skb->network_header);
    $saddr = $iph->saddr;
    $len = args->len;

    @rx_bytes[ntop($saddr)] = sum($len);
    @rx_packets[ntop($saddr)] = count();
}}

tracepoint:net:net_dev_start_xmit
{{
    $skb = (struct sk_buff *)args->skbaddr;
    $iph = (struct iphdr *)($skb->head + $skb->network_header);
    $daddr = $iph->daddr;
    $len = args->len;

    @tx_bytes[ntop($daddr)] = sum($len);
    @tx_packets[ntop($daddr)] = count();
}}

interval:s:{interval} {{
    printf("STATS_UPDATE\\n");
    printf("TX_BYTES:\\n");
    print(@tx_bytes);
    printf("TX_PACKETS:\\n");
    print(@tx_packets);
    printf("RX_BYTES:\\n");
    print(@rx_bytes);
    printf("RX_PACKETS:\\n");
    print(@rx_packets);
    printf("STATS_END\\n");

    clear(@tx_bytes);
    clear(@tx_packets);
    clear(@rx_bytes);
    clear(@rx_packets);
}}
"""


def generate_script(sample_interval: int) -> str:
    """Render the built-in tracing script for the given interval"""
    return SCRIPT_TEMPLATE.format(interval=sample_interval)


class BpftraceOutputParser:
    """
    Line-by-line state machine over bpftrace output

    Output arrives as repeating cycles::

        STATS_UPDATE
        TX_BYTES:
        @tx_bytes[93.184.216.34]: 1234
        ...
        STATS_END

    feed() returns a snapshot when a line completes a cycle, None otherwise.
    """

    def __init__(self) -> None:
        self.started = False
        self.section: Optional[str] = None
        self._scratch: Dict[str, TrafficStats] = {}

    def reset(self) -> None:
        self.section = None
        self._scratch = {}

    def feed(self, line: str) -> Optional[Snapshot]:
        line = line.strip()
        if not line:
            return None

        if START_MARKER in line:
            self.started = True
            return None
        if not self.started:
            return None

        if UPDATE_MARKER in line:
            self._scratch = {}
            return None

        if END_MARKER in line:
            snapshot = None
            if self._scratch:
                snapshot = {ip: stats.copy() for ip, stats in self._scratch.items()}
            self.reset()
            return snapshot

        if line in SECTION_HEADERS:
            self.section = SECTION_HEADERS[line]
            return None

        if self.section is not None:
            self._parse_map_line(line)
        return None

    def _parse_map_line(self, line: str) -> None:
        # @map_name[key]: value
        if not line.startswith("@"):
            return
        bracket_start = line.find("[")
        bracket_end = line.find("]:")
        if bracket_start < 0 or bracket_end < bracket_start:
            return

        ip = line[bracket_start + 1:bracket_end]
        if not is_public(ip):
            return

        try:
            value = int(line[bracket_end + 2:].strip())
        except ValueError:
            logger.debug(f"Ignoring unparsable bpftrace value: {line!r}")
            return
        if value < 0:
            return

        stats = self._scratch.setdefault(ip, TrafficStats())
        setattr(stats, self.section, value)


class BpftraceMonitor(TrafficMonitor):
    """Push model: one bpftrace process reports counters every sample interval"""

    def __init__(
        self,
        sample_interval: int,
        script_path: Optional[str] = None,
        warmup_seconds: Optional[float] = None,
        bpftrace_bin: str = "bpftrace",
    ) -> None:
        """
        Args:
            sample_interval: Seconds between two reports from bpftrace
            script_path: Custom bpftrace script used instead of the built-in one
            warmup_seconds: Time to let probes attach after spawning
                            (defaults to sample_interval + 1)
            bpftrace_bin: bpftrace executable
        """
        self.sample_interval = sample_interval
        self.script_path = script_path
        self.warmup_seconds = sample_interval + 1 if warmup_seconds is None else warmup_seconds
        self.bpftrace_bin = bpftrace_bin
        self._process: Optional[subprocess.Popen] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._snapshots: "queue.Queue[Snapshot]" = queue.Queue()
        self._temp_script: Optional[str] = None

    def name(self) -> str:
        return "bpftrace"

    def _load_script(self) -> str:
        if self.script_path:
            try:
                with open(self.script_path, "r", encoding="utf-8") as f:
                    return f.read()
            except OSError as e:
                raise MonitorInitError(f"Cannot read bpftrace script {self.script_path}: {e}") from e
        return generate_script(self.sample_interval)

    def _write_temp_script(self, script: str) -> str:
        fd, path = tempfile.mkstemp(prefix="ip_traffic_monitor_", suffix=".bt")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(script)
        return path

    def _command(self, script_file: str) -> List[str]:
        return ["stdbuf", "-o0", "-e0", self.bpftrace_bin, "-B", "none", script_file]

    def init(self) -> None:
        try:
            result = subprocess.run(
                [self.bpftrace_bin, "--version"],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise MonitorInitError(f"bpftrace is not available: {e}. Make sure bpftrace is installed") from e
        logger.info(f"bpftrace monitor initialized: {result.stdout.strip()}")

        script = self._load_script()
        self._temp_script = self._write_temp_script(script)

        try:
            self._process = subprocess.Popen(
                self._command(self._temp_script),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            self._remove_temp_script()
            raise MonitorInitError(f"Failed to spawn bpftrace: {e}") from e

        self._snapshots = queue.Queue()
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._read_loop,
            args=(self._process.stdout,),
            name="bpftrace-reader",
            daemon=True,
        )
        self._thread.start()

        logger.info(f"Waiting {self.warmup_seconds}s for bpftrace probes to attach...")
        time.sleep(self.warmup_seconds)

    def _read_loop(self, stream: IO[str]) -> None:
        """Reader thread: parse bpftrace stdout and hand completed cycles to start()"""
        parser = BpftraceOutputParser()
        try:
            for line in stream:
                if self._stop_event.is_set():
                    break
                snapshot = parser.feed(line)
                if snapshot is not None:
                    self._snapshots.put(snapshot)
        except (OSError, ValueError) as e:
            # ValueError: the pipe was closed underneath us during stop()
            if not self._stop_event.is_set():
                logger.error(f"Failed to read bpftrace output: {e}")
        logger.info("bpftrace reader loop ended")

    def start(self) -> Snapshot:
        latest: Optional[Snapshot] = None
        while True:
            try:
                latest = self._snapshots.get_nowait()
            except queue.Empty:
                break

        if latest is not None:
            return latest

        timeout = self.sample_interval + RECV_GRACE_SECONDS
        try:
            return self._snapshots.get(timeout=timeout)
        except queue.Empty:
            logger.warning(f"No bpftrace stats received within {timeout}s, returning empty data")
            return {}

    def stop(self) -> None:
        self._stop_event.set()

        process, self._process = self._process, None
        if process is not None:
            try:
                process.terminate()
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
            except OSError as e:
                logger.debug(f"bpftrace process already gone: {e}")

        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)

        if process is not None and process.stdout is not None:
            process.stdout.close()
        self._remove_temp_script()

    def _remove_temp_script(self) -> None:
        path, self._temp_script = self._temp_script, None
        if path:
            try:
                os.remove(path)
            except OSError:
                pass
