"""
Connection resolver - maps a remote IP to the local process talking to it

The kernel TCP tables give remote address -> socket inode; finding the
owning process means walking every /proc/<pid>/fd, so that result is
cached per IP for a long time. Attribution is best-effort: any failure
resolves to "no pid".
"""
from __future__ import annotations
import ipaddress
import logging
import os
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import psutil

from ip_traffic_monitor.cache import TTLCache

logger = logging.getLogger(__name__)

_SOCKET_LINK_RE = re.compile(r"socket:\[(\d+)\]")

DEFAULT_CONN_TABLE_TTL = 5.0
DEFAULT_PID_CACHE_TTL = 3600.0
DEFAULT_NAME_CACHE_TTL = 3600.0


@dataclass
class ResolvedIdentity:
    pid: Optional[int] = None
    process_name: Optional[str] = None


def ip_to_proc_hex(ip: str) -> List[str]:
    """
    Encode an address the way /proc/net/tcp{,6} prints it

    IPv4 is one little-endian 32-bit word; IPv6 is four of them. An IPv4
    address also gets its IPv4-mapped IPv6 form, since dual-stack sockets
    appear in tcp6.
    """
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return []

    def words(packed: bytes) -> str:
        return "".join(packed[i:i + 4][::-1].hex() for i in range(0, len(packed), 4)).upper()

    if addr.version == 4:
        mapped = ipaddress.IPv6Address(b"\x00" * 10 + b"\xff\xff" + addr.packed)
        return [words(addr.packed), words(mapped.packed)]
    return [words(addr.packed)]


def parse_proc_net_tcp(text: str) -> Dict[str, str]:
    """Remote address hex -> socket inode for one /proc/net/tcp* file"""
    table: Dict[str, str] = {}
    for line in text.splitlines()[1:]:
        parts = line.split()
        if len(parts) < 10:
            continue
        remote, inode = parts[2], parts[9]
        if inode == "0" or ":" not in remote:
            continue
        remote_hex = remote.split(":")[0].upper()
        table.setdefault(remote_hex, inode)
    return table


class ConnectionResolver:
    """Resolve remote IP -> PID -> process name with layered TTL caches"""

    def __init__(
        self,
        proc_root: str = "/proc",
        conn_table_ttl: float = DEFAULT_CONN_TABLE_TTL,
        pid_cache_ttl: float = DEFAULT_PID_CACHE_TTL,
        name_cache_ttl: float = DEFAULT_NAME_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Args:
            proc_root: Mount point of procfs
            conn_table_ttl: Seconds before the TCP connection table is re-read
            pid_cache_ttl: Seconds a resolved (or unresolved) IP -> PID is kept
            name_cache_ttl: Seconds a PID -> process name is kept
            clock: Monotonic time source
        """
        self.proc_root = proc_root
        self.conn_table_ttl = conn_table_ttl
        self.clock = clock

        self._conn_lock = threading.Lock()
        self._conn_table: Dict[str, str] = {}
        self._conn_table_built_at: Optional[float] = None

        self._pid_cache = TTLCache(pid_cache_ttl, clock=clock)
        self._name_cache = TTLCache(name_cache_ttl, clock=clock)

    # connection table

    def _read_conn_table(self) -> Dict[str, str]:
        table: Dict[str, str] = {}
        for name in ("tcp", "tcp6"):
            path = os.path.join(self.proc_root, "net", name)
            try:
                with open(path, "r") as f:
                    text = f.read()
            except OSError:
                continue
            for remote_hex, inode in parse_proc_net_tcp(text).items():
                table.setdefault(remote_hex, inode)
        return table

    def connection_table(self) -> Dict[str, str]:
        """Current remote-hex -> inode table, rebuilt once it is older than conn_table_ttl"""
        with self._conn_lock:
            built_at = self._conn_table_built_at
            if built_at is not None and self.clock() - built_at < self.conn_table_ttl:
                return self._conn_table

        table = self._read_conn_table()
        with self._conn_lock:
            self._conn_table = table
            self._conn_table_built_at = self.clock()
        return table

    def _lookup_inode(self, ip: str) -> Optional[str]:
        table = self.connection_table()
        for remote_hex in ip_to_proc_hex(ip):
            inode = table.get(remote_hex)
            if inode:
                return inode
        return None

    # process scan

    def _scan_for_inode(self, inode: str) -> Optional[int]:
        """Walk /proc/<pid>/fd looking for socket:[inode]"""
        try:
            entries = os.listdir(self.proc_root)
        except OSError as e:
            logger.debug(f"Cannot list {self.proc_root}: {e}")
            return None

        for entry in entries:
            if not entry.isdigit():
                continue
            fd_dir = os.path.join(self.proc_root, entry, "fd")
            try:
                fds = os.listdir(fd_dir)
            except OSError:
                # process exited or is not ours to inspect
                continue
            for fd in fds:
                try:
                    target = os.readlink(os.path.join(fd_dir, fd))
                except OSError:
                    continue
                m = _SOCKET_LINK_RE.match(target)
                if m and m.group(1) == inode:
                    return int(entry)
        return None

    def find_pid(self, ip: str) -> Optional[int]:
        hit, pid = self._pid_cache.lookup(ip)
        if hit:
            return pid

        inode = self._lookup_inode(ip)
        pid = self._scan_for_inode(inode) if inode else None
        if pid is None:
            logger.debug(f"No local process found for {ip}")
        self._pid_cache.put(ip, pid)
        return pid

    def process_name(self, pid: int) -> Optional[str]:
        hit, name = self._name_cache.lookup(pid)
        if hit:
            return name
        try:
            name = psutil.Process(pid).name()
        except psutil.Error as e:
            logger.debug(f"Cannot read name of pid {pid}: {e}")
            return None
        self._name_cache.put(pid, name)
        return name

    def resolve(self, ip: str) -> ResolvedIdentity:
        pid = self.find_pid(ip)
        if pid is None:
            return ResolvedIdentity()
        return ResolvedIdentity(pid=pid, process_name=self.process_name(pid))
