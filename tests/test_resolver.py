import os

import psutil
import pytest

from ip_traffic_monitor import resolver as resolver_module
from ip_traffic_monitor.cache import TTLCache
from ip_traffic_monitor.resolver import ConnectionResolver, ResolvedIdentity, ip_to_proc_hex, parse_proc_net_tcp

TCP_HEADER = ("  sl  local_address rem_address   st tx_queue rx_queue tr tm->when retrnsmt"
              "   uid  timeout inode\n")


def tcp_line(slot, local, remote, inode):
    return (f"   {slot}: {local} {remote} 01 00000000:00000000 00:00000000 00000000"
            f"  1000        0 {inode} 1 0000000000000000 20 4 30 10 -1\n")


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeProcess:
    names = {4242: "curl", 77: "sshd"}

    def __init__(self, pid):
        if pid not in self.names:
            raise psutil.NoSuchProcess(pid)
        self.pid = pid

    def name(self):
        return self.names[self.pid]


@pytest.fixture
def proc_root(tmp_path):
    (tmp_path / "net").mkdir()
    (tmp_path / "net" / "tcp").write_text(
        TCP_HEADER
        + tcp_line(0, "0A00000A:C350", "08080808:01BB", 5555)
        + tcp_line(1, "0A00000A:C351", "04030201:0050", 0)
    )
    (tmp_path / "net" / "tcp6").write_text(
        TCP_HEADER
        + tcp_line(0, "00000000000000000000000000000000:0016",
                   "0000000000000000FFFF00000D0D0DAB:D431", 6666)
    )
    for pid, fds in {"4242": {"0": "/dev/null", "3": "socket:[5555]"},
                     "77": {"4": "socket:[6666]"},
                     "self": {}}.items():
        fd_dir = tmp_path / pid / "fd"
        fd_dir.mkdir(parents=True)
        for fd, target in fds.items():
            os.symlink(target, fd_dir / fd)
    return tmp_path


@pytest.fixture(autouse=True)
def fake_psutil(monkeypatch):
    monkeypatch.setattr(resolver_module.psutil, "Process", FakeProcess)


def test_ip_to_proc_hex():
    assert ip_to_proc_hex("1.2.3.4") == ["04030201", "0000000000000000FFFF000004030201"]
    assert ip_to_proc_hex("::1") == ["00000000000000000000000001000000"]
    assert ip_to_proc_hex("bogus") == []


def test_parse_proc_net_tcp_skips_zero_inodes():
    text = TCP_HEADER + tcp_line(0, "0100007F:0016", "08080808:01BB", 1) + tcp_line(1, "0100007F:0017", "04030201:0050", 0)
    assert parse_proc_net_tcp(text) == {"08080808": "1"}


def test_resolve_ipv4(proc_root):
    resolver = ConnectionResolver(proc_root=str(proc_root))
    assert resolver.resolve("8.8.8.8") == ResolvedIdentity(pid=4242, process_name="curl")


def test_resolve_ipv4_mapped_socket(proc_root):
    resolver = ConnectionResolver(proc_root=str(proc_root))
    assert resolver.resolve("171.13.13.13") == ResolvedIdentity(pid=77, process_name="sshd")


def test_unresolved_cases(proc_root):
    resolver = ConnectionResolver(proc_root=str(proc_root))
    # no table entry, zero inode, unparsable
    for ip in ("9.9.9.9", "1.2.3.4", "garbage"):
        assert resolver.resolve(ip) == ResolvedIdentity()


def test_vanished_process_has_no_name(proc_root):
    (proc_root / "net" / "tcp").write_text(TCP_HEADER + tcp_line(0, "0A00000A:C350", "08080808:01BB", 9999))
    fd_dir = proc_root / "31337" / "fd"
    fd_dir.mkdir(parents=True)
    os.symlink("socket:[9999]", fd_dir / "5")

    resolver = ConnectionResolver(proc_root=str(proc_root))
    assert resolver.resolve("8.8.8.8") == ResolvedIdentity(pid=31337, process_name=None)


def test_missing_proc_root_is_unresolved(tmp_path):
    resolver = ConnectionResolver(proc_root=str(tmp_path / "nope"))
    assert resolver.resolve("8.8.8.8") == ResolvedIdentity()


def test_pid_cache_ttl(proc_root):
    clock = FakeClock()
    resolver = ConnectionResolver(proc_root=str(proc_root), pid_cache_ttl=100, clock=clock)
    assert resolver.find_pid("8.8.8.8") == 4242

    os.remove(proc_root / "4242" / "fd" / "3")

    clock.now += 99
    assert resolver.find_pid("8.8.8.8") == 4242

    clock.now += 2
    assert resolver.find_pid("8.8.8.8") is None


def test_not_found_is_cached(proc_root):
    clock = FakeClock()
    resolver = ConnectionResolver(proc_root=str(proc_root), pid_cache_ttl=100, clock=clock)
    assert resolver.find_pid("9.9.9.9") is None

    (proc_root / "net" / "tcp").write_text(TCP_HEADER + tcp_line(0, "0A00000A:C350", "09090909:01BB", 5555))
    clock.now += 50
    assert resolver.find_pid("9.9.9.9") is None

    clock.now += 51
    assert resolver.find_pid("9.9.9.9") == 4242


def test_connection_table_ttl(proc_root):
    clock = FakeClock()
    resolver = ConnectionResolver(proc_root=str(proc_root), conn_table_ttl=5, clock=clock)
    assert "08080808" in resolver.connection_table()

    (proc_root / "net" / "tcp").write_text(TCP_HEADER)
    clock.now += 4
    assert "08080808" in resolver.connection_table()

    clock.now += 2
    assert "08080808" not in resolver.connection_table()


def test_name_cache_ttl(proc_root, monkeypatch):
    clock = FakeClock()
    resolver = ConnectionResolver(proc_root=str(proc_root), name_cache_ttl=10, clock=clock)
    assert resolver.process_name(4242) == "curl"

    monkeypatch.setitem(FakeProcess.names, 4242, "wget")
    clock.now += 9
    assert resolver.process_name(4242) == "curl"

    clock.now += 2
    assert resolver.process_name(4242) == "wget"


def test_ttl_cache_bounds_and_expiry():
    clock = FakeClock()
    cache = TTLCache(ttl=10, max_entries=2, clock=clock)
    cache.put("a", 1)
    cache.put("b", None)
    assert cache.lookup("b") == (True, None)
    assert cache.get("a") == 1      # refreshes recency of "a"
    cache.put("c", 3)               # evicts "b"
    assert cache.lookup("b") == (False, None)
    assert len(cache) == 2

    clock.now += 10
    assert cache.lookup("a") == (False, None)
    assert cache.get("c", "default") == "default"
    assert len(cache) == 0
