import ipaddress

import pytest

from overlaynet.handshake_manager import (
    DEFAULT_HANDSHAKE_RETRIES,
    DEFAULT_HANDSHAKE_TRY_INTERVAL,
    AlreadySeenError,
    ExistingHandshakeError,
    ExistingHostInfoError,
    HandshakeConfig,
    HandshakeManager,
    LocalIndexCollisionError,
    generate_index,
    hs_timeout,
)
from overlaynet.hostmap import HostInfo, HostMap, RemoteList


def vip(text):
    return int(ipaddress.IPv4Address(text))


class FakeLighthouse:
    def __init__(self):
        self.addr_map = {}
        self.queried = []

    def query_cache(self, vpn_ip):
        return self.addr_map.setdefault(vpn_ip, RemoteList())

    def query_server(self, vpn_ip, writer):
        self.queried.append(vpn_ip)


class FakeOutside:
    def __init__(self):
        self.sent = []

    def write_to(self, data, addr):
        self.sent.append((data, addr))


class FakeWriter:
    def send_message_to_vpn_ip(self, *args):
        pass


def make_manager():
    main = HostMap("test", "172.1.1.0/24", ["10.1.1.0/24"])
    lh = FakeLighthouse()
    outside = FakeOutside()
    hm = HandshakeManager("172.1.1.0/24", ["10.1.1.0/24"], main, lh, outside, HandshakeConfig())
    return hm, main, lh, outside


def test_new_handshake_manager_vpn_ip():
    ip = vip("172.1.1.2")
    blah, main, _, _ = make_manager()
    mw = FakeWriter()
    now = 0.0
    blah.next_outbound_handshake_timer_tick(now, mw)

    called = []
    i = blah.add_vpn_ip(ip, called.append)
    assert called == [i]

    called.clear()
    i2 = blah.add_vpn_ip(ip, called.append)
    assert called == []
    assert i is i2

    i.remotes = RemoteList()
    i.handshake_ready = True

    assert len(main.hosts) == 0
    assert ip in blah.pending_hostmap.hosts

    for n in range(1, DEFAULT_HANDSHAKE_RETRIES + 2):
        now += n * DEFAULT_HANDSHAKE_TRY_INTERVAL
        blah.next_outbound_handshake_timer_tick(now, mw)

    assert ip in blah.pending_hostmap.hosts

    blah.next_outbound_handshake_timer_tick(now + 60, mw)
    assert ip not in blah.pending_hostmap.hosts
    assert blah.stats()["handshake_manager.timed_out"] == 1


def test_new_handshake_manager_trigger():
    ip = vip("172.1.1.2")
    blah, _, lh, outside = make_manager()
    mw = FakeWriter()
    blah.next_outbound_handshake_timer_tick(0.0, mw)
    assert len(blah.outbound_timer) == 0

    hi = blah.add_vpn_ip(ip, None)
    hi.handshake_ready = True
    assert len(blah.outbound_timer) == 1
    assert hi.handshake_counter == 0

    blah.handle_outbound(ip, mw, True)
    assert hi.handshake_counter == 1
    assert hi.remotes is lh.addr_map[ip]
    assert len(blah.outbound_timer) == 1

    hi.remotes.prepend(("10.1.1.1", 4242))
    blah.handle_outbound(ip, mw, True)
    assert hi.handshake_counter == 1
    assert len(blah.outbound_timer) == 1
    assert outside.sent == []


def test_handle_outbound_sends_to_remotes():
    ip = vip("172.1.1.2")
    blah, _, lh, outside = make_manager()
    hi = blah.add_vpn_ip(ip)
    hi.handshake_packet[0] = b"\x00\x01hs"
    hi.handshake_ready = True
    hi.remotes = RemoteList()
    hi.remotes.prepend(("10.1.1.1", 4242))
    blah.handle_outbound(ip, FakeWriter(), False)
    assert outside.sent == [(b"\x00\x01hs", (ipaddress.ip_address("10.1.1.1"), 4242))]
    assert lh.queried == [ip]
    assert hi.handshake_counter == 1


def test_hs_timeout_and_generate_index():
    assert hs_timeout(DEFAULT_HANDSHAKE_RETRIES, DEFAULT_HANDSHAKE_TRY_INTERVAL) == pytest.approx(5.5)
    for _ in range(50):
        index = generate_index()
        assert 0 < index < 2**32


def test_add_index_host_info_registers_pending():
    blah, _, _, _ = make_manager()
    hi = HostInfo(vpn_ip=vip("172.1.1.2"))
    blah.add_index_host_info(hi)
    assert hi.local_index_id != 0
    assert blah.query_index(hi.local_index_id) is hi
    blah.delete_host_info(hi)
    assert hi.local_index_id not in blah.pending_hostmap.indexes


def test_check_and_complete_adds_to_main():
    blah, main, _, _ = make_manager()
    hi = HostInfo(vpn_ip=vip("172.1.1.2"), local_index_id=7, remote_index_id=8)
    assert blah.check_and_complete(hi, 0, False) is None
    assert main.hosts[hi.vpn_ip] is hi
    assert main.indexes[7] is hi


def test_check_and_complete_conflicts():
    blah, main, _, _ = make_manager()
    ip = vip("172.1.1.2")
    existing = HostInfo(vpn_ip=ip, local_index_id=1, remote_index_id=2, last_handshake_time=10)
    existing.handshake_packet[0] = b"same"
    main.add_host_info(existing)

    seen = HostInfo(vpn_ip=ip, local_index_id=3, last_handshake_time=20)
    seen.handshake_packet[0] = b"same"
    with pytest.raises(AlreadySeenError) as exc:
        blah.check_and_complete(seen, 0, True)
    assert exc.value.existing is existing

    older = HostInfo(vpn_ip=ip, local_index_id=3, last_handshake_time=5)
    older.handshake_packet[0] = b"other"
    with pytest.raises(ExistingHostInfoError):
        blah.check_and_complete(older, 0, True)

    colliding = HostInfo(vpn_ip=vip("172.1.1.3"), local_index_id=1)
    with pytest.raises(LocalIndexCollisionError) as exc:
        blah.check_and_complete(colliding, 0, True)
    assert exc.value.existing is existing

    newer = HostInfo(vpn_ip=ip, local_index_id=4, remote_index_id=5, last_handshake_time=30)
    newer.handshake_packet[0] = b"newer"
    assert blah.check_and_complete(newer, 0, True) is existing
    assert main.hosts[ip] is newer
    assert 1 not in main.indexes


def test_check_and_complete_pending_race():
    blah, main, _, _ = make_manager()
    ip = vip("172.1.1.2")
    pending = blah.add_vpn_ip(ip)
    pending.packet_store.append(b"cached")

    hi = HostInfo(vpn_ip=ip, local_index_id=9)
    with pytest.raises(ExistingHandshakeError) as exc:
        blah.check_and_complete(hi, 0, False)
    assert exc.value.existing is pending

    assert blah.check_and_complete(hi, 0, True) is None
    assert hi.packet_store == [b"cached"]
    assert ip not in blah.pending_hostmap.hosts
    assert main.hosts[ip] is hi


def test_complete_moves_from_pending():
    blah, main, _, _ = make_manager()
    ip = vip("172.1.1.2")
    old = HostInfo(vpn_ip=ip, local_index_id=1, remote_index_id=2)
    main.add_host_info(old)
    hi = HostInfo(vpn_ip=ip)
    blah.add_index_host_info(hi)
    blah.pending_hostmap.add(ip, hi)
    blah.complete(hi)
    assert main.hosts[ip] is hi
    assert 1 not in main.indexes
    assert ip not in blah.pending_hostmap.hosts
    assert hi.local_index_id not in blah.pending_hostmap.indexes
    stats = blah.stats()
    assert stats["hostmap.main.hosts"] == 1
    assert stats["hostmap.pending.hosts"] == 0