import ipaddress
from datetime import datetime, timezone

import dns.message
import dns.opcode
import dns.query
import dns.rdatatype
import pytest

from overlaynet.config import Config
from overlaynet.dns_server import (
    DnsRecords,
    DnsServer,
    dns_server_addr,
    handle_dns_request,
)
from overlaynet.firewall import Certificate
from overlaynet.hostmap import HostInfo, HostMap

EXPECTED_TXT = (
    '"Name: host1" "Ips: [10.1.0.5/16]" "Subnets []" "Groups [a b]" '
    '"NotBefore 2021-01-01 00:00:00 +0000 UTC" "NotAFter 2022-01-01 00:00:00 +0000 UTC" '
    '"PublicKey 0102" "IsCA false" "Issuer ca-sha"'
)


@pytest.fixture
def records():
    hostmap = HostMap("test", "10.1.0.0/16", [])
    cert = Certificate(
        name="host1",
        ips=[ipaddress.IPv4Interface("10.1.0.5/16")],
        groups=["a", "b"],
        not_before=datetime(2021, 1, 1, tzinfo=timezone.utc),
        not_after=datetime(2022, 1, 1, tzinfo=timezone.utc),
        public_key=b"\x01\x02",
        issuer="ca-sha",
    )
    vpn_ip = int(ipaddress.IPv4Address("10.1.0.5"))
    hostmap.add(vpn_ip, HostInfo(vpn_ip=vpn_ip, certificate=cert))
    no_cert_ip = int(ipaddress.IPv4Address("10.1.0.6"))
    hostmap.add(no_cert_ip, HostInfo(vpn_ip=no_cert_ip))
    recs = DnsRecords(hostmap)
    recs.add("test.com.com", "1.2.3.4")
    recs.add("host1.example.com.", "10.1.0.5")
    return recs


def _config(text):
    c = Config()
    c.load_string(text)
    return c


def test_add_and_query(records):
    assert records.query("test.com.com") == "1.2.3.4"
    assert records.query("missing.") == ""


def test_query_cert_formats_certificate(records):
    assert records.query_cert("10.1.0.5.") == EXPECTED_TXT


def test_query_cert_misses(records):
    assert records.query_cert("10.1.0.9.") == ""
    assert records.query_cert("10.1.0.6.") == ""
    assert records.query_cert("not-an-ip.") == ""
    assert records.query_cert("") == ""


def test_a_query_answers(records):
    request = dns.message.make_query("host1.example.com.", dns.rdatatype.A)
    response = handle_dns_request(records, request, ("192.168.0.1", 5000))
    assert len(response.answer) == 1
    assert [r.address for r in response.answer[0]] == ["10.1.0.5"]
    assert response.id == request.id


def test_a_query_unknown_has_no_answer(records):
    request = dns.message.make_query("nope.example.com.", dns.rdatatype.A)
    response = handle_dns_request(records, request, ("10.1.0.2", 5000))
    assert response.answer == []


def test_txt_query_from_overlay(records):
    request = dns.message.make_query("10.1.0.5.", dns.rdatatype.TXT)
    response = handle_dns_request(records, request, ("10.1.3.3", 5000))
    assert len(response.answer) == 1
    strings = list(response.answer[0])[0].strings
    assert strings[0] == b"Name: host1"
    assert b"Issuer ca-sha" in strings


def test_txt_query_from_localhost(records):
    request = dns.message.make_query("10.1.0.5.", dns.rdatatype.TXT)
    response = handle_dns_request(records, request, ("127.0.0.1", 5000))
    assert len(response.answer) == 1


def test_txt_query_from_outside_refused(records):
    request = dns.message.make_query("10.1.0.5.", dns.rdatatype.TXT)
    response = handle_dns_request(records, request, ("192.168.0.1", 5000))
    assert response.answer == []


def test_non_query_opcode_ignored(records):
    request = dns.message.make_query("host1.example.com.", dns.rdatatype.A)
    request.set_opcode(dns.opcode.NOTIFY)
    response = handle_dns_request(records, request, ("10.1.0.2", 5000))
    assert response.answer == []


def test_dns_server_addr():
    assert dns_server_addr(_config("lighthouse:\n  dns:\n    host: 127.0.0.1\n    port: 5353")) == "127.0.0.1:5353"
    assert dns_server_addr(_config("other: 1")) == ":53"


def test_server_answers_over_udp(records):
    server = DnsServer(records, _config("lighthouse:\n  dns:\n    host: 127.0.0.1\n    port: 0"))
    thread = server.start()
    try:
        assert server.wait_ready(5)
        host, port = server.bound_address[:2]
        request = dns.message.make_query("host1.example.com.", dns.rdatatype.A)
        response = dns.query.udp(request, host, port=port, timeout=5)
        assert [r.address for r in response.answer[0]] == ["10.1.0.5"]
    finally:
        server.shutdown()
    thread.join(5)
    assert not thread.is_alive()


def test_reload_same_address_keeps_server(records):
    config = _config("lighthouse:\n  dns:\n    host: 127.0.0.1\n    port: 0")
    server = DnsServer(records, config)
    server.start()
    try:
        assert server.wait_ready(5)
        bound = server.bound_address
        server.reload(config)
        assert server.bound_address == bound
        assert server.addr == "127.0.0.1:0"
    finally:
        server.shutdown()


def test_reload_new_address_restarts(records):
    server = DnsServer(records, _config("lighthouse:\n  dns:\n    host: 127.0.0.1\n    port: 0"))
    server.start()
    try:
        assert server.wait_ready(5)
        server.reload(_config("lighthouse:\n  dns:\n    host: localhost\n    port: 0"))
        assert server.addr == "localhost:0"
        assert server.wait_ready(5)
        host, port = server.bound_address[:2]
        request = dns.message.make_query("test.com.com.", dns.rdatatype.A)
        response = dns.query.udp(request, host, port=port, timeout=5)
        assert response.answer == []
        assert response.id == request.id
    finally:
        server.shutdown()