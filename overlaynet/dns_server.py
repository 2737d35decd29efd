"""A small DNS responder for overlay host names and peer certificates."""

from __future__ import annotations

import ipaddress
import logging
import socket
import threading
from datetime import datetime, timezone
from typing import Any

import dns.exception
import dns.message
import dns.opcode
import dns.rdatatype
import dns.rrset

from overlaynet.hostmap import HostMap, HostNotFoundError

log = logging.getLogger(__name__)

_DEFAULT_TTL = 3600
_POLL_INTERVAL = 0.2
_MAX_DATAGRAM = 65535


def _format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.strftime("%Y-%m-%d %H:%M:%S")
    if value.microsecond:
        text += f".{value.microsecond:06d}".rstrip("0")
    return f"{text} {value.strftime('%z')} {value.strftime('%Z')}"


def _format_list(items) -> str:
    return "[" + " ".join(str(item) for item in items) + "]"


def _to_vpn_ip(text: str) -> int | None:
    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return None
    # Only the low four bytes address a host on the overlay.
    return int.from_bytes(ip.packed[-4:], "big")


class DnsRecords:
    """Name to address records plus certificate lookups against a host map."""

    def __init__(self, hostmap: HostMap) -> None:
        self.hostmap = hostmap
        self._records: dict[str, str] = {}
        self._lock = threading.RLock()

    def query(self, name: str) -> str:
        """The address recorded for ``name``, or an empty string."""
        with self._lock:
            return self._records.get(name, "")

    def query_cert(self, name: str) -> str:
        """TXT data describing the certificate of the host at ``name`` (an IP with a trailing dot)."""
        if not name:
            return ""
        vpn_ip = _to_vpn_ip(name[:-1])
        if vpn_ip is None:
            return ""
        try:
            hostinfo = self.hostmap.query_vpn_ip(vpn_ip)
        except HostNotFoundError:
            return ""
        cert = hostinfo.get_cert()
        if cert is None:
            return ""
        return (
            f'"Name: {cert.name}" '
            f'"Ips: {_format_list(cert.ips)}" '
            f'"Subnets {_format_list(cert.subnets)}" '
            f'"Groups {_format_list(cert.groups)}" '
            f'"NotBefore {_format_time(cert.not_before)}" '
            f'"NotAFter {_format_time(cert.not_after)}" '
            f'"PublicKey {cert.public_key.hex()}" '
            f'"IsCA {"true" if cert.is_ca else "false"}" '
            f'"Issuer {cert.issuer}"'
        )

    def add(self, host: str, data: str) -> None:
        with self._lock:
            self._records[host] = data


def _remote_allowed(records: DnsRecords, host: str) -> bool:
    if host == "127.0.0.1":
        return True
    cidr = records.hostmap.vpn_cidr
    if cidr is None:
        return False
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return False
    return ip.version == cidr.version and ip in cidr


def _answer(qname: str, rdtype: str, data: str):
    try:
        return dns.rrset.from_text(qname, _DEFAULT_TTL, "IN", rdtype, data)
    except (dns.exception.DNSException, ValueError):
        return None


def handle_dns_request(records: DnsRecords, request: dns.message.Message, remote_addr) -> dns.message.Message:
    """Build the reply to ``request`` received from ``remote_addr`` (an ``(ip, port, ...)`` tuple)."""
    response = dns.message.make_response(request)
    if request.opcode() != dns.opcode.QUERY:
        return response

    for question in request.question:
        qname = question.name.to_text()
        if question.rdtype == dns.rdatatype.A:
            log.debug("Query for A %s", qname)
            ip = records.query(qname)
            if ip:
                rrset = _answer(qname, "A", ip)
                if rrset is not None:
                    response.answer.append(rrset)
        elif question.rdtype == dns.rdatatype.TXT:
            # Certificate details are only for overlay members and localhost
            if not _remote_allowed(records, str(remote_addr[0])):
                return response
            log.debug("Query for TXT %s", qname)
            text = records.query_cert(qname)
            if text:
                rrset = _answer(qname, "TXT", text)
                if rrset is not None:
                    response.answer.append(rrset)
    return response


def dns_server_addr(config: Any) -> str:
    """``host:port`` from ``lighthouse.dns.host`` and ``lighthouse.dns.port`` (default 53)."""
    host = config.get_string("lighthouse.dns.host", "")
    port = config.get_int("lighthouse.dns.port", 53)
    return f"{host}:{port}"


def _split_addr(addr: str) -> tuple[str, int]:
    host, _, port = addr.rpartition(":")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port)


class DnsServer:
    """Answers DNS queries over UDP from a :class:`DnsRecords`."""

    def __init__(self, records: DnsRecords, config: Any) -> None:
        self.records = records
        self.addr = dns_server_addr(config)
        self._stop = threading.Event()
        self._ready = threading.Event()
        self._bound: tuple | None = None
        self._thread: threading.Thread | None = None

    @property
    def bound_address(self) -> tuple | None:
        """The socket address actually bound, once serving."""
        return self._bound

    def wait_ready(self, timeout: float | None = None) -> bool:
        return self._ready.wait(timeout)

    def serve_forever(self) -> None:
        """Serve until :meth:`shutdown` is called; logs and returns if it cannot bind."""
        stop = self._stop
        ready = self._ready
        log.info("Starting DNS responder on %s", self.addr)
        try:
            host, port = _split_addr(self.addr)
            family = socket.AF_INET6 if ":" in host else socket.AF_INET
            sock = socket.socket(family, socket.SOCK_DGRAM)
        except (OSError, ValueError) as exc:
            log.error("Failed to start server: %s", exc)
            return

        with sock:
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                sock.bind((host, port))
            except OSError as exc:
                log.error("Failed to start server: %s", exc)
                return
            sock.settimeout(_POLL_INTERVAL)
            self._bound = sock.getsockname()
            ready.set()

            while not stop.is_set():
                try:
                    data, remote = sock.recvfrom(_MAX_DATAGRAM)
                except socket.timeout:
                    continue
                except OSError as exc:
                    if stop.is_set():
                        break
                    log.error("DNS responder receive failed: %s", exc)
                    continue
                try:
                    request = dns.message.from_wire(data)
                except dns.exception.DNSException:
                    continue
                response = handle_dns_request(self.records, request, remote)
                try:
                    sock.sendto(response.to_wire(), remote)
                except OSError as exc:
                    log.error("DNS responder send failed: %s", exc)

    def start(self) -> threading.Thread:
        """Serve in a background thread."""
        self._thread = threading.Thread(target=self.serve_forever, name="dns-responder", daemon=True)
        self._thread.start()
        return self._thread

    def shutdown(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._thread = None

    def reload(self, config: Any) -> None:
        """Restart on the new address if the configured one changed."""
        new_addr = dns_server_addr(config)
        if new_addr == self.addr:
            log.debug("No DNS server config change detected")
            return
        log.debug("Restarting DNS server")
        self.shutdown()
        self.addr = new_addr
        self._stop = threading.Event()
        self._ready = threading.Event()
        self._bound = None
        self.start()