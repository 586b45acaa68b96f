"""DHCP helpers: per-instance server addressing and DHCPRELEASE frames."""

from __future__ import annotations

import os
import struct
from ipaddress import IPv4Address

DEFAULT_SUBNET_PREFIX = "192.168.96"

DHCP_CLIENT_PORT = 68
DHCP_SERVER_PORT = 67
DHCP_MAGIC_COOKIE = 0x63825363

BOOTREQUEST = 1
HTYPE_ETHERNET = 1
DHCPRELEASE = 7

OPT_MESSAGE_TYPE = 53
OPT_SERVER_ID = 54
OPT_CLIENT_ID = 61
OPT_END = 255

_BROADCAST_MAC = b"\xff" * 6
_ETHERTYPE_IPV4 = 0x0800
_IPPROTO_UDP = 17


def dhcp_server_last_octet(instance_num: int) -> int:
    """Each instance slot owns a /30-sized block; its server is the first host."""

    if instance_num < 1:
        raise ValueError(f"instance number must be >= 1, got {instance_num}")
    octet = 4 * instance_num - 3
    if octet > 255:
        raise ValueError(f"instance number {instance_num} does not fit the DHCP address plan")
    return octet


def dhcp_server_ip(instance_num: int, subnet_prefix: str = DEFAULT_SUBNET_PREFIX) -> IPv4Address:
    return IPv4Address(f"{subnet_prefix}.{dhcp_server_last_octet(instance_num)}")


def parse_mac(mac: str) -> bytes:
    raw = bytes.fromhex(mac.replace(":", "").replace("-", ""))
    if len(raw) != 6:
        raise ValueError(f"not an ethernet address: {mac!r}")
    return raw


def ipv4_checksum(header: bytes) -> int:
    if len(header) % 2:
        header += b"\x00"
    total = sum(struct.unpack(f"!{len(header) // 2}H", header))
    while total >> 16:
        total = (total & 0xFFFF) + (total >> 16)
    return ~total & 0xFFFF


def build_dhcp_release(
    *, client_mac: bytes, client_ip: IPv4Address, server_ip: IPv4Address, xid: int
) -> bytes:
    """BOOTP/DHCP payload of a DHCPRELEASE for ``client_ip``."""

    header = struct.pack(
        "!BBBBIHH4s4s4s4s16s64s128sI",
        BOOTREQUEST,
        HTYPE_ETHERNET,
        len(client_mac),
        0,  # hops
        xid,
        0,  # secs
        0,  # flags
        client_ip.packed,  # ciaddr
        b"\x00" * 4,  # yiaddr
        b"\x00" * 4,  # siaddr
        b"\x00" * 4,  # giaddr
        client_mac.ljust(16, b"\x00"),
        b"\x00" * 64,
        b"\x00" * 128,
        DHCP_MAGIC_COOKIE,
    )
    options = bytes([OPT_MESSAGE_TYPE, 1, DHCPRELEASE])
    options += bytes([OPT_SERVER_ID, 4]) + server_ip.packed
    options += bytes([OPT_CLIENT_ID, 1 + len(client_mac), HTYPE_ETHERNET]) + client_mac
    options += bytes([OPT_END])
    return header + options


def build_dhcp_release_frame(
    *,
    client_mac: bytes,
    client_ip: IPv4Address,
    server_ip: IPv4Address,
    xid: int | None = None,
) -> bytes:
    """Ethernet/IPv4/UDP frame carrying a DHCPRELEASE from client to server.

    The frame is written into the tap as if the guest had sent it, so the
    host-side DHCP server drops the lease.
    """

    if xid is None:
        xid = int.from_bytes(os.urandom(4), "big")
    payload = build_dhcp_release(
        client_mac=client_mac, client_ip=client_ip, server_ip=server_ip, xid=xid
    )

    udp_len = 8 + len(payload)
    # UDP checksum is optional over IPv4.
    udp = struct.pack("!HHHH", DHCP_CLIENT_PORT, DHCP_SERVER_PORT, udp_len, 0) + payload

    total_len = 20 + udp_len
    ip_header = struct.pack(
        "!BBHHHBBH4s4s",
        0x45,
        0,
        total_len,
        0,
        0,
        64,
        _IPPROTO_UDP,
        0,
        client_ip.packed,
        server_ip.packed,
    )
    checksum = ipv4_checksum(ip_header)
    ip_header = ip_header[:10] + struct.pack("!H", checksum) + ip_header[12:]

    eth = _BROADCAST_MAC + client_mac + struct.pack("!H", _ETHERTYPE_IPV4)
    return eth + ip_header + udp
