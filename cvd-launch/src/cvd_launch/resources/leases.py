"""Stale dnsmasq lease cleanup.

Tap interfaces are reused when an instance slot restarts, and dnsmasq keeps
the previous run's leases around. Until those leases expire the guest may not
get its address back. Releasing them on the guest's behalf (a DHCPRELEASE
written into the tap) and dropping them from the lease file clears the way.

This is a narrow workaround: it only runs when the legacy bridge lease file is
absent (the newer bridge setup has a wide enough address space that stale
leases do not matter) and the tap is open. Failures are logged, never raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from ipaddress import AddressValueError, IPv4Address
from pathlib import Path
from typing import Any, List, Optional

from cvd_launch.resources.dhcp import build_dhcp_release_frame, parse_mac

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DhcpLease:
    """One dnsmasq lease line: ``<expiry> <mac> <ip> <hostname> <client-id>``."""

    expiry: int
    mac: str
    ip: IPv4Address
    hostname: str = "*"
    client_id: str = "*"


def parse_lease_line(line: str) -> Optional[DhcpLease]:
    parts = line.split()
    if len(parts) < 3:
        return None
    try:
        expiry = int(parts[0])
        parse_mac(parts[1])
        ip = IPv4Address(parts[2])
    except (ValueError, AddressValueError):
        return None
    hostname = parts[3] if len(parts) > 3 else "*"
    client_id = parts[4] if len(parts) > 4 else "*"
    return DhcpLease(expiry=expiry, mac=parts[1].lower(), ip=ip, hostname=hostname, client_id=client_id)


def read_leases(path: Path) -> List[DhcpLease]:
    if not path.exists():
        return []
    leases: List[DhcpLease] = []
    for raw in path.read_text(encoding="utf-8", errors="surrogateescape").splitlines():
        lease = parse_lease_line(raw)
        if lease is not None:
            leases.append(lease)
    return leases


def _write_text_atomic(path: Path, text: str) -> None:
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(text, encoding="utf-8", errors="surrogateescape")
    tmp_path.replace(path)


def release_stale_leases(lease_file: Path, tap: Any, server_ip: IPv4Address) -> bool:
    """Release every lease in ``lease_file`` through ``tap``.

    Released leases are removed from the file; lines that do not parse as a
    lease are kept byte for byte. With nothing to release the file is not
    rewritten, so calling this twice leaves the same content as calling it
    once. Returns False (after logging) when anything went wrong.
    """

    lease_file = Path(lease_file)
    try:
        if not lease_file.exists():
            logger.debug("no lease file at %s, nothing to release", lease_file)
            return True
        lines = lease_file.read_text(encoding="utf-8", errors="surrogateescape").splitlines()
    except OSError as e:
        logger.error("Failed to read lease file %s: %s", lease_file, e)
        return False

    kept: List[str] = []
    released = 0
    ok = True
    for raw in lines:
        lease = parse_lease_line(raw)
        if lease is None:
            kept.append(raw)
            continue
        frame = build_dhcp_release_frame(
            client_mac=parse_mac(lease.mac), client_ip=lease.ip, server_ip=server_ip
        )
        try:
            tap.write_frame(frame)
        except (OSError, ValueError) as e:
            logger.error("Failed to release lease %s (%s) on %s: %s", lease.ip, lease.mac, tap, e)
            kept.append(raw)
            ok = False
            continue
        released += 1
        logger.debug("released lease %s (%s) via %s", lease.ip, lease.mac, server_ip)

    if released == 0:
        return ok

    try:
        _write_text_atomic(lease_file, "".join(f"{line}\n" for line in kept))
    except OSError as e:
        logger.error("Failed to rewrite lease file %s: %s", lease_file, e)
        return False
    logger.info("released %d stale DHCP lease(s) from %s", released, lease_file)
    return ok
