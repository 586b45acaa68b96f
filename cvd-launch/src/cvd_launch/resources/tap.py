"""Host tap interfaces.

Taps are created ahead of time by the host network setup (one set per instance
slot, named ``cvd-{w,m,e}tap-NN``); the launcher only attaches to them through
``/dev/net/tun`` and hands the resulting descriptor to the hypervisor.
"""

from __future__ import annotations

import fcntl
import logging
import os
import struct
from typing import Optional

from cvd_launch.resources.errors import NetworkSetupError

logger = logging.getLogger(__name__)

TUN_DEVICE = "/dev/net/tun"

TUNSETIFF = 0x400454CA
IFF_TAP = 0x0002
IFF_NO_PI = 0x1000
IFF_VNET_HDR = 0x4000

# sizeof(struct virtio_net_hdr); prepended to every frame when IFF_VNET_HDR is set.
VNET_HDR_LEN = 10

IFNAMSIZ = 16


class TapDevice:
    """An open tap interface. Owns its file descriptor."""

    def __init__(self, name: str, fd: int, *, vnet_hdr: bool = True) -> None:
        self.name = name
        self.vnet_hdr = vnet_hdr
        self._fd: Optional[int] = fd

    @property
    def is_open(self) -> bool:
        return self._fd is not None

    def fileno(self) -> int:
        if self._fd is None:
            raise ValueError(f"tap device is closed: {self.name}")
        return self._fd

    def write_frame(self, frame: bytes) -> int:
        """Write one ethernet frame (the virtio header is added when needed)."""

        payload = (b"\x00" * VNET_HDR_LEN + frame) if self.vnet_hdr else frame
        return os.write(self.fileno(), payload)

    def close(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            os.close(fd)
        except OSError:
            pass

    def __enter__(self) -> "TapDevice":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __del__(self) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"TapDevice(name={self.name!r}, fd={self._fd})"


def open_tap_interface(
    name: str,
    *,
    tun_device: str = TUN_DEVICE,
    vnet_hdr: bool = True,
) -> TapDevice:
    """Attach to an existing tap interface.

    Raises NetworkSetupError when the interface cannot be opened (missing
    device node, missing permissions, interface busy or absent).
    """

    encoded = name.encode("ascii", errors="replace")
    if not encoded or len(encoded) >= IFNAMSIZ:
        raise NetworkSetupError(f"invalid tap interface name: {name!r}", tap_name=name)

    flags = IFF_TAP | IFF_NO_PI
    if vnet_hdr:
        flags |= IFF_VNET_HDR

    try:
        fd = os.open(tun_device, os.O_RDWR | os.O_NONBLOCK | os.O_CLOEXEC)
    except OSError as e:
        raise NetworkSetupError(
            f"Unable to open {tun_device} for tap {name!r}: {e.strerror or e}", tap_name=name
        ) from e

    ifr = struct.pack("16sH", encoded, flags)
    try:
        fcntl.ioctl(fd, TUNSETIFF, ifr)
    except OSError as e:
        os.close(fd)
        raise NetworkSetupError(
            f"Unable to connect to tap {name!r}: {e.strerror or e}", tap_name=name
        ) from e

    logger.debug("opened tap %s (fd=%d)", name, fd)
    return TapDevice(name, fd, vnet_hdr=vnet_hdr)
