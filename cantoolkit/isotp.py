"""ISO 15765-2 (ISO-TP) socket options and shared command line value parsing."""

from __future__ import annotations

import contextlib
import enum
import re
import socket
import struct
from dataclasses import dataclass

NO_CAN_ID = 0xFFFFFFFF
CAN_EFF_FLAG = 0x80000000

SOL_CAN_BASE = 100
CAN_ISOTP = 6
SOL_CAN_ISOTP = SOL_CAN_BASE + CAN_ISOTP

CAN_ISOTP_OPTS = 1
CAN_ISOTP_RECV_FC = 2
CAN_ISOTP_TX_STMIN = 3
CAN_ISOTP_RX_STMIN = 4
CAN_ISOTP_LL_OPTS = 5

_ULONG_MAX = 2**64 - 1

_HEX_NUMBER = re.compile(r"\s*([+-]?)(?:0[xX](?=[0-9a-fA-F]))?([0-9a-fA-F]*)")
_HEX_BYTE = re.compile(r"\s*([+-]?)(?:0[xX](?=[0-9a-fA-F]))?([0-9a-fA-F]+)")
_DEC_BYTE = re.compile(r"\s*([+-]?)([0-9]+)")


class UsageError(Exception):
    """Raised when command line values cannot be used."""


class IsotpFlag(enum.IntFlag):
    """Flags of the ISO-TP socket options."""

    LISTEN_MODE = 0x001
    EXTEND_ADDR = 0x002
    TX_PADDING = 0x004
    RX_PADDING = 0x008
    CHK_PAD_LEN = 0x010
    CHK_PAD_DATA = 0x020
    HALF_DUPLEX = 0x040
    FORCE_TXSTMIN = 0x080
    FORCE_RXSTMIN = 0x100
    RX_EXT_ADDR = 0x200
    WAIT_TX_DONE = 0x400
    SF_BROADCAST = 0x800


def _strtoul_hex(text: str) -> int:
    match = _HEX_NUMBER.match(text)
    sign, digits = match.group(1), match.group(2)
    if not digits:
        return 0
    value = int(digits, 16)
    if value > _ULONG_MAX:
        return _ULONG_MAX
    if sign == "-":
        value = (-value) % (_ULONG_MAX + 1)
    return value


def _scan(pattern: re.Pattern, base: int, text: str, pos: int) -> tuple[int, int] | None:
    match = pattern.match(text, pos)
    if match is None:
        return None
    value = int(match.group(2), base)
    if match.group(1) == "-":
        value = -value
    return value & 0xFF, match.end()


def _scan_separated(pattern: re.Pattern, base: int, text: str, count: int) -> list[int]:
    """Scan up to ``count`` byte values separated by ':' as scanf would."""
    values: list[int] = []
    pos = 0
    while len(values) < count:
        if values:
            if text[pos:pos + 1] != ":":
                break
            pos += 1
        scanned = _scan(pattern, base, text, pos)
        if scanned is None:
            break
        value, pos = scanned
        values.append(value)
    return values


def parse_can_id(text: str) -> int:
    """Parse a hexadecimal CAN id; more than seven digits marks an extended id."""
    can_id = _strtoul_hex(text) & 0xFFFFFFFF
    if len(text) > 7:
        can_id |= CAN_EFF_FLAG
    return can_id


def parse_hex_byte(text: str) -> int:
    """Parse a hexadecimal value and keep its lowest byte."""
    return _strtoul_hex(text) & 0xFF


@dataclass
class IsotpOptions:
    """General ISO-TP socket options."""

    flags: IsotpFlag = IsotpFlag(0)
    frame_txtime: int = 0
    ext_address: int = 0
    txpad_content: int = 0
    rxpad_content: int = 0
    rx_ext_address: int = 0

    def set_extended_address(self, text: str) -> None:
        """Apply '<addr>[:<rxaddr>]' extended addressing."""
        values = _scan_separated(_HEX_BYTE, 16, text, 2)
        if not values:
            raise UsageError(f"incorrect extended addr values '{text}'.")
        self.ext_address = values[0]
        self.flags |= IsotpFlag.EXTEND_ADDR
        if len(values) == 2:
            self.rx_ext_address = values[1]
            self.flags |= IsotpFlag.RX_EXT_ADDR

    def set_padding(self, text: str) -> None:
        """Apply '[tx]:[rx]' padding bytes."""
        values = _scan_separated(_HEX_BYTE, 16, text, 2)
        if values:
            self.txpad_content = values[0]
            self.flags |= IsotpFlag.TX_PADDING
            if len(values) == 2:
                self.rxpad_content = values[1]
                self.flags |= IsotpFlag.RX_PADDING
            return
        scanned = _scan(_HEX_BYTE, 16, text, 1) if text.startswith(":") else None
        if scanned is None:
            raise UsageError(f"incorrect padding values '{text}'.")
        self.rxpad_content = scanned[0]
        self.flags |= IsotpFlag.RX_PADDING

    def set_padding_check(self, text: str) -> None:
        """Enable rx padding checks for (l)ength, (c)ontent or (a)ll."""
        mode = text[:1]
        if mode == "l":
            self.flags |= IsotpFlag.CHK_PAD_LEN
        elif mode == "c":
            self.flags |= IsotpFlag.CHK_PAD_DATA
        elif mode == "a":
            self.flags |= IsotpFlag.CHK_PAD_LEN | IsotpFlag.CHK_PAD_DATA
        else:
            raise UsageError(f"unknown padding check option '{mode}'.")

    def pack(self) -> bytes:
        """Return the options in the socket option layout."""
        return struct.pack(
            "=IIBBBB",
            int(self.flags),
            self.frame_txtime & 0xFFFFFFFF,
            self.ext_address,
            self.txpad_content,
            self.rxpad_content,
            self.rx_ext_address,
        )


@dataclass
class FlowControlOptions:
    """Flow control parameters sent to the data source."""

    bs: int = 0
    stmin: int = 0
    wftmax: int = 0

    def pack(self) -> bytes:
        """Return the options in the socket option layout."""
        return struct.pack("=BBB", self.bs, self.stmin, self.wftmax)


@dataclass
class LinkLayerOptions:
    """CAN FD link layer options."""

    mtu: int = 0
    tx_dl: int = 0
    tx_flags: int = 0

    def pack(self) -> bytes:
        """Return the options in the socket option layout."""
        return struct.pack("=BBB", self.mtu, self.tx_dl, self.tx_flags)


def parse_link_layer(text: str) -> LinkLayerOptions:
    """Parse '<mtu>:<tx_dl>:<tx_flags>' given in decimal."""
    values = _scan_separated(_DEC_BYTE, 10, text, 3)
    if len(values) != 3:
        raise UsageError(f"unknown link layer options '{text}'.")
    return LinkLayerOptions(*values)


def open_isotp_socket(
    interface,
    tx_id,
    rx_id,
    options,
    fc_options=None,
    ll_options=None,
    force_tx_stmin=0,
    force_rx_stmin=0,
):
    """Open an ISO-TP datagram socket configured with the options and bound to the interface."""
    sock = socket.socket(socket.AF_CAN, socket.SOCK_DGRAM, CAN_ISOTP)
    try:
        with contextlib.suppress(OSError):
            sock.setsockopt(SOL_CAN_ISOTP, CAN_ISOTP_OPTS, options.pack())
        if fc_options is not None:
            with contextlib.suppress(OSError):
                sock.setsockopt(SOL_CAN_ISOTP, CAN_ISOTP_RECV_FC, fc_options.pack())
        if ll_options is not None and ll_options.tx_dl:
            sock.setsockopt(SOL_CAN_ISOTP, CAN_ISOTP_LL_OPTS, ll_options.pack())
        if options.flags & IsotpFlag.FORCE_TXSTMIN:
            with contextlib.suppress(OSError):
                sock.setsockopt(
                    SOL_CAN_ISOTP, CAN_ISOTP_TX_STMIN,
                    struct.pack("=I", force_tx_stmin & 0xFFFFFFFF),
                )
        if options.flags & IsotpFlag.FORCE_RXSTMIN:
            with contextlib.suppress(OSError):
                sock.setsockopt(
                    SOL_CAN_ISOTP, CAN_ISOTP_RX_STMIN,
                    struct.pack("=I", force_rx_stmin & 0xFFFFFFFF),
                )
        sock.bind((interface, rx_id, tx_id))
    except BaseException:
        sock.close()
        raise
    return sock