"""SAE J1939 address claiming daemon."""

from __future__ import annotations

import argparse
import enum
import errno
import re
import select
import signal
import socket
import struct
import sys
import time
from pathlib import Path

from cantoolkit.isotp import UsageError

CAN_J1939 = 7
SOL_CAN_J1939 = 100 + CAN_J1939
SO_J1939_FILTER = 1
SO_BINDTODEVICE = getattr(socket, "SO_BINDTODEVICE", 25)

J1939_IDLE_ADDR = 0xFE
J1939_NO_ADDR = 0xFF
J1939_PGN_REQUEST = 0x0EA00
J1939_PGN_ADDRESS_CLAIMED = 0x0EE00
J1939_PGN_PDU1_MAX = 0x3FF00
J1939_PGN_MAX = 0x3FFFF
J1939_NO_PGN = 0x40000
PGN_ADDRESS_COMMAND = 0x0FED8

DEFAULT_RANGE = "0x80-0xfd"
DEFAULT_INTERFACE = "can0"
POLL_INTERVAL = 0.5

HELP = """jacd: An SAE J1939 address claiming daemon
Usage: jacd [options] NAME [INTF]

  -v, --verbose\t\tIncrease verbosity
  -r, --range=RANGE\tRanges of source addresses
\t\t\te.g. 80,50-100,200-210 (defaults to 0-253)
  -c, --cache=FILE\tCache file to save/restore the source address
  -a, --address=ADDRESS\tStart with Source Address ADDRESS
  -p, --prefix=STR\tPrefix to use when logging

NAME is the 64bit nodename

Example:
jacd -r 100,80-120 -c /tmp/1122334455667788.jacd 1122334455667788
"""

# struct j1939_filter: name, name_mask, pgn, pgn_mask, addr, addr_mask (padded to 32 bytes)
_FILTER = struct.Struct("=QQIIBB6x")
_FILTERS = b"".join((
    _FILTER.pack(0, 0, J1939_PGN_ADDRESS_CLAIMED, J1939_PGN_PDU1_MAX, 0, 0),
    _FILTER.pack(0, 0, J1939_PGN_REQUEST, J1939_PGN_PDU1_MAX, 0, 0),
    _FILTER.pack(0, 0, PGN_ADDRESS_COMMAND, J1939_PGN_MAX, 0, 0),
))

_NUMBER = re.compile(r"\s*(?:0[xX]([0-9a-fA-F]+)|(0[0-7]*)|([1-9][0-9]*))")
_HEX_NAME = re.compile(r"\s*(?:0[xX](?=[0-9a-fA-F]))?([0-9a-fA-F]*)")


class JacdError(Exception):
    """A fatal condition of the daemon."""


class AddrFlag(enum.IntFlag):
    """Per-address bookkeeping flags."""

    NONE = 0
    USE = 0x01
    SEEN = 0x02


class _State(enum.Enum):
    INITIAL = 0
    REQ_SENT = 1
    REQ_PENDING = 2
    OPERATIONAL = 3


def _strtoul(text: str) -> tuple[int, int] | None:
    """Parse an unsigned number with C base-0 rules; return (value, end) or None."""
    match = _NUMBER.match(text)
    if match is None:
        return None
    if match.group(1) is not None:
        value = int(match.group(1), 16)
    elif match.group(2) is not None:
        value = int(match.group(2), 8)
    else:
        value = int(match.group(3))
    return value, match.end()


def _parse_name(text: str) -> int:
    digits = _HEX_NAME.match(text).group(1)
    if not digits:
        return 0
    return min(int(digits, 16), 0xFFFFFFFFFFFFFFFF)


def parse_range(text: str) -> list[int]:
    """Expand a range list such as '80,50-100' into the usable addresses it names.

    Raises ValueError on a malformed entry.
    """
    addresses: list[int] = []
    for token in re.split(r"[,;]", text):
        if not token:
            continue
        parsed = _strtoul(token)
        if parsed is None:
            raise ValueError(f"parsing range '{token}'")
        first, end = parsed
        last = first
        rest = token[end:]
        if rest.startswith("-"):
            tail = rest[1:]
            upper = _strtoul(tail)
            if upper is None:
                raise ValueError(f"parsing addr '{tail}'")
            last = max(upper[0], first)
        for address in range(first, last + 1):
            if address >= J1939_IDLE_ADDR:
                break
            addresses.append(address)
    return addresses


class AddressTable:
    """Names seen on the bus and the addresses this node may use."""

    def __init__(self, addresses=()) -> None:
        self.names = [0] * J1939_IDLE_ADDR
        self.flags = [AddrFlag.NONE] * J1939_IDLE_ADDR
        for address in addresses:
            self.flags[address] |= AddrFlag.USE

    def usable(self, sa: int) -> bool:
        """Tell whether ``sa`` lies within the configured ranges."""
        return sa < J1939_IDLE_ADDR and bool(self.flags[sa] & AddrFlag.USE)

    def lookup_name(self, name: int) -> int:
        """Return the address owned by ``name``, or J1939_IDLE_ADDR."""
        for address, owner in enumerate(self.names):
            if owner == name:
                return address
        return J1939_IDLE_ADDR

    def choose_new_sa(self, name: int, sa: int) -> int:
        """Pick the address to claim for ``name``, starting from ``sa``.

        Returns J1939_IDLE_ADDR when no address can be claimed.
        """
        if self.usable(sa):
            owner = self.names[sa]
            if not owner or owner == name or owner > name:
                return sa
        for address in range(J1939_IDLE_ADDR):
            if not self.flags[address] & AddrFlag.USE:
                continue
            owner = self.names[address]
            if not owner or owner == name:
                return address
        address = sa + 1
        for _ in range(J1939_IDLE_ADDR):
            if address >= J1939_IDLE_ADDR:
                address = 0
            if self.flags[address] & AddrFlag.USE and name < self.names[address]:
                return address
            address += 1
        return J1939_IDLE_ADDR

    def status_lines(self, current_sa: int) -> list[str]:
        """Describe every address that is usable or known on the bus."""
        lines = []
        for address in range(J1939_IDLE_ADDR):
            flags, owner = self.flags[address], self.names[address]
            if not flags and not owner:
                continue
            if address == current_sa:
                mark = "*"
            elif flags & AddrFlag.USE:
                mark = "+"
            else:
                mark = "-"
            lines.append(f"{address:02x}: {mark} " + (f"{owner:016x}" if owner else "-"))
        return lines


def save_cache(path, sa: int) -> None:
    """Store the source address ``sa`` in the cache file; no-op without a path."""
    if not path:
        return
    try:
        with open(path, "w", encoding="ascii") as handle:
            handle.write(f"# saved on {time.ctime()}\n\n\n0x{sa:02x}\n")
    except OSError as exc:
        raise JacdError(f"fopen {path}, w: {exc.strerror}") from exc


def restore_cache(path) -> int | None:
    """Return the source address stored in the cache file, or None."""
    if not path:
        return None
    try:
        with open(path, encoding="ascii", errors="replace") as handle:
            for line in handle:
                if line.startswith("#"):
                    continue
                parsed = _strtoul(line)
                if parsed is not None and parsed[0] <= J1939_IDLE_ADDR:
                    return parsed[0]
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise JacdError(f"fopen {path}, r: {exc.strerror}") from exc
    return None


def _format_addr(interface: str, name: int, pgn: int, addr: int) -> str:
    return f"{interface or '*'}:name={name:016x},pgn=0x{pgn:05x},addr=0x{addr:02x}"


class AddressClaimDaemon:
    """Claim and defend a J1939 source address for one node name."""

    def __init__(self, name: int, interface: str = DEFAULT_INTERFACE,
                 table: AddressTable | None = None, current_sa: int = J1939_IDLE_ADDR,
                 cache_path=None, verbose: int = 0, progname: str = "jacd") -> None:
        self.name = name
        self.interface = interface
        self.table = table if table is not None else AddressTable(parse_range(DEFAULT_RANGE))
        self.current_sa = current_sa
        self.last_sa = J1939_NO_ADDR
        self.cache_path = cache_path
        self.verbose = verbose
        self.progname = progname
        self._state = _State.INITIAL
        self._terminate = False
        self._dump = False
        self._alarm = False
        self._deadline: float | None = None
        self._sock: socket.socket | None = None
        self._sock_rx: socket.socket | None = None

    def _log(self, message: str) -> None:
        print(f"{self.progname}: {message}", file=sys.stderr)

    def _trace(self, message: str) -> None:
        if self.verbose:
            print(f"- {message}", file=sys.stderr)

    def _open_socket(self) -> socket.socket:
        self._trace("socket(PF_CAN, SOCK_DGRAM, CAN_J1939);")
        try:
            sock = socket.socket(socket.AF_CAN, socket.SOCK_DGRAM, CAN_J1939)
        except OSError as exc:
            raise JacdError(f"socket(j1939): {exc.strerror}") from exc
        try:
            device = self.interface.encode()
            self._trace(f"setsockopt(, SOL_SOCKET, SO_BINDTODEVICE, {self.interface}, {len(device)});")
            try:
                sock.setsockopt(socket.SOL_SOCKET, SO_BINDTODEVICE, device)
            except OSError as exc:
                raise JacdError(f"bindtodevice {self.interface}: {exc.strerror}") from exc
            self._trace(f"setsockopt(, SOL_CAN_J1939, SO_J1939_FILTER, <filter>, {len(_FILTERS)});")
            try:
                sock.setsockopt(SOL_CAN_J1939, SO_J1939_FILTER, _FILTERS)
            except OSError as exc:
                raise JacdError(f"setsockopt filter: {exc.strerror}") from exc
            self._trace("setsockopt(, SOL_SOCKET, SO_BROADCAST, 1, 4);")
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            except OSError as exc:
                raise JacdError(f"setsockopt set broadcast: {exc.strerror}") from exc
            address = (self.interface, self.name, J1939_NO_PGN, J1939_IDLE_ADDR)
            self._trace(f"bind(, {_format_addr(*address)});")
            try:
                sock.bind(address)
            except OSError as exc:
                raise JacdError(f"bind(): {exc.strerror}") from exc
        except JacdError:
            sock.close()
            raise
        return sock

    def _send(self, data: bytes, pgn: int, what: str) -> int:
        try:
            return self._sock.sendto(data, ("", 0, pgn, J1939_NO_ADDR))
        except OSError as exc:
            if exc.errno in (errno.EINTR, errno.ENOBUFS):
                return -1
            raise JacdError(f"{what}: {exc.strerror}") from exc

    def _repeat_address(self) -> int:
        self._trace(f"send(, {self.name}, 8, 0);")
        return self._send(self.name.to_bytes(8, "little"), J1939_PGN_ADDRESS_CLAIMED,
                          f"send address claim for 0x{self.last_sa:02x}")

    def _claim_address(self, sa: int) -> int:
        address = (self.interface, self.name, J1939_NO_PGN, sa)
        self._trace(f"bind(, {_format_addr(*address)});")
        try:
            self._sock.bind(address)
        except OSError as exc:
            raise JacdError(f"rebind with sa 0x{sa:02x}: {exc.strerror}") from exc
        self.last_sa = sa
        return self._repeat_address()

    def _request_addresses(self) -> int:
        self._trace("sendto(, { 0, 0xee, 0, }, 3, 0, <request>);")
        return self._send(bytes((0, 0xEE, 0)), J1939_PGN_REQUEST,
                          "send request for address claims")

    def _schedule(self, msec: int) -> None:
        self._alarm = False
        self._deadline = time.monotonic() + msec / 1000

    def _check_alarm(self) -> None:
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._deadline = None
            self._alarm = True

    def _claim_or_retry(self, sa: int) -> None:
        if self._claim_address(sa) < 0:
            self._schedule(50)

    def _on_signal(self, signum, _frame) -> None:
        if signum in (signal.SIGINT, signal.SIGTERM):
            self._terminate = True
        elif signum == signal.SIGUSR1:
            self._dump = True

    def _advance(self) -> None:
        if self._state is _State.INITIAL:
            if self._request_addresses() < 0:
                raise JacdError("could not sent initial request")
            self._state = _State.REQ_SENT
        elif self._state is _State.REQ_PENDING:
            if not self._alarm:
                return
            self._alarm = False
            sa = self.table.choose_new_sa(self.name, self.current_sa)
            if sa == J1939_IDLE_ADDR:
                raise JacdError("no free address to use")
            self._claim_or_retry(sa)
            self._state = _State.OPERATIONAL
        elif self._state is _State.OPERATIONAL and self._alarm:
            self._alarm = False
            if self._repeat_address() < 0:
                self._schedule(50)

    def _receive(self):
        timeout = POLL_INTERVAL
        if self._deadline is not None:
            timeout = min(timeout, max(self._deadline - time.monotonic(), 0.0))
        readable, _, _ = select.select([self._sock_rx], [], [], timeout)
        self._check_alarm()
        if not readable:
            return None
        try:
            return self._sock_rx.recvfrom(9)
        except OSError as exc:
            if exc.errno == errno.EINTR:
                return None
            raise JacdError(f"recvfrom(): {exc.strerror}") from exc

    def _process(self, data: bytes, name: int, pgn: int, sa: int) -> bool:
        """Handle one received message; return True when the daemon must stop."""
        if pgn == J1939_PGN_REQUEST:
            if len(data) < 3:
                return False
            requested = data[0] + (data[1] << 8) + ((data[2] & 0x03) << 16)
            if requested != J1939_PGN_ADDRESS_CLAIMED:
                return False
            if self._state is _State.REQ_SENT:
                if self.verbose:
                    self._log("request sent, pending for 1250 ms")
                self._schedule(1250)
                self._state = _State.REQ_PENDING
            elif self._state is _State.OPERATIONAL:
                self._claim_or_retry(self.current_sa)
        elif pgn == J1939_PGN_ADDRESS_CLAIMED:
            known = self.table.lookup_name(name)
            if sa >= J1939_IDLE_ADDR:
                if known < J1939_IDLE_ADDR:
                    self.table.names[known] = 0
                return False
            if known != sa and known < J1939_IDLE_ADDR:
                self.table.names[known] = 0
            self.table.names[sa] = name
            self.table.flags[sa] |= AddrFlag.SEEN
            if name == self.name:
                self.current_sa = sa
                if self.verbose:
                    self._log(f"claimed 0x{sa:02x}")
            elif sa == self.current_sa:
                if self.verbose:
                    self._log(f"address collision for 0x{sa:02x}")
                if self.name > name:
                    sa = self.table.choose_new_sa(self.name, sa)
                    if sa == J1939_IDLE_ADDR:
                        self._log("no address left")
                        self.current_sa = sa
                        return True
                self._claim_or_retry(sa)
        elif pgn == PGN_ADDRESS_COMMAND and len(data) >= 9:
            if int.from_bytes(data[:8], "little") == self.name:
                self._claim_or_retry(data[8])
        return False

    def run(self) -> int:
        """Claim an address and defend it until terminated; return the exit status."""
        handled = (signal.SIGTERM, signal.SIGINT, signal.SIGUSR1, signal.SIGUSR2)
        previous = {}
        try:
            self._sock = self._open_socket()
            self._sock_rx = self._open_socket()
            for signum in handled:
                previous[signum] = signal.signal(signum, self._on_signal)
            while not self._terminate:
                if self._dump:
                    self._dump = False
                    lines = self.table.status_lines(self.current_sa)
                    if lines:
                        sys.stdout.write("\n".join(lines) + "\n")
                    sys.stdout.flush()
                self._advance()
                packet = self._receive()
                if packet is None:
                    continue
                data, (_, name, pgn, sa) = packet
                if self._process(data, name, pgn, sa):
                    break
            if self.verbose:
                self._log("shutdown")
            self._claim_address(J1939_IDLE_ADDR)
            save_cache(self.cache_path, self.current_sa)
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)
            for sock in (self._sock, self._sock_rx):
                if sock is not None:
                    sock.close()
        return 0


class _Parser(argparse.ArgumentParser):
    def error(self, message):
        raise UsageError(message)


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = _Parser(prog="jacd", add_help=False)
    parser.add_argument("-v", "--verbose", action="count", default=0)
    parser.add_argument("-r", "--range", dest="ranges", default=DEFAULT_RANGE)
    parser.add_argument("-c", "--cache", dest="cache")
    parser.add_argument("-a", "--address", dest="address")
    parser.add_argument("-p", "--prefix", dest="prefix")
    parser.add_argument("-?", "--help", dest="help", action="store_true")
    parser.add_argument("name", nargs="?")
    parser.add_argument("interface", nargs="?")
    return parser


def main(argv=None) -> int:
    """Run the address claiming daemon; returns the exit status."""
    try:
        args = build_parser().parse_args(argv)
    except UsageError:
        sys.stderr.write(HELP)
        return 1
    if args.help:
        sys.stderr.write(HELP)
        return 1

    progname = f"jacd.{args.prefix}" if args.prefix is not None else "jacd"
    current_sa = J1939_IDLE_ADDR
    if args.address is not None:
        parsed = _strtoul(args.address)
        current_sa = (parsed[0] if parsed else 0) & 0xFF
    name = _parse_name(args.name) if args.name is not None else 0
    interface = args.interface if args.interface is not None else DEFAULT_INTERFACE

    try:
        cached = restore_cache(args.cache)
        if cached is not None:
            current_sa = cached
        try:
            addresses = parse_range(args.ranges)
        except ValueError as exc:
            raise JacdError(str(exc)) from exc
        if not addresses:
            raise JacdError("no addresses in range")
        table = AddressTable(addresses)
        if current_sa < J1939_IDLE_ADDR and not table.usable(current_sa):
            if args.verbose:
                print(f"{progname}: forget saved address 0x{current_sa:02x}", file=sys.stderr)
            current_sa = J1939_IDLE_ADDR
        if args.verbose:
            print(f"{progname}: ready for {interface}:{name:016x}", file=sys.stderr)
        if not interface or not name:
            raise JacdError("bad arguments")
        daemon = AddressClaimDaemon(
            name, interface, table, current_sa,
            cache_path=Path(args.cache) if args.cache else None,
            verbose=args.verbose, progname=progname,
        )
        return daemon.run()
    except JacdError as exc:
        print(f"{progname}: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())