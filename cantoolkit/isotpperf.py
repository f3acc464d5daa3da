"""Visualise the progress and throughput of ISO 15765-2 PDU transfers on CAN."""

from __future__ import annotations

import argparse
import contextlib
import select
import socket
import struct
import sys
import time

from cantoolkit.isotp import NO_CAN_ID, UsageError, parse_can_id, parse_hex_byte
from cantoolkit.isotpdump import (
    CAN_EFF_FLAG,
    CAN_EFF_MASK,
    CAN_MTU,
    CAN_RAW,
    CAN_RAW_FD_FRAMES,
    CAN_RAW_FILTER,
    CAN_RTR_FLAG,
    CAN_SFF_MASK,
    CANFD_MTU,
    SO_TIMESTAMP,
    SOL_CAN_RAW,
)

CANFD_BRS = 0x01
PERCENTRES = 2
NUMBAR = 100 // PERCENTRES
UINT32_MAX = 0xFFFFFFFF

_USAGE = """
Usage: {prg} [options] <CAN interface>
Options: -s <can_id> (source can_id. Use 8 digits for extended IDs)
         -d <can_id> (destination can_id. Use 8 digits for extended IDs)
         -x <addr>   (extended addressing mode)
         -X <addr>   (extended addressing mode (rx addr))

CAN IDs and addresses are given and expected in hexadecimal values.
"""


class _Parser(argparse.ArgumentParser):
    def error(self, message):
        raise UsageError(message)


def _print_usage() -> None:
    print(_USAGE.format(prg="isotpperf"), file=sys.stderr)


def digits(value: int) -> int:
    """Return the number of decimal digits of a non-negative value."""
    count = 1
    while value > 9:
        count += 1
        value //= 10
    return count


class PerfTracker:
    """Follow ISO-TP PDU transfers frame by frame and render progress text."""

    def __init__(self, src: int, dst: int, extaddr: int | None = None,
                 rx_extaddr: int | None = None) -> None:
        self.src = src
        self.dst = dst
        self.extaddr = extaddr
        self.rx_extaddr = rx_extaddr
        self.fflen = 0
        self.rcvlen = 0
        self.fflen_digits = 0
        self.canfd_on = True
        self.last_sn = 0
        self.bs = 0
        self.stmin = 0
        self.brs = False
        self.ll_dl = 0
        self._start = 0

    def _begin(self, ll_dl: int, is_fd: bool, flags: int, micros: int) -> None:
        self.fflen_digits = digits(self.fflen)
        self.brs = bool(flags & CANFD_BRS)
        self.ll_dl = ll_dl
        self._start = micros
        self.canfd_on = bool(is_fd)

    def _reset(self) -> None:
        self.fflen = 0
        self.rcvlen = 0

    def feed(self, can_id, data, is_fd=False, flags=0, stamp=0.0) -> str:
        """Process one received frame; return the text to write (may be empty)."""
        data = bytes(data)
        length = len(data)
        buf = data.ljust(64, b"\0")
        ext = 1 if self.extaddr is not None else 0
        rx_ext = 1 if self.rx_extaddr is not None else 0

        if self.rcvlen and self.canfd_on != bool(is_fd):
            return ""
        if ext and self.extaddr != buf[0]:
            return ""
        if can_id == self.dst:
            if rx_ext and buf[0] != self.rx_extaddr:
                return ""
            if buf[rx_ext] & 0xF0 != 0x30:
                return ""
            self.bs = buf[rx_ext + 1]
            self.stmin = buf[rx_ext + 2]

        micros = round(stamp * 1_000_000)
        n_pci = buf[ext]
        kind = n_pci & 0xF0
        if kind == 0x00:
            if n_pci & 0x0F:
                self.fflen = n_pci & 0x0F
                datidx = ext + 1
            else:
                self.fflen = buf[ext + 1]
                datidx = ext + 2
            self.rcvlen = self.fflen
            if length < self.rcvlen + datidx:
                self._reset()
            self._begin(max(length, 8), is_fd, flags, micros)
        elif kind == 0x10:
            fflen = ((n_pci & 0x0F) << 8) + buf[ext + 1]
            if fflen:
                datidx = ext + 2
            else:
                fflen = int.from_bytes(buf[ext + 2:ext + 6], "big")
                datidx = ext + 6
            if fflen >= UINT32_MAX // 1000:
                self._reset()
                return f"fflen {fflen} is more than ~4.2 MB - ignoring PDU\n"
            self.fflen = fflen
            self.rcvlen = max(length - datidx, 0)
            self.last_sn = 0
            self._begin(length, is_fd, flags, micros)
        elif kind == 0x20 and self.rcvlen:
            sn = n_pci & 0x0F
            if sn == (self.last_sn + 1) & 0x0F:
                self.last_sn = sn
                self.rcvlen += max(length - (ext + 1), 0)

        parts: list[str] = []
        if self.rcvlen:
            self.rcvlen = min(self.rcvlen, self.fflen)
        if self.rcvlen:
            percent = self.rcvlen * 100 // self.fflen
            filled = min(percent, 100) // PERCENTRES
            bar = "X" * filled + "." * (NUMBAR - filled)
            parts.append(
                f"\r {percent:3d}% |{bar}| "
                f"{self.rcvlen:>{self.fflen_digits}}/{self.fflen} "
            )

        if self.rcvlen and self.rcvlen >= self.fflen:
            parts.append(self._summary(micros))
            self._reset()
        return "".join(parts)

    def _summary(self, micros: int) -> str:
        mode = "CAN-FD" if self.canfd_on else "CAN2.0"
        text = f"\r{mode} {self.ll_dl:02d}{'*' if self.brs else ' '} (BS:{self.bs:2d} # "
        if self.stmin < 0x80:
            text += f"STmin:{self.stmin:3d} msec)"
        elif 0xF0 < self.stmin < 0xFA:
            text += f"STmin:{(self.stmin & 0x0F) * 100:3d} usec)"
        else:
            text += "STmin: invalid   )"
        text += f" : {self.fflen} byte in "
        diff = max(micros - self._start, 0)
        sec, usec = divmod(diff, 1_000_000)
        millis = sec * 1000 + usec // 1000
        if millis:
            text += f"{sec}.{usec:06d}s => {self.fflen * 1000 // millis} byte/s"
        else:
            text += "(no time available)     "
        return text + "\n"

    def timeout(self) -> str | None:
        """Abort a transfer in progress; return the notice, or None when idle."""
        if not self.rcvlen:
            return None
        self._reset()
        return "\r" + " (transmission timed out)".ljust(78)


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = _Parser(prog="isotpperf", add_help=False)
    parser.add_argument("-s", dest="source")
    parser.add_argument("-d", dest="dest")
    parser.add_argument("-x", dest="ext")
    parser.add_argument("-X", dest="rx_ext")
    parser.add_argument("-?", dest="help", action="store_true")
    parser.add_argument("interfaces", nargs="*")
    return parser


def _single_id_filter(can_id: int) -> bytes:
    if can_id & CAN_EFF_FLAG:
        return struct.pack("=II", can_id & (CAN_EFF_MASK | CAN_EFF_FLAG),
                           CAN_EFF_MASK | CAN_EFF_FLAG | CAN_RTR_FLAG)
    return struct.pack("=II", can_id & CAN_SFF_MASK,
                       CAN_SFF_MASK | CAN_EFF_FLAG | CAN_RTR_FLAG)


def _stamp_from(ancdata) -> float:
    for level, kind, payload in ancdata:
        if level == socket.SOL_SOCKET and kind == SO_TIMESTAMP and len(payload) >= 16:
            sec, usec = struct.unpack_from("=qq", payload)
            return sec + usec / 1_000_000
    return time.time()


def main(argv=None) -> int:
    """Run the performance display; returns the exit status."""
    try:
        args = build_parser().parse_args(argv)
    except UsageError as exc:
        print(f"isotpperf: {exc}", file=sys.stderr)
        _print_usage()
        return 0
    if args.help:
        _print_usage()
        return 0

    src = parse_can_id(args.source) if args.source is not None else NO_CAN_ID
    dst = parse_can_id(args.dest) if args.dest is not None else NO_CAN_ID
    if len(args.interfaces) != 1 or NO_CAN_ID in (src, dst):
        _print_usage()
        return 0

    tracker = PerfTracker(
        src, dst,
        extaddr=parse_hex_byte(args.ext) if args.ext is not None else None,
        rx_extaddr=parse_hex_byte(args.rx_ext) if args.rx_ext is not None else None,
    )

    try:
        sock = socket.socket(socket.AF_CAN, socket.SOCK_RAW, CAN_RAW)
    except OSError as exc:
        print(f"socket: {exc}", file=sys.stderr)
        return 1

    with sock:
        with contextlib.suppress(OSError):
            sock.setsockopt(SOL_CAN_RAW, CAN_RAW_FD_FRAMES, 1)
        with contextlib.suppress(OSError):
            sock.setsockopt(SOL_CAN_RAW, CAN_RAW_FILTER,
                            _single_id_filter(src) + _single_id_filter(dst))
        with contextlib.suppress(OSError):
            sock.setsockopt(socket.SOL_SOCKET, SO_TIMESTAMP, 1)
        try:
            sock.bind((args.interfaces[0],))
        except OSError as exc:
            print(f"bind: {exc}", file=sys.stderr)
            return 1

        try:
            while True:
                readable, _, _ = select.select([sock], [], [], 1.0)
                if not readable:
                    notice = tracker.timeout()
                    if notice:
                        sys.stdout.write(notice)
                        sys.stdout.flush()
                    continue
                try:
                    raw, ancdata, _, _ = sock.recvmsg(CANFD_MTU, socket.CMSG_SPACE(16))
                except OSError as exc:
                    print(f"read: {exc}", file=sys.stderr)
                    return 1
                if len(raw) not in (CAN_MTU, CANFD_MTU):
                    print(f"read: incomplete CAN frame {CANFD_MTU} {len(raw)}", file=sys.stderr)
                    return 1
                can_id, length, flags = struct.unpack_from("=IBB", raw)
                data = raw[8:8 + min(length, len(raw) - 8)]
                text = tracker.feed(can_id, data, len(raw) == CANFD_MTU, flags,
                                    _stamp_from(ancdata))
                sys.stdout.write(text)
                sys.stdout.flush()
        except KeyboardInterrupt:
            return 0


if __name__ == "__main__":
    sys.exit(main())