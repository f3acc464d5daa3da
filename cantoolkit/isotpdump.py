"""Dump CAN frames of an ISO 15765-2 conversation and explain their protocol content."""

from __future__ import annotations

import argparse
import contextlib
import socket
import struct
import sys
import time
from dataclasses import dataclass, field

from cantoolkit.isotp import NO_CAN_ID, UsageError, parse_can_id, parse_hex_byte
from cantoolkit.terminal import ATTRESET, FGBLUE, FGRED

CAN_EFF_FLAG = 0x80000000
CAN_RTR_FLAG = 0x40000000
CAN_SFF_MASK = 0x000007FF
CAN_EFF_MASK = 0x1FFFFFFF

CAN_MTU = 16
CANFD_MTU = 72
CAN_RAW = 1
SOL_CAN_RAW = 101
CAN_RAW_FILTER = 1
CAN_RAW_FD_FRAMES = 5
SO_TIMESTAMP = 29

FC_INFO = ("CTS", "WT", "OVFLW", "reserved")

_USAGE = """
Usage: {prg} [options] <CAN interface>
Options: -s <can_id> (source can_id. Use 8 digits for extended IDs)
         -d <can_id> (destination can_id. Use 8 digits for extended IDs)
         -x <addr>   (extended addressing mode. Use 'any' for all addresses)
         -X <addr>   (extended addressing mode (rx addr). Use 'any' for all)
         -c          (color mode)
         -a          (print data also in ASCII-chars)
         -t <type>   (timestamp: (a)bsolute/(d)elta/(z)ero/(A)bsolute w date)
         -u          (print uds messages)

CAN IDs and addresses are given and expected in hexadecimal values.

UDS output contains a flag which provides information about the type of the message.
Flags: [SRQ] = Service Request
       [PSR] = Positive Service Response
       [NRC] = Negative Response Code
       [???] = Unknown (not specified)
"""

_SERVICES = {
    0x10: "DiagnosticSessionControl",
    0x11: "ECUReset",
    0x14: "ClearDiagnosticInformation",
    0x19: "ReadDTCInformation",
    0x22: "ReadDataByIdentifier",
    0x23: "ReadMemoryByAddress",
    0x24: "ReadScalingDataByIdentifier",
    0x27: "SecurityAccess",
    0x28: "CommunicationControl",
    0x2A: "ReadDataByPeriodicIdentifier",
    0x2C: "DynamicallyDefineDataIdentifier",
    0x2E: "WriteDataByIdentifier",
    0x2F: "InputOutputControlByIdentifier",
    0x31: "RoutineControl",
    0x34: "RequestDownload",
    0x35: "RequestUpload",
    0x36: "TransferData",
    0x37: "RequestTransferExit",
    0x38: "RequestFileTransfer",
    0x3D: "WriteMemoryByAddress",
    0x3E: "TesterPresent",
    0x83: "AccessTimingParameter",
    0x84: "SecuredDataTransmision",
    0x85: "ControlDTCSetting",
    0x86: "ResponseOnEvent",
    0x87: "LinkControl",
}

_NEGATIVE_RESPONSES = {
    0x00: "positiveResponse",
    0x10: "generalReject",
    0x11: "serviceNotSupported",
    0x12: "sub-functionNotSupported",
    0x13: "incorrectMessageLengthOrInvalidFormat",
    0x14: "responseTooLong",
    0x21: "busyRepeatRequest",
    0x22: "conditionsNotCorrect",
    0x24: "requestSequenceError",
    0x25: "noResponseFromSubnetComponent",
    0x26: "FailurePreventsExecutionOfRequestedAction",
    0x31: "requestOutOfRange",
    0x33: "securityAccessDenied",
    0x35: "invalidKey",
    0x36: "exceedNumberOfAttempts",
    0x37: "requiredTimeDelayNotExpired",
    0x70: "uploadDownloadNotAccepted",
    0x71: "transferDataSuspended",
    0x72: "generalProgrammingFailure",
    0x73: "wrongBlockSequenceCounter",
    0x78: "requestCorrectlyReceived-ResponsePending",
    0x7E: "sub-functionNotSupportedInActiveSession",
    0x7F: "serviceNotSupportedInActiveSession",
    0x81: "rpmTooHigh",
    0x82: "rpmTooLow",
    0x83: "engineIsRunning",
    0x84: "engineIsNotRunning",
    0x85: "engineRunTimeTooLow",
    0x86: "temperatureTooHigh",
    0x87: "temperatureTooLow",
    0x88: "vehicleSpeedTooHigh",
    0x89: "vehicleSpeedTooLow",
    0x8A: "throttle/PedalTooHigh",
    0x8B: "throttle/PedalTooLow",
    0x8C: "transmissionRangeNotInNeutral",
    0x8D: "transmissionRangeNotInGear",
    0x8F: "brakeSwitch(es)NotClosed (Brake Pedal not pressed or not applied)",
    0x90: "shifterLeverNotInPark",
    0x91: "torqueConverterClutchLocked",
    0x92: "voltageTooHigh",
    0x93: "voltageTooLow",
}


class _Parser(argparse.ArgumentParser):
    def error(self, message):
        raise UsageError(message)


def _print_usage() -> None:
    print(_USAGE.format(prg="isotpdump"), file=sys.stderr)


def _negative_response(nrc: int) -> str:
    name = _NEGATIVE_RESPONSES.get(nrc)
    if name is not None:
        return name
    if 0x37 < nrc < 0x50:
        return "reservedByExtendedDataLinkSecurityDocument"
    if 0x93 < nrc < 0xF0:
        return "reservedForSpecificConditionsNotCorrect"
    if 0xEF < nrc < 0xFE:
        return "vehicleManufacturerSpecificConditionsNotCorrect"
    return "ISOSAEReserved"


def uds_description(service: int, nrc: int) -> str:
    """Describe a UDS message by its flag and service (or negative response) name."""
    flag = "[???]"
    if 0x50 <= service <= 0x7E or 0xC3 <= service <= 0xC8:
        flag = "[PSR]"
        service -= 0x40
    elif 0x10 <= service <= 0x3E or 0x83 <= service <= 0x88 or 0xBA <= service <= 0xBE:
        flag = "[SRQ]"

    if service == 0x7F:
        return f"[NRC] {_negative_response(nrc)}"
    return f"{flag} {_SERVICES.get(service, 'Unknown')}"


def _pad(width: int, text: str) -> str:
    """Pad like printf's '%*s': a negative width justifies to the left."""
    return text.rjust(width) if width >= 0 else text.ljust(-width)


class TimestampFormatter:
    """Render frame timestamps: (a)bsolute, (A)bsolute with date, (d)elta or (z)ero based."""

    MODES = ("a", "A", "d", "z")

    def __init__(self, mode: str) -> None:
        if mode not in self.MODES:
            raise ValueError(f"unknown timestamp mode '{mode[:1]}'")
        self.mode = mode
        self._last: int | None = None

    def format(self, stamp: float) -> str:
        """Return the timestamp text for ``stamp`` seconds, followed by a space."""
        micros = round(stamp * 1_000_000)
        sec, usec = divmod(micros, 1_000_000)
        if self.mode == "a":
            return f"({sec}.{usec:06d}) "
        if self.mode == "A":
            text = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(sec))
            return f"({text}.{usec:06d}) "
        if self._last is None:
            self._last = micros
        diff = max(micros - self._last, 0)
        if self.mode == "d":
            self._last = micros
        dsec, dusec = divmod(diff, 1_000_000)
        return f"({dsec}.{dusec:06d}) "


@dataclass
class DumpFormatter:
    """Explain the ISO-TP protocol content of CAN frames, one line per frame."""

    interface: str
    src: int
    dst: int
    ext: bool = False
    extaddr: int = 0
    extany: bool = False
    rx_ext: bool = False
    rx_extaddr: int = 0
    rx_extany: bool = False
    color: bool = False
    asc: bool = False
    uds: bool = False
    timestamp: TimestampFormatter | None = None
    _is_ff: bool = field(default=False, init=False, repr=False)

    def format_frame(self, can_id, data, is_fd=False, stamp=None):
        """Return the dump line of a frame, or None when addressing filters it out."""
        data = bytes(data)
        length = len(data)
        buf = data.ljust(64, b"\0")
        ext = 1 if self.ext else 0

        if can_id == self.src and self.ext and not self.extany and self.extaddr != buf[0]:
            return None
        if can_id == self.dst and self.rx_ext and not self.rx_extany and self.rx_extaddr != buf[0]:
            return None

        parts: list[str] = []
        if self.color:
            parts.append(FGRED if can_id == self.src else FGBLUE)
        if self.timestamp is not None and stamp is not None:
            parts.append(self.timestamp.format(stamp))

        if can_id & CAN_EFF_FLAG:
            parts.append(f" {self.interface}  {can_id & CAN_EFF_MASK:8X}")
        else:
            parts.append(f" {self.interface}  {can_id & CAN_SFF_MASK:3X}")
        if self.ext:
            parts.append(f"{{{buf[0]:02X}}}")
        parts.append(f" [{length:02d}]  " if is_fd else f"  [{length}]  ")

        datidx = 0
        n_pci = buf[ext]
        kind = n_pci & 0xF0
        if kind == 0x00:
            self._is_ff = True
            if n_pci & 0x0F:
                parts.append(f"[SF] ln: {n_pci & 0x0F:<4d} data:")
                datidx = ext + 1
            else:
                parts.append(f"[SF] ln: {buf[ext + 1]:<4d} data:")
                datidx = ext + 2
        elif kind == 0x10:
            self._is_ff = True
            fflen = ((n_pci & 0x0F) << 8) + buf[ext + 1]
            if fflen:
                datidx = ext + 2
            else:
                fflen = int.from_bytes(buf[ext + 2:ext + 6], "big")
                datidx = ext + 6
            parts.append(f"[FF] ln: {fflen:<4d} data:")
        elif kind == 0x20:
            parts.append(f"[CF] sn: {n_pci & 0x0F:X}    data:")
            datidx = ext + 1
        elif kind == 0x30:
            parts.append(self._flow_control(buf, ext, n_pci & 0x0F))
        else:
            parts.append("[??]")

        if datidx and length > datidx:
            payload = data[datidx:]
            parts.append(" ")
            parts.append("".join(f"{byte:02X} " for byte in payload))
            spare = (7 - ext) - (length - datidx)
            if self.asc:
                parts.append(_pad(spare * 3 + 5, "-  '"))
                parts.append("".join(chr(b) if 0x1F < b < 0x7F else "." for b in payload))
                parts.append("'")
            if self.uds and self._is_ff:
                offset = 1 if self.asc else 3
                parts.append(_pad(spare * offset + 3, " - "))
                parts.append(uds_description(buf[datidx], buf[datidx + 2]))
                self._is_ff = False

        if self.color:
            parts.append(ATTRESET)
        return "".join(parts)

    @staticmethod
    def _flow_control(buf: bytes, ext: int, status: int) -> str:
        text = f"[FC] FC: {status} = {FC_INFO[min(status, 3)]} # "
        bs = buf[ext + 1]
        text += f"BS: {bs} {'' if bs else '= off '}# "
        stmin = buf[ext + 2]
        text += f"STmin: 0x{stmin:02X} = "
        if stmin < 0x80:
            text += f"{stmin} ms"
        elif 0xF0 < stmin < 0xFA:
            text += f"{(stmin & 0x0F) * 100} us"
        else:
            text += "reserved"
        return text


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = _Parser(prog="isotpdump", add_help=False)
    parser.add_argument("-s", dest="source")
    parser.add_argument("-d", dest="dest")
    parser.add_argument("-a", dest="asc", action="store_true")
    parser.add_argument("-x", dest="ext")
    parser.add_argument("-X", dest="rx_ext")
    parser.add_argument("-c", dest="color", action="store_true")
    parser.add_argument("-t", dest="timestamp")
    parser.add_argument("-u", dest="uds", action="store_true")
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
    """Run the dump; returns the exit status."""
    try:
        args = build_parser().parse_args(argv)
    except UsageError as exc:
        print(f"isotpdump: {exc}", file=sys.stderr)
        _print_usage()
        return 0
    if args.help:
        _print_usage()
        return 0

    timestamp = None
    if args.timestamp is not None:
        try:
            timestamp = TimestampFormatter(args.timestamp[:1])
        except ValueError:
            print(f"isotpdump: unknown timestamp mode '{args.timestamp[:1]}' - ignored")

    ext = args.ext is not None
    extany = ext and args.ext.startswith("any")
    rx_ext = args.rx_ext is not None
    rx_extany = rx_ext and args.rx_ext.startswith("any")

    if rx_ext and not ext:
        _print_usage()
        return 0

    src = parse_can_id(args.source) if args.source is not None else NO_CAN_ID
    dst = parse_can_id(args.dest) if args.dest is not None else NO_CAN_ID
    if len(args.interfaces) != 1 or NO_CAN_ID in (src, dst):
        _print_usage()
        return 0
    interface = args.interfaces[0]

    formatter = DumpFormatter(
        interface=interface, src=src, dst=dst,
        ext=ext, extaddr=parse_hex_byte(args.ext) if ext and not extany else 0, extany=extany,
        rx_ext=rx_ext,
        rx_extaddr=parse_hex_byte(args.rx_ext) if rx_ext and not rx_extany else 0,
        rx_extany=rx_extany,
        color=args.color, asc=args.asc, uds=args.uds, timestamp=timestamp,
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
        if timestamp is not None:
            with contextlib.suppress(OSError):
                sock.setsockopt(socket.SOL_SOCKET, SO_TIMESTAMP, 1)
        try:
            sock.bind((interface,))
        except OSError as exc:
            print(f"bind: {exc}", file=sys.stderr)
            return 1

        try:
            while True:
                try:
                    raw, ancdata, _, _ = sock.recvmsg(CANFD_MTU, socket.CMSG_SPACE(16))
                except OSError as exc:
                    print(f"read: {exc}", file=sys.stderr)
                    return 1
                if len(raw) not in (CAN_MTU, CANFD_MTU):
                    print(f"read: incomplete CAN frame {CANFD_MTU} {len(raw)}", file=sys.stderr)
                    return 1
                can_id, length = struct.unpack_from("=IB", raw)
                data = raw[8:8 + min(length, len(raw) - 8)]
                stamp = _stamp_from(ancdata) if timestamp is not None else None
                line = formatter.format_frame(can_id, data, len(raw) == CANFD_MTU, stamp)
                if line is not None:
                    print(line, flush=True)
        except KeyboardInterrupt:
            return 0


if __name__ == "__main__":
    sys.exit(main())