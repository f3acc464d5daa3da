"""Send one ISO-TP PDU read as ASCII hex from stdin or generated with a fixed length."""

from __future__ import annotations

import argparse
import re
import sys

from cantoolkit.isotp import (
    NO_CAN_ID,
    IsotpFlag,
    IsotpOptions,
    LinkLayerOptions,
    UsageError,
    open_isotp_socket,
    parse_can_id,
    parse_link_layer,
)

BUFSIZE = 5000

_USAGE = """
Usage: {prg} [options] <CAN interface>
Options: -s <can_id>  (source can_id. Use 8 digits for extended IDs)
         -d <can_id>  (destination can_id. Use 8 digits for extended IDs)
         -x <addr>[:<rxaddr>] (extended addressing / opt. separate rxaddr)
         -p [tx]:[rx] (set and enable tx/rx padding bytes)
         -P <mode>    (check rx padding for (l)ength (c)ontent (a)ll)
         -t <time ns> (frame transmit time (N_As) in nanosecs)
         -f <time ns> (ignore FC and force local tx stmin value in nanosecs)
         -D <len>     (send a fixed PDU with len bytes - no STDIN data)
         -L <mtu>:<tx_dl>:<tx_flags> (link layer options for CAN FD)

CAN IDs and addresses are given and expected in hexadecimal values.
The pdu data is expected on STDIN in space separated ASCII hex values.
"""

_HEX_BYTE = re.compile(r"\s*([+-]?)(?:0[xX](?=[0-9a-fA-F]))?([0-9a-fA-F]+)")
_DECIMAL = re.compile(r"\s*([+-]?)(\d*)")


class _Parser(argparse.ArgumentParser):
    def error(self, message):
        raise UsageError(message)


def _parse_unsigned(text: str) -> int:
    match = _DECIMAL.match(text)
    if not match.group(2):
        return 0
    value = int(match.group(2))
    return -value if match.group(1) == "-" else value


def _usage(prg: str = "isotpsend") -> str:
    return _USAGE.format(prg=prg)


def parse_hex_bytes(text: str, limit: int) -> bytes:
    """Read whitespace separated hex values until the first invalid one or ``limit``."""
    result = bytearray()
    pos = 0
    while len(result) < limit:
        match = _HEX_BYTE.match(text, pos)
        if match is None:
            break
        value = int(match.group(2), 16)
        if match.group(1) == "-":
            value = -value
        result.append(value & 0xFF)
        pos = match.end()
    return bytes(result)


def fixed_pdu(length: int) -> bytes:
    """Build the generated test PDU of ``length`` bytes (counting 1..255)."""
    if length < 1 or length >= BUFSIZE:
        raise ValueError(f"PDU length must be between 1 and {BUFSIZE - 1}")
    return bytes(((index % 0xFF) + 1) & 0xFF for index in range(length))


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = _Parser(prog="isotpsend", add_help=False)
    parser.add_argument("-s", dest="source")
    parser.add_argument("-d", dest="dest")
    parser.add_argument("-x", dest="ext", action="append", default=[])
    parser.add_argument("-p", dest="padding", action="append", default=[])
    parser.add_argument("-P", dest="padding_check", action="append", default=[])
    parser.add_argument("-t", dest="txtime")
    parser.add_argument("-f", dest="force_stmin")
    parser.add_argument("-D", dest="datalen")
    parser.add_argument("-L", dest="link_layer")
    parser.add_argument("-?", dest="help", action="store_true")
    parser.add_argument("interfaces", nargs="*")
    return parser


def main(argv=None) -> int:
    """Run the sender; returns the exit status."""
    try:
        args = build_parser().parse_args(argv)
    except UsageError as exc:
        print(f"isotpsend: {exc}", file=sys.stderr)
        print(_usage(), file=sys.stderr)
        return 0
    if args.help:
        print(_usage(), file=sys.stderr)
        return 0

    options = IsotpOptions()
    ll_options = LinkLayerOptions()
    try:
        for value in args.ext:
            options.set_extended_address(value)
        for value in args.padding:
            options.set_padding(value)
        for value in args.padding_check:
            options.set_padding_check(value)
        if args.link_layer is not None:
            ll_options = parse_link_layer(args.link_layer)
    except UsageError as exc:
        print(exc)
        print(_usage(), file=sys.stderr)
        return 0

    payload = None
    if args.datalen is not None:
        try:
            payload = fixed_pdu(_parse_unsigned(args.datalen))
        except ValueError:
            print(_usage(), file=sys.stderr)
            return 0

    tx_id = parse_can_id(args.source) if args.source is not None else NO_CAN_ID
    rx_id = parse_can_id(args.dest) if args.dest is not None else NO_CAN_ID
    if len(args.interfaces) != 1 or NO_CAN_ID in (tx_id, rx_id):
        print(_usage(), file=sys.stderr)
        return 1

    if args.txtime is not None:
        options.frame_txtime = _parse_unsigned(args.txtime) & 0xFFFFFFFF
    force_tx_stmin = 0
    if args.force_stmin is not None:
        options.flags |= IsotpFlag.FORCE_TXSTMIN
        force_tx_stmin = _parse_unsigned(args.force_stmin) & 0xFFFFFFFF

    try:
        sock = open_isotp_socket(
            args.interfaces[0], tx_id, rx_id, options,
            ll_options=ll_options, force_tx_stmin=force_tx_stmin,
        )
    except OSError as exc:
        print(f"isotpsend: {exc}", file=sys.stderr)
        return 1

    with sock:
        if payload is None:
            payload = parse_hex_bytes(sys.stdin.read(), BUFSIZE)
        try:
            written = sock.send(payload)
        except OSError as exc:
            print(f"write: {exc}", file=sys.stderr)
            return 1
        if written != len(payload):
            print(f"wrote only {written} from {len(payload)} byte", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())