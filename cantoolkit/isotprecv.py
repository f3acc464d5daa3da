"""Receive ISO-TP PDUs and write them as ASCII hex to stdout."""

from __future__ import annotations

import argparse
import re
import sys

from cantoolkit.isotp import (
    NO_CAN_ID,
    FlowControlOptions,
    IsotpFlag,
    IsotpOptions,
    LinkLayerOptions,
    UsageError,
    open_isotp_socket,
    parse_can_id,
    parse_hex_byte,
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
         -b <bs>      (blocksize. 0 = off)
         -m <val>     (STmin in ms/ns. See spec.)
         -f <time ns> (force rx stmin value in nanosecs)
         -w <num>     (max. wait frame transmissions.)
         -l           (loop: do not exit after pdu reception.)
         -L <mtu>:<tx_dl>:<tx_flags> (link layer options for CAN FD)

CAN IDs and addresses are given and expected in hexadecimal values.
The pdu data is written on STDOUT in space separated ASCII hex values.
"""

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


def _usage(prg: str = "isotprecv") -> str:
    return _USAGE.format(prg=prg)


def format_pdu(data: bytes) -> str:
    """Render PDU bytes as space separated upper case hex."""
    return "".join(f"{byte:02X} " for byte in data)


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = _Parser(prog="isotprecv", add_help=False)
    parser.add_argument("-s", dest="source")
    parser.add_argument("-d", dest="dest")
    parser.add_argument("-x", dest="ext", action="append", default=[])
    parser.add_argument("-p", dest="padding", action="append", default=[])
    parser.add_argument("-P", dest="padding_check", action="append", default=[])
    parser.add_argument("-b", dest="bs")
    parser.add_argument("-m", dest="stmin")
    parser.add_argument("-w", dest="wftmax")
    parser.add_argument("-f", dest="force_stmin")
    parser.add_argument("-l", dest="loop", action="store_true")
    parser.add_argument("-L", dest="link_layer")
    parser.add_argument("-?", dest="help", action="store_true")
    parser.add_argument("interfaces", nargs="*")
    return parser


def main(argv=None) -> int:
    """Run the receiver; returns the exit status."""
    try:
        args = build_parser().parse_args(argv)
    except UsageError as exc:
        print(f"isotprecv: {exc}", file=sys.stderr)
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

    tx_id = parse_can_id(args.source) if args.source is not None else NO_CAN_ID
    rx_id = parse_can_id(args.dest) if args.dest is not None else NO_CAN_ID
    if len(args.interfaces) != 1 or NO_CAN_ID in (tx_id, rx_id):
        print(_usage(), file=sys.stderr)
        return 1

    fc_options = FlowControlOptions(
        bs=parse_hex_byte(args.bs) if args.bs is not None else 0,
        stmin=parse_hex_byte(args.stmin) if args.stmin is not None else 0,
        wftmax=parse_hex_byte(args.wftmax) if args.wftmax is not None else 0,
    )
    force_rx_stmin = 0
    if args.force_stmin is not None:
        options.flags |= IsotpFlag.FORCE_RXSTMIN
        force_rx_stmin = _parse_unsigned(args.force_stmin) & 0xFFFFFFFF

    try:
        sock = open_isotp_socket(
            args.interfaces[0], tx_id, rx_id, options,
            fc_options=fc_options, ll_options=ll_options,
            force_rx_stmin=force_rx_stmin,
        )
    except OSError as exc:
        print(f"isotprecv: {exc}", file=sys.stderr)
        return 1

    with sock:
        while True:
            try:
                data = sock.recv(BUFSIZE)
            except OSError as exc:
                print(f"read: {exc}", file=sys.stderr)
                return 1
            if 0 < len(data) < BUFSIZE:
                print(format_pdu(data))
            else:
                print()
            sys.stdout.flush()
            if not args.loop:
                return 0


if __name__ == "__main__":
    sys.exit(main())