"""TCP/IP server bridging ASCII hex messages to ISO-TP PDUs on CAN.

Messages on the TCP side have the form ``<[data]+>``, e.g. ``<1122334455667788>``
for an eight byte PDU.
"""

from __future__ import annotations

import argparse
import contextlib
import re
import select
import socket
import sys
import threading
import time

from cantoolkit.isotp import (
    NO_CAN_ID,
    FlowControlOptions,
    IsotpOptions,
    LinkLayerOptions,
    UsageError,
    open_isotp_socket,
    parse_can_id,
    parse_hex_byte,
    parse_link_layer,
)

MAX_PDU_LENGTH = 6000

_USAGE = """
Usage: {prg} -l <port> -s <can_id> -d <can_id> [options] <CAN interface>
Options: (* = mandatory)

ip addressing:
 *       -l <port>    (local port for the server)

isotp addressing:
 *       -s <can_id>  (source can_id. Use 8 digits for extended IDs)
 *       -d <can_id>  (destination can_id. Use 8 digits for extended IDs)
         -x <addr>[:<rxaddr>] (extended addressing / opt. separate rxaddr)
         -L <mtu>:<tx_dl>:<tx_flags> (link layer options for CAN FD)

padding:
         -p [tx]:[rx] (set and enable tx/rx padding bytes)
         -P <mode>    (check rx padding for (l)ength (c)ontent (a)ll)

rx path: (config, which is sent to the sender / data source)
         -b <bs>      (blocksize. 0 = off)
         -m <val>     (STmin in ms/ns. See spec.)
         -w <num>     (max. wait frame transmissions)

tx path: (config, which changes local tx settings)
         -t <time ns> (transmit time in nanosecs)

All values except for '-l' and '-t' are expected in hexadecimal values.
"""

_DECIMAL = re.compile(r"\s*([+-]?)(\d*)")
_PAIR = re.compile(r"\s*(?:([+-])([0-9a-fA-F])|([0-9a-fA-F]{1,2}))")


class _Parser(argparse.ArgumentParser):
    def error(self, message):
        raise UsageError(message)


def _parse_decimal(text: str) -> int:
    match = _DECIMAL.match(text)
    if not match.group(2):
        return 0
    value = int(match.group(2))
    return -value if match.group(1) == "-" else value


def _usage(prg: str = "isotpserver") -> str:
    return _USAGE.format(prg=prg)


def encode_pdu(data: bytes) -> str:
    """Render a PDU as the TCP message ``<HEX>`` followed by a newline."""
    return "<" + data.hex().upper() + ">\n"


def decode_hex(text: str) -> bytes:
    """Decode ``len(text) // 2`` bytes, each scanned from its two character slot.

    Raises ValueError when a slot does not start with a hex value.
    """
    result = bytearray()
    for pos in range(0, (len(text) // 2) * 2, 2):
        match = _PAIR.match(text, pos)
        if match is None:
            raise ValueError(f"invalid hex value at offset {pos} in {text!r}")
        if match.group(3) is not None:
            value = int(match.group(3), 16)
        else:
            value = int(match.group(2), 16)
            if match.group(1) == "-":
                value = -value
        result.append(value & 0xFF)
    return bytes(result)


class TcpFrameDecoder:
    """Collect ``<HEX>`` messages from a TCP byte stream."""

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._active = False

    def _reset(self) -> None:
        self._buffer = bytearray()
        self._active = False

    def feed(self, data: bytes) -> list[tuple[str, bytes]]:
        """Consume stream bytes; return (message text, PDU) for every complete message."""
        frames: list[tuple[str, bytes]] = []
        for byte in data:
            if not self._active:
                if byte == 0x3C:
                    self._active = True
                    self._buffer = bytearray(b"<")
                continue
            self._buffer.append(byte)
            if len(self._buffer) - 1 > MAX_PDU_LENGTH * 2 + 1:
                self._reset()
                continue
            if byte != 0x3E:
                continue
            message = bytes(self._buffer).split(b"\0", 1)[0].decode("latin-1")
            self._reset()
            if len(message) < 4 or len(message) % 2:
                continue
            try:
                pdu = decode_hex(message[1:-1])
            except ValueError:
                continue
            frames.append((message, pdu))
        return frames


def _bridge(client: socket.socket, can_sock: socket.socket, verbose: bool) -> None:
    """Shuttle data between one TCP client and its ISO-TP socket until an error occurs."""
    decoder = TcpFrameDecoder()
    while True:
        readable, _, _ = select.select([can_sock, client], [], [])
        if can_sock in readable:
            try:
                data = can_sock.recv(MAX_PDU_LENGTH + 1)
            except OSError as exc:
                print(f"read from isotp socket: {exc}", file=sys.stderr)
                return
            if len(data) < 1 or len(data) > MAX_PDU_LENGTH:
                print("read from isotp socket: invalid PDU length", file=sys.stderr)
                return
            message = encode_pdu(data)
            if verbose:
                print(f"CAN>TCP {message}", end="", flush=True)
            with contextlib.suppress(OSError):
                client.sendall(message.encode("ascii"))
        if client in readable:
            try:
                chunk = client.recv(4096)
            except OSError as exc:
                print(f"read from tcp/ip socket: {exc}", file=sys.stderr)
                return
            if not chunk:
                print("read from tcp/ip socket: connection closed", file=sys.stderr)
                return
            for text, pdu in decoder.feed(chunk):
                if verbose:
                    print(f"TCP>CAN {text}", flush=True)
                with contextlib.suppress(OSError):
                    can_sock.send(pdu)


def _handle_client(client, interface, tx_id, rx_id, options, fc_options, ll_options, verbose):
    with client:
        try:
            can_sock = open_isotp_socket(
                interface, tx_id, rx_id, options,
                fc_options=fc_options, ll_options=ll_options,
            )
        except OSError as exc:
            print(f"isotpserver: {exc}", file=sys.stderr)
            return
        with can_sock:
            _bridge(client, can_sock, verbose)


def serve(port, interface, tx_id, rx_id, options, fc_options, ll_options, verbose):
    """Listen on ``port`` and bridge every accepted client to its own ISO-TP socket."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    with listener:
        while True:
            try:
                listener.bind(("", port))
                break
            except OSError:
                print(".", end="", flush=True)
                time.sleep(0.1)
        listener.listen(3)
        while True:
            client, _ = listener.accept()
            threading.Thread(
                target=_handle_client,
                args=(client, interface, tx_id, rx_id, options, fc_options, ll_options, verbose),
                daemon=True,
            ).start()


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = _Parser(prog="isotpserver", add_help=False)
    parser.add_argument("-l", dest="port")
    parser.add_argument("-s", dest="source")
    parser.add_argument("-d", dest="dest")
    parser.add_argument("-x", dest="ext", action="append", default=[])
    parser.add_argument("-p", dest="padding", action="append", default=[])
    parser.add_argument("-P", dest="padding_check", action="append", default=[])
    parser.add_argument("-b", dest="bs")
    parser.add_argument("-m", dest="stmin")
    parser.add_argument("-w", dest="wftmax")
    parser.add_argument("-t", dest="txtime")
    parser.add_argument("-L", dest="link_layer")
    parser.add_argument("-v", dest="verbose", action="store_true")
    parser.add_argument("-?", dest="help", action="store_true")
    parser.add_argument("interfaces", nargs="*")
    return parser


def main(argv=None) -> int:
    """Run the server; returns the exit status."""
    try:
        args = build_parser().parse_args(argv)
    except UsageError as exc:
        print(f"isotpserver: {exc}", file=sys.stderr)
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

    port = _parse_decimal(args.port) if args.port is not None else 0
    tx_id = parse_can_id(args.source) if args.source is not None else NO_CAN_ID
    rx_id = parse_can_id(args.dest) if args.dest is not None else NO_CAN_ID
    if len(args.interfaces) != 1 or port == 0 or NO_CAN_ID in (tx_id, rx_id):
        print(_usage(), file=sys.stderr)
        return 1

    fc_options = FlowControlOptions(
        bs=parse_hex_byte(args.bs) if args.bs is not None else 0,
        stmin=parse_hex_byte(args.stmin) if args.stmin is not None else 0,
        wftmax=parse_hex_byte(args.wftmax) if args.wftmax is not None else 0,
    )
    if args.txtime is not None:
        options.frame_txtime = _parse_decimal(args.txtime) & 0xFFFFFFFF

    try:
        serve(port, args.interfaces[0], tx_id, rx_id, options,
              fc_options, ll_options, args.verbose)
    except OSError as exc:
        print(f"isotpserver: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 0
    return 0


if __name__ == "__main__":
    sys.exit(main())