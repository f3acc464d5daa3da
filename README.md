# cantoolkit

Command line tools for working with CAN buses through Linux SocketCAN:
ISO-TP (ISO 15765-2) transfers, a TCP bridge for ISO-TP, protocol dumps,
transfer throughput display and SAE J1939 address claiming.

The tools talk to the kernel's `AF_CAN` sockets, so they run on Linux
with a CAN interface (real or `vcan`) available. The `can-isotp` and
`can-j1939` kernel modules are needed by the tools that use them.

## Installation

```
pip install .
```

Python 3.10 or later is required. There are no third-party runtime
dependencies.

## Tools

CAN IDs and addresses are given in hexadecimal. Use 8 hex digits for
extended (29 bit) identifiers.

### isotpsend / isotprecv

Send a PDU read from standard input as whitespace separated hex bytes,
and receive PDUs printed as space separated upper case hex:

```
echo 11 22 33 44 55 66 77 88 99 | isotpsend -s 123 -d 321 vcan0
isotprecv -s 321 -d 123 -l vcan0
```

`isotpsend -D <len>` sends a generated PDU of the given length (bytes
counting 01, 02, ... FF, 01, ...) instead of reading standard input.
`isotprecv -l` keeps receiving instead of exiting after the first PDU.

Both tools accept `-x <addr>[:<rxaddr>]` for extended addressing,
`-p [tx]:[rx]` for padding bytes, `-P l|c|a` for rx padding checks and
`-L <mtu>:<tx_dl>:<tx_flags>` for CAN FD link layer settings.
`isotprecv` also takes `-b`, `-m` and `-w` for the flow control it sends
and `-f` to force an rx STmin; `isotpsend` takes `-t` for the frame
transmit time and `-f` to force a tx STmin.

### isotpserver

A TCP server bridging ASCII hex messages such as `<1122334455>` to
ISO-TP PDUs and back. Every accepted client gets its own ISO-TP socket;
PDUs received from CAN are sent to the client as `<HEX>` followed by a
newline.

```
isotpserver -l 28700 -s 123 -d 321 vcan0
```

`-v` prints every message passing in either direction.

### isotpdump

Explains each ISO-TP frame between two CAN IDs (single, first,
consecutive and flow control frames):

```
isotpdump -s 123 -d 321 -c -a -u vcan0
```

`-c` colours the two directions, `-a` adds the data as ASCII, `-u`
decodes UDS service and negative response names, and `-x` / `-X` select
extended addressing (`any` accepts every address). Timestamps are chosen
with `-t a` (absolute), `-t A` (with date), `-t d` (delta) or `-t z`
(relative to the first frame).

### isotpperf

Shows a progress bar for each ISO-TP transfer and, when it completes,
the frame mode, block size, STmin, length, duration and throughput:

```
isotpperf -s 123 -d 321 vcan0
```

A transfer that receives no frame for one second is reported as timed
out.

### jacd

An SAE J1939 address claiming daemon:

```
jacd -r 0x80-0x90 -c /tmp/node.jacd 1122334455667788 can0
```

`-r` gives the usable address ranges (default `0x80-0xfd`), `-c` a file
where the claimed address is saved on exit and restored on start, `-a`
the address to start with and `-v` more output. Send it `SIGUSR1` to
print the table of known addresses; `SIGINT` or `SIGTERM` releases the
address and stops it.

## Library use

The helpers behind the tools can be used directly, for example
`cantoolkit.isotp.parse_can_id`, `cantoolkit.isotp.IsotpOptions`,
`cantoolkit.isotpserver.TcpFrameDecoder`,
`cantoolkit.isotpdump.uds_description`,
`cantoolkit.isotpdump.DumpFormatter`,
`cantoolkit.isotpperf.PerfTracker`,
`cantoolkit.jacd.parse_range` or `cantoolkit.jacd.AddressTable`.
`cantoolkit.terminal` holds the ANSI escape sequences used for colour
output.

## What it does not do

- There is no tunnel: the package cannot create a network device that
  carries IP packets over ISO-TP.
- There is no PDU sniffer that reassembles and prints whole ISO-TP PDUs
  in both directions; `isotpdump` works frame by frame.
- There is no interactive, full screen view of changing CAN payloads,
  and no settings files for such a view.

## Running the tests

```
pip install .[test]
pytest
```