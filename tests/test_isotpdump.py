from datetime import datetime

import pytest

from cantoolkit.isotpdump import (
    DumpFormatter,
    TimestampFormatter,
    build_parser,
    main,
    uds_description,
)
from cantoolkit.terminal import ATTRESET, FGBLUE, FGRED


def make(**kwargs):
    return DumpFormatter(interface="can0", src=0x123, dst=0x321, **kwargs)


@pytest.mark.parametrize(
    "service, nrc, expected",
    [
        (0x10, 0, "[SRQ] DiagnosticSessionControl"),
        (0x50, 0, "[PSR] DiagnosticSessionControl"),
        (0x62, 0, "[PSR] ReadDataByIdentifier"),
        (0x7F, 0x78, "[NRC] requestCorrectlyReceived-ResponsePending"),
        (0x7F, 0x40, "[NRC] reservedByExtendedDataLinkSecurityDocument"),
        (0x7F, 0xA0, "[NRC] reservedForSpecificConditionsNotCorrect"),
        (0x7F, 0xF5, "[NRC] vehicleManufacturerSpecificConditionsNotCorrect"),
        (0x7F, 0xFF, "[NRC] ISOSAEReserved"),
        (0x01, 0, "[???] Unknown"),
        (0xC5, 0, "[PSR] ControlDTCSetting"),
        (0xBA, 0, "[SRQ] Unknown"),
    ],
)
def test_uds_description(service, nrc, expected):
    assert uds_description(service, nrc) == expected


def test_single_frame_line():
    line = make().format_frame(0x123, bytes([0x02, 0x10, 0x03]))
    assert line == " can0  123  [3]  [SF] ln: 2    data: 10 03 "


def test_first_frame_length_and_data():
    line = make().format_frame(0x123, bytes([0x10, 0x14, 1, 2, 3, 4, 5, 6]))
    assert "[FF] ln: 20   data:" in line
    assert line.endswith("01 02 03 04 05 06 ")


def test_first_frame_escape_length():
    data = bytes([0x10, 0x00, 0x00, 0x00, 0x10, 0x00, 0xAA, 0xBB])
    line = make().format_frame(0x123, data)
    assert "[FF] ln: 4096 data:" in line
    assert line.endswith(" AA BB ")


def test_consecutive_frame():
    line = make().format_frame(0x321, bytes([0x21, 0xAB]))
    assert "[CF] sn: 1    data:" in line
    assert line.endswith(" AB ")


def test_flow_control_cts_and_reserved():
    line = make().format_frame(0x321, bytes([0x30, 0x00, 0x00]))
    assert line.endswith("[FC] FC: 0 = CTS # BS: 0 = off # STmin: 0x00 = 0 ms")
    line = make().format_frame(0x321, bytes([0x35, 0x08, 0xFA]))
    assert "= reserved # BS: 8 # " in line
    assert line.endswith("= reserved")


def test_unknown_pci():
    line = make().format_frame(0x123, bytes([0x40, 0x01]))
    assert line.endswith("[??]")


def test_extended_address_filter():
    formatter = make(ext=True, extaddr=0xF1)
    assert formatter.format_frame(0x123, bytes([0xF2, 0x02, 0x10, 0x03])) is None
    line = formatter.format_frame(0x123, bytes([0xF1, 0x02, 0x10, 0x03]))
    assert "{F1}" in line
    assert line.endswith("10 03 ")
    assert make(ext=True, extany=True).format_frame(0x123, bytes([0xF2, 0x01, 0x10])) is not None


def test_rx_extended_address_filter():
    formatter = make(ext=True, extany=True, rx_ext=True, rx_extaddr=0x10)
    assert formatter.format_frame(0x321, bytes([0x11, 0x30, 0, 0])) is None
    assert "{10}" in formatter.format_frame(0x321, bytes([0x10, 0x30, 0, 0]))


def test_color_wraps_line():
    formatter = make(color=True)
    tx = formatter.format_frame(0x123, bytes([0x01, 0x3E]))
    rx = formatter.format_frame(0x321, bytes([0x01, 0x7E]))
    assert tx.startswith(FGRED) and tx.endswith(ATTRESET)
    assert rx.startswith(FGBLUE) and rx.endswith(ATTRESET)


def test_extended_id_and_fd_length():
    can_id = 0x80000000 | 0x18DA00F1
    formatter = DumpFormatter(interface="vcan0", src=can_id, dst=0x321)
    line = formatter.format_frame(can_id, bytes([0x00, 0x0A]) + bytes(10), is_fd=True)
    assert line.startswith(" vcan0  18DA00F1 [12]  ")


def test_ascii_output():
    line = make(asc=True).format_frame(0x123, bytes([0x02, 0x41, 0x42]))
    assert line.endswith("41 42 " + " " * 16 + "-  'AB'")


def test_uds_output_once_per_message():
    formatter = make(uds=True)
    first = formatter.format_frame(0x123, bytes([0x02, 0x10, 0x03]))
    assert first.endswith(" - [SRQ] DiagnosticSessionControl")
    follow = formatter.format_frame(0x123, bytes([0x21, 0x10, 0x03]))
    assert "[SRQ]" not in follow


def test_timestamp_absolute():
    assert TimestampFormatter("a").format(1.5) == "(1.500000) "


def test_timestamp_zero_and_delta():
    zero = TimestampFormatter("z")
    delta = TimestampFormatter("d")
    stamps = [10.0, 10.25, 10.5]
    zero_texts = [zero.format(s) for s in stamps]
    delta_texts = [delta.format(s) for s in stamps]
    assert zero_texts[0] == delta_texts[0] == "(0.000000) "
    assert zero_texts[1] == delta_texts[1]
    assert delta_texts[2] == delta_texts[1]
    assert zero_texts[2] != delta_texts[2]


def test_timestamp_never_negative():
    delta = TimestampFormatter("d")
    first = delta.format(5.0)
    assert delta.format(4.0) == first


def test_timestamp_with_date_shape():
    text = TimestampFormatter("A").format(1_000_000.25)
    assert len(text) == len("(2000-01-01 00:00:00.250000) ")
    assert text[0] == "("
    assert text.endswith(".250000) ")
    parsed = datetime.strptime(text[1:20], "%Y-%m-%d %H:%M:%S")
    assert parsed == datetime.fromtimestamp(1_000_000).replace(microsecond=0)


def test_timestamp_invalid_mode():
    with pytest.raises(ValueError):
        TimestampFormatter("q")


def test_timestamp_in_line():
    formatter = make(timestamp=TimestampFormatter("a"))
    line = formatter.format_frame(0x123, bytes([0x01, 0x3E]), stamp=2.0)
    assert line.startswith("(2.000000)  can0  123")


def test_parser_reads_options():
    args = build_parser().parse_args(["-s", "7E0", "-d", "7E8", "-x", "any", "-u", "can0"])
    assert (args.source, args.dest, args.ext, args.uds, args.interfaces) == (
        "7E0", "7E8", "any", True, ["can0"])


def test_main_help(capsys):
    assert main(["-?"]) == 0
    assert "Usage: isotpdump" in capsys.readouterr().err


def test_main_missing_ids(capsys):
    assert main(["can0"]) == 0
    assert "Usage: isotpdump" in capsys.readouterr().err


def test_main_rx_ext_needs_ext(capsys):
    assert main(["-X", "1", "-s", "1", "-d", "2", "can0"]) == 0
    assert "Usage: isotpdump" in capsys.readouterr().err