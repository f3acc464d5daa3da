import pytest

from cantoolkit.isotpperf import NUMBAR, PerfTracker, build_parser, digits, main

SRC = 0x123
DST = 0x321


def _bar(text):
    start = text.rindex("|", 0, text.rindex("|"))
    return text[start + 1:text.rindex("|")]


@pytest.mark.parametrize("value", [0, 1, 9, 10, 99, 100, 4095, 4294967295])
def test_digits_matches_decimal_text_length(value):
    assert digits(value) == len(str(value))


def test_digits_monotonic():
    results = [digits(v) for v in range(0, 2000)]
    assert results == sorted(results)


def test_single_frame_completes_without_time():
    tracker = PerfTracker(SRC, DST)
    out = tracker.feed(SRC, bytes([0x03, 1, 2, 3]), False, 0, 5.0)
    assert "|" + "X" * NUMBAR + "|" in out
    assert " : 3 byte in (no time available)     \n" in out
    assert out.rstrip("\n").split("\r")[-1].startswith("CAN2.0")
    assert tracker.rcvlen == 0 and tracker.fflen == 0


def test_first_and_consecutive_frame_transfer():
    tracker = PerfTracker(SRC, DST)
    out1 = tracker.feed(SRC, bytes([0x10, 0x0A, 1, 2, 3, 4, 5, 6]), False, 0, 0.0)
    bar = _bar(out1)
    assert len(bar) == NUMBAR
    assert set(bar) == {"X", "."}
    assert "/10 " in out1
    assert tracker.fflen == 10
    assert 0 < tracker.rcvlen < tracker.fflen

    out2 = tracker.feed(SRC, bytes([0x21, 7, 8, 9, 10]), False, 0, 1.0)
    assert "|" + "X" * NUMBAR + "|" in out2
    assert " : 10 byte in 1.000000s => 10 byte/s\n" in out2
    assert tracker.rcvlen == 0


def test_wrong_sequence_number_is_ignored():
    tracker = PerfTracker(SRC, DST)
    tracker.feed(SRC, bytes([0x10, 0x20, 1, 2, 3, 4, 5, 6]), False, 0, 0.0)
    before = tracker.rcvlen
    out = tracker.feed(SRC, bytes([0x22, 1, 2, 3, 4, 5, 6, 7]), False, 0, 0.1)
    assert tracker.rcvlen == before
    assert "byte in" not in out


def test_timeout_during_transfer_and_when_idle():
    tracker = PerfTracker(SRC, DST)
    assert tracker.timeout() is None
    tracker.feed(SRC, bytes([0x10, 0x20, 1, 2, 3, 4, 5, 6]), False, 0, 0.0)
    notice = tracker.timeout()
    assert notice.startswith("\r (transmission timed out)")
    assert len(notice) == 79
    assert tracker.timeout() is None


def test_flow_control_values_reported():
    tracker = PerfTracker(SRC, DST)
    assert tracker.feed(DST, bytes([0x30, 0x08, 0x14]), False, 0, 0.0) == ""
    out = tracker.feed(SRC, bytes([0x02, 0xAA, 0xBB]), False, 0, 0.0)
    assert "CAN2.0 08  (BS: 8 # STmin: 20 msec)" in out


def test_non_flow_control_from_destination_ignored():
    tracker = PerfTracker(SRC, DST)
    assert tracker.feed(DST, bytes([0x02, 0xAA, 0xBB]), False, 0, 0.0) == ""
    assert tracker.rcvlen == 0


def test_extended_address_mismatch_ignored():
    tracker = PerfTracker(SRC, DST, extaddr=0x55)
    assert tracker.feed(SRC, bytes([0x66, 0x02, 1, 2]), False, 0, 0.0) == ""
    out = tracker.feed(SRC, bytes([0x55, 0x02, 1, 2]), False, 0, 0.0)
    assert " : 2 byte in " in out


def test_oversized_first_frame_ignored():
    tracker = PerfTracker(SRC, DST)
    out = tracker.feed(SRC, bytes([0x10, 0x00, 0xFF, 0xFF, 0xFF, 0xFF, 0, 0]), False, 0, 0.0)
    assert out == "fflen 4294967295 is more than ~4.2 MB - ignoring PDU\n"
    assert tracker.rcvlen == 0


def test_short_single_frame_ignored():
    tracker = PerfTracker(SRC, DST)
    assert tracker.feed(SRC, bytes([0x05, 0x01]), False, 0, 0.0) == ""
    assert tracker.fflen == 0


def test_other_frame_type_ignored_during_transfer():
    tracker = PerfTracker(SRC, DST)
    tracker.feed(SRC, bytes([0x10, 0x20, 1, 2, 3, 4, 5, 6]), False, 0, 0.0)
    before = tracker.rcvlen
    assert tracker.feed(SRC, bytes([0x21]) + bytes(63), True, 0, 0.1) == ""
    assert tracker.rcvlen == before


def test_fd_frame_marks_bitrate_switch():
    tracker = PerfTracker(SRC, DST)
    out = tracker.feed(SRC, bytes([0x00, 0x03, 1, 2, 3]) + bytes(7), True, 0x01, 0.0)
    assert "CAN-FD 12*" in out


def test_parser_reads_options():
    args = build_parser().parse_args(["-s", "123", "-d", "321", "-x", "10", "can0"])
    assert (args.source, args.dest, args.ext, args.interfaces) == ("123", "321", "10", ["can0"])


def test_main_without_interface_prints_usage(capsys):
    assert main(["-s", "123", "-d", "321"]) == 0
    assert "Usage:" in capsys.readouterr().err


def test_main_help(capsys):
    assert main(["-?"]) == 0
    assert "Usage:" in capsys.readouterr().err