import pytest

from cantoolkit.isotpsend import BUFSIZE, build_parser, fixed_pdu, main, parse_hex_bytes


def test_parse_hex_bytes_simple():
    assert parse_hex_bytes("11 22 aa", BUFSIZE) == bytes([0x11, 0x22, 0xAA])


def test_parse_hex_bytes_stops_at_invalid():
    assert parse_hex_bytes("11 zz 22", BUFSIZE) == bytes([0x11])


def test_parse_hex_bytes_respects_limit():
    assert parse_hex_bytes("01 02 03 04", 2) == bytes([0x01, 0x02])


def test_parse_hex_bytes_prefix_and_truncation():
    assert parse_hex_bytes("0x1ff\n0A", BUFSIZE) == bytes([0xFF, 0x0A])


def test_parse_hex_bytes_round_trip():
    data = bytes(range(256))
    assert parse_hex_bytes(data.hex(" "), BUFSIZE) == data


def test_fixed_pdu_start():
    assert fixed_pdu(3) == bytes([1, 2, 3])


def test_fixed_pdu_never_zero_and_wraps():
    pdu = fixed_pdu(600)
    assert len(pdu) == 600
    assert 0 not in pdu
    assert pdu[255:510] == pdu[0:255]


@pytest.mark.parametrize("length", [0, BUFSIZE])
def test_fixed_pdu_rejects_bad_length(length):
    with pytest.raises(ValueError):
        fixed_pdu(length)


def test_parser_collects_values():
    args = build_parser().parse_args(["-s", "123", "-d", "321", "-D", "10", "vcan0"])
    assert args.datalen == "10"
    assert args.interfaces == ["vcan0"]


def test_zero_datalen_prints_usage(capsys):
    assert main(["-D", "0", "-s", "1", "-d", "2", "can0"]) == 0
    assert "Usage: isotpsend" in capsys.readouterr().err


def test_missing_ids_returns_one(capsys):
    assert main(["can0"]) == 1
    assert "Usage: isotpsend" in capsys.readouterr().err


def test_bad_padding(capsys):
    assert main(["-p", "q", "-s", "1", "-d", "2", "can0"]) == 0
    assert "incorrect padding values 'q'." in capsys.readouterr().out