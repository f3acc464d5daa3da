from cantoolkit.isotp import parse_can_id
from cantoolkit.isotprecv import build_parser, format_pdu, main


def test_format_pdu():
    assert format_pdu(bytes([0x01, 0xAB])) == "01 AB "


def test_format_pdu_empty():
    assert format_pdu(b"") == ""


def test_format_pdu_length_invariant():
    data = bytes(range(40))
    text = format_pdu(data)
    assert len(text) == 3 * len(data)
    assert bytes.fromhex(text) == data


def test_parser_reads_options():
    args = build_parser().parse_args(["-s", "123", "-d", "321", "-l", "-x", "A5", "can0"])
    assert args.loop is True
    assert args.ext == ["A5"]
    assert args.interfaces == ["can0"]
    assert parse_can_id(args.source) == 0x123


def test_missing_destination_returns_one(capsys):
    assert main(["-s", "123", "can0"]) == 1
    assert "Usage: isotprecv" in capsys.readouterr().err


def test_missing_interface_returns_one(capsys):
    assert main(["-s", "123", "-d", "321"]) == 1
    assert "Usage:" in capsys.readouterr().err


def test_bad_extended_address(capsys):
    assert main(["-x", "zz", "-s", "1", "-d", "2", "can0"]) == 0
    assert "incorrect extended addr values 'zz'." in capsys.readouterr().out


def test_bad_padding_check(capsys):
    assert main(["-P", "q", "-s", "1", "-d", "2", "can0"]) == 0
    assert "unknown padding check option 'q'." in capsys.readouterr().out


def test_bad_link_layer(capsys):
    assert main(["-L", "72", "-s", "1", "-d", "2", "can0"]) == 0
    assert "unknown link layer options '72'." in capsys.readouterr().out


def test_unknown_option_prints_usage(capsys):
    assert main(["-Z"]) == 0
    assert "Usage: isotprecv" in capsys.readouterr().err