import struct

import pytest

from cantoolkit.isotp import (
    CAN_EFF_FLAG,
    FlowControlOptions,
    IsotpFlag,
    IsotpOptions,
    LinkLayerOptions,
    UsageError,
    parse_can_id,
    parse_hex_byte,
    parse_link_layer,
)


def test_parse_standard_can_id():
    assert parse_can_id("123") == 0x123


def test_parse_extended_can_id_by_length():
    assert parse_can_id("00000123") == 0x123 | CAN_EFF_FLAG


def test_parse_can_id_invalid_is_zero():
    assert parse_can_id("zz") == 0


def test_parse_hex_byte_truncates():
    assert parse_hex_byte("1FF") == 0xFF
    assert parse_hex_byte("0x20") == 0x20


def test_extended_address_single():
    opts = IsotpOptions()
    opts.set_extended_address("A5")
    assert opts.flags == IsotpFlag.EXTEND_ADDR
    assert opts.ext_address == 0xA5


def test_extended_address_with_rx():
    opts = IsotpOptions()
    opts.set_extended_address("A5:5A")
    assert opts.flags == IsotpFlag.EXTEND_ADDR | IsotpFlag.RX_EXT_ADDR
    assert (opts.ext_address, opts.rx_ext_address) == (0xA5, 0x5A)


def test_extended_address_invalid():
    with pytest.raises(UsageError, match="incorrect extended addr values 'zz'."):
        IsotpOptions().set_extended_address("zz")


def test_padding_tx_only():
    opts = IsotpOptions()
    opts.set_padding("CC")
    assert opts.flags == IsotpFlag.TX_PADDING
    assert opts.txpad_content == 0xCC


def test_padding_tx_and_rx():
    opts = IsotpOptions()
    opts.set_padding("CC:DD")
    assert opts.flags == IsotpFlag.TX_PADDING | IsotpFlag.RX_PADDING
    assert (opts.txpad_content, opts.rxpad_content) == (0xCC, 0xDD)


def test_padding_rx_only():
    opts = IsotpOptions()
    opts.set_padding(":DD")
    assert opts.flags == IsotpFlag.RX_PADDING
    assert opts.rxpad_content == 0xDD
    assert opts.txpad_content == 0


def test_padding_invalid():
    with pytest.raises(UsageError, match="incorrect padding values"):
        IsotpOptions().set_padding("q")


@pytest.mark.parametrize(
    "mode, expected",
    [
        ("l", IsotpFlag.CHK_PAD_LEN),
        ("c", IsotpFlag.CHK_PAD_DATA),
        ("a", IsotpFlag.CHK_PAD_LEN | IsotpFlag.CHK_PAD_DATA),
    ],
)
def test_padding_check(mode, expected):
    opts = IsotpOptions()
    opts.set_padding_check(mode)
    assert opts.flags == expected


def test_padding_check_invalid():
    with pytest.raises(UsageError, match="unknown padding check option 'x'."):
        IsotpOptions().set_padding_check("x")


def test_options_pack_round_trip():
    opts = IsotpOptions(
        flags=IsotpFlag.EXTEND_ADDR | IsotpFlag.TX_PADDING,
        frame_txtime=1000,
        ext_address=0x11,
        txpad_content=0x22,
        rxpad_content=0x33,
        rx_ext_address=0x44,
    )
    fields = struct.unpack("=IIBBBB", opts.pack())
    assert fields == (int(opts.flags), 1000, 0x11, 0x22, 0x33, 0x44)


def test_flow_control_pack():
    assert FlowControlOptions(bs=8, stmin=0x14, wftmax=0).pack() == bytes([8, 0x14, 0])


def test_link_layer_parse():
    ll = parse_link_layer("72:64:1")
    assert ll == LinkLayerOptions(mtu=72, tx_dl=64, tx_flags=1)
    assert ll.pack() == bytes([72, 64, 1])


def test_link_layer_incomplete():
    with pytest.raises(UsageError, match="unknown link layer options '72:64'."):
        parse_link_layer("72:64")