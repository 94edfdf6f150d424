import io

import pytest

from snowbroker.bridgelist import (
    BridgeInfo,
    BridgeListHolder,
    BridgeNotFoundError,
    fingerprint_from_bytes,
    fingerprint_from_hex,
)

DEFAULT_BRIDGES = (
    '{"displayName":"default", "webSocketAddress":"wss://snowflake.example.com", '
    '"fingerprint":"2B280B23E1107BB62ABFC40DDCC8824814F80A72"}\n'
)


def _imaginary_bridges():
    lines = [DEFAULT_BRIDGES.rstrip("\n")]
    for n in range(1, 11):
        lines.append(
            '{"displayName":"imaginary-%d", '
            '"webSocketAddress":"wss://imaginary-%d-snowflake.example.com", '
            '"fingerprint":"2B280B23E1107BB62ABFC40DDCC8824814F80B%02d"}' % (n, n, n - 1)
        )
    return "\n".join(lines) + "\n"


def test_load_default_list():
    holder = BridgeListHolder()
    holder.load_bridge_info(io.StringIO(DEFAULT_BRIDGES))
    raw = bytes.fromhex("2B280B23E1107BB62ABFC40DDCC8824814F80A72")
    assert len(raw) == 20
    info = holder.get_bridge_info(fingerprint_from_bytes(raw))
    assert info.display_name == "default"
    assert info.web_socket_address == "wss://snowflake.example.com"


def test_load_imaginary_list():
    holder = BridgeListHolder()
    holder.load_bridge_info(io.StringIO(_imaginary_bridges()))
    raw = bytes.fromhex("2B280B23E1107BB62ABFC40DDCC8824814F80B07")
    info = holder.get_bridge_info(fingerprint_from_bytes(raw))
    assert info.display_name == "imaginary-8"
    assert info.web_socket_address == "wss://imaginary-8-snowflake.example.com"


def test_load_from_string_and_bytes_lines():
    holder = BridgeListHolder()
    holder.load_bridge_info([DEFAULT_BRIDGES.encode()])
    fp = fingerprint_from_hex("2B280B23E1107BB62ABFC40DDCC8824814F80A72")
    assert holder.get_bridge_info(fp) == BridgeInfo(
        "default", "wss://snowflake.example.com", "2B280B23E1107BB62ABFC40DDCC8824814F80A72"
    )
    holder.load_bridge_info(DEFAULT_BRIDGES)
    assert holder.get_bridge_info(fp).display_name == "default"


def test_unknown_fingerprint_raises():
    holder = BridgeListHolder()
    holder.load_bridge_info(DEFAULT_BRIDGES)
    with pytest.raises(BridgeNotFoundError, match="unknown to the broker"):
        holder.get_bridge_info(bytes(20))


def test_unknown_field_rejected_and_previous_list_kept():
    holder = BridgeListHolder()
    holder.load_bridge_info(DEFAULT_BRIDGES)
    bad = DEFAULT_BRIDGES + '{"displayName":"x", "extra":"y", "fingerprint":"00"}\n'
    with pytest.raises(ValueError):
        holder.load_bridge_info(bad)
    fp = fingerprint_from_hex("2B280B23E1107BB62ABFC40DDCC8824814F80A72")
    assert holder.get_bridge_info(fp).display_name == "default"


@pytest.mark.parametrize(
    "line",
    [
        "not json",
        "[1, 2]",
        '{"fingerprint": 12}',
        '{"displayName":"x", "fingerprint":"ABCD"}',
        '{"displayName":"x"}',
    ],
)
def test_invalid_records_rejected(line):
    with pytest.raises(ValueError):
        BridgeListHolder().load_bridge_info(line + "\n")


def test_fingerprint_helpers_validate():
    with pytest.raises(ValueError):
        fingerprint_from_hex("zz" * 20)
    with pytest.raises(ValueError):
        fingerprint_from_bytes(b"\x01" * 19)
    raw = b"\xab" * 20
    assert fingerprint_from_hex(raw.hex()) == raw