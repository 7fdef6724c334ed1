import pytest

from app.models import TransferRecord
from app.utils import (
    CSV_HEADER,
    categorize_transaction,
    format_units,
    is_non_zero,
    parse_quantity,
    ray_to_percent,
    to_csv,
)

ME = "0x" + "11" * 20
OTHER = "0x" + "22" * 20


@pytest.mark.parametrize(
    "value, decimals, expected",
    [
        (1_500_000_000_000_000_000, 18, "1.5"),
        (1_000_000, 6, "1"),
        (1, 18, "0.000000000000000001"),
        (0, 18, "0"),
        (123, 0, "123"),
        (10**30, 18, "1000000000000"),
    ],
)
def test_format_units(value, decimals, expected):
    assert format_units(value, decimals) == expected


def test_parse_quantity():
    assert parse_quantity("0x0") == 0
    assert parse_quantity("0x1bc16d674ec80000") == 2 * 10**18
    assert parse_quantity("42") == 42
    assert parse_quantity("") is None
    assert parse_quantity(None) is None
    assert parse_quantity("0xzz") is None


def test_is_non_zero():
    assert is_non_zero("1000")
    assert is_non_zero("0.0001")
    assert not is_non_zero("0")
    assert not is_non_zero("0.000")
    assert not is_non_zero(None)


def test_ray_to_percent():
    assert ray_to_percent("35000000000000000000000000") == pytest.approx(3.5)
    assert ray_to_percent(None) is None
    assert ray_to_percent("nope") is None


def test_categorize_transaction():
    assert categorize_transaction(ME, OTHER, ME.upper()) == "send"
    assert categorize_transaction(OTHER, ME, ME) == "receive"
    assert categorize_transaction(ME, ME, ME) == "unknown"
    assert categorize_transaction(OTHER, OTHER, ME) == "unknown"
    assert categorize_transaction(ME, None, ME) == "unknown"


def test_to_csv_empty_input_is_header_only():
    assert to_csv([], "ethereum") == ",".join(CSV_HEADER) + "\n"


def test_to_csv_rows_follow_header():
    items = [
        TransferRecord(
            hash="0xaaa",
            from_address=ME,
            to_address=OTHER,
            value=1.0,
            asset="ETH",
            timestamp=1_700_000_000,
            category="send",
            gas_used=21000,
            nonce=7,
            fee=0.00042,
        ),
        TransferRecord(hash="0xbbb", from_address=OTHER, category="unknown"),
    ]

    lines = to_csv(items, "ethereum").splitlines()

    assert lines[0] == "hash,from,to,value,asset,timestamp_iso,category,chain,gas_used,nonce,fee_native"
    assert lines[1] == (
        f"0xaaa,{ME},{OTHER},1,ETH,2023-11-14T22:13:20.000Z,send,ethereum,21000,7,0.00042"
    )
    assert lines[2] == f"0xbbb,{OTHER},,,,,unknown,ethereum,,,"
    assert len(lines) == 3


def test_to_csv_quotes_special_characters():
    item = TransferRecord(hash="0xccc", from_address=ME, asset='Weird, "Token"\nName')

    output = to_csv([item], "polygon")

    assert '"Weird, ""Token""\nName"' in output
