import csv
import datetime as dt
import io
import re
from typing import Optional, Union

from app.models import TransferRecord

CSV_HEADER = [
    "hash",
    "from",
    "to",
    "value",
    "asset",
    "timestamp_iso",
    "category",
    "chain",
    "gas_used",
    "nonce",
    "fee_native",
]

NON_ZERO_DIGIT = re.compile(r"[1-9]")


def parse_quantity(value: Union[str, int, None]) -> Optional[int]:
    """
    Parses a JSON-RPC quantity, either "0x" hex or a decimal string.
    """
    if value is None:
        return None
    if isinstance(value, int):
        return value
    value = value.strip()
    if not value:
        return None
    try:
        return int(value, 16) if value.lower().startswith("0x") else int(value)
    except ValueError:
        return None


def format_units(value: int, decimals: int) -> str:
    """
    Shifts `value` by `decimals` places without going through floats.

    format_units(1500000000000000000, 18) == "1.5"
    """
    sign = "-" if value < 0 else ""
    digits = str(abs(value))
    if decimals <= 0:
        return f"{sign}{digits}"

    digits = digits.rjust(decimals + 1, "0")
    integer, fraction = digits[:-decimals], digits[-decimals:].rstrip("0")
    if fraction:
        return f"{sign}{integer}.{fraction}"
    return f"{sign}{integer}"


def is_non_zero(value: Optional[str]) -> bool:
    """
    True if the numeric string has any non-zero digit. Upstream amounts come
    as strings that may be zero-padded or in scientific notation.
    """
    if not value:
        return False
    digits = re.sub(r"[^0-9]", "", value)
    return bool(NON_ZERO_DIGIT.search(digits))


def ray_to_percent(ray: Optional[str]) -> Optional[float]:
    if not ray:
        return None
    try:
        number = float(ray)
    except ValueError:
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number / 1e27 * 100


def categorize_transaction(
    from_address: Optional[str], to_address: Optional[str], address: str
) -> str:
    address = (address or "").lower()
    sender = (from_address or "").lower()
    recipient = (to_address or "").lower()

    if address and sender == address and recipient and recipient != address:
        return "send"
    if address and recipient == address and sender and sender != address:
        return "receive"
    return "unknown"


def _number_cell(value: Union[int, float, None]) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _timestamp_cell(timestamp: Optional[int]) -> str:
    if timestamp is None:
        return ""
    moment = dt.datetime.fromtimestamp(timestamp, dt.timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.000Z")


def to_csv(items: list[TransferRecord], chain: str) -> str:
    """
    Renders transfers as CSV, one row per item under a fixed header. Cells
    holding a quote, comma or newline are quoted with inner quotes doubled.
    An empty list still yields the header line.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for item in items or []:
        writer.writerow(
            [
                item.hash or "",
                item.from_address or "",
                item.to_address or "",
                _number_cell(item.value),
                item.asset or "",
                _timestamp_cell(item.timestamp),
                item.category or "",
                chain or "",
                _number_cell(item.gas_used),
                _number_cell(item.nonce),
                _number_cell(item.fee),
            ]
        )
    return buffer.getvalue()
