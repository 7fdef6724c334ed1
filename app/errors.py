"""
Structured API errors.

Every error the API returns on purpose has the shape
`{"error": {"code": ..., "message": ..., "statusCode": ...}}`.
"""

import re
from enum import Enum
from typing import Optional

from fastapi.responses import JSONResponse

from app.ENV import SUPPORTED_CHAINS

ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


class ErrorCodes(str, Enum):
    MISSING_PARAMETER = "MISSING_PARAMETER"
    INVALID_ADDRESS = "INVALID_ADDRESS"
    INVALID_PARAMETER = "INVALID_PARAMETER"
    RATE_LIMITED = "RATE_LIMITED"
    EXTERNAL_API_ERROR = "EXTERNAL_API_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


ERROR_MESSAGES = {
    ErrorCodes.MISSING_PARAMETER: "Required parameter is missing",
    ErrorCodes.INVALID_ADDRESS: "Please provide a valid Ethereum address",
    ErrorCodes.INVALID_PARAMETER: "Invalid parameter value provided",
    ErrorCodes.RATE_LIMITED: "Too many requests. Please try again later",
    ErrorCodes.EXTERNAL_API_ERROR: "External service temporarily unavailable",
    ErrorCodes.INTERNAL_ERROR: "Internal server error",
}

STATUS_CODES = {
    ErrorCodes.MISSING_PARAMETER: 400,
    ErrorCodes.INVALID_ADDRESS: 400,
    ErrorCodes.INVALID_PARAMETER: 400,
    ErrorCodes.RATE_LIMITED: 429,
    ErrorCodes.EXTERNAL_API_ERROR: 502,
    ErrorCodes.INTERNAL_ERROR: 500,
}


class AppError(Exception):
    def __init__(
        self,
        code: ErrorCodes,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.code = code
        self.message = message or ERROR_MESSAGES[code]
        self.status_code = status_code or STATUS_CODES[code]
        super().__init__(self.message)


class UpstreamError(Exception):
    """An external provider failed or answered with something unusable."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"{source}: {message}")


class UpstreamStatusError(UpstreamError):
    def __init__(self, source: str, status_code: int, detail: str = ""):
        self.status_code = status_code
        message = f"request failed: {status_code}"
        if detail:
            message = f"{message} {detail}"
        super().__init__(source, message)


class UpstreamParseError(UpstreamError):
    pass


class UnsupportedChainError(ValueError):
    pass


def error_response(
    code: ErrorCodes,
    message: Optional[str] = None,
    status_code: Optional[int] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    status = status_code or STATUS_CODES[code]
    return JSONResponse(
        {
            "error": {
                "code": code.value,
                "message": message or ERROR_MESSAGES[code],
                "statusCode": status,
            }
        },
        status_code=status,
        headers=headers,
    )


def validate_address(address: Optional[str]) -> str:
    """
    Returns the lowercased address or raises the matching AppError.
    Non-string input, as from a JSON body, is an invalid address.
    """
    if address is not None and not isinstance(address, str):
        raise AppError(ErrorCodes.INVALID_ADDRESS)
    address = (address or "").strip()
    if not address:
        raise AppError(ErrorCodes.MISSING_PARAMETER, "Address parameter is required")
    if not ADDRESS_RE.match(address):
        raise AppError(ErrorCodes.INVALID_ADDRESS)
    return address.lower()


def validate_chains(
    chains_param: Optional[str], allowed: Optional[list[str]] = None
) -> list[str]:
    """
    Parses a comma separated chain selector. Absent means every allowed chain;
    anything outside the allow-set is rejected. Result keeps the allow-set order.
    """
    allowed = allowed or SUPPORTED_CHAINS
    if chains_param is None:
        return list(allowed)

    requested = {x.strip().lower() for x in chains_param.split(",") if x.strip()}
    unsupported = sorted(requested - set(allowed))
    if not requested or unsupported:
        raise AppError(
            ErrorCodes.INVALID_PARAMETER,
            f"Unsupported chains. Supported: {', '.join(allowed)}",
        )
    return [x for x in allowed if x in requested]


def validate_int_param(
    value: Optional[str],
    name: str,
    default: int,
    min_value: int,
    max_value: Optional[int] = None,
) -> int:
    """
    Parses an integer query parameter and clamps it into [min_value, max_value].
    """
    if value is None or value == "":
        return default
    try:
        number = int(value)
    except ValueError:
        raise AppError(ErrorCodes.INVALID_PARAMETER, f"{name} must be a number")
    number = max(min_value, number)
    if max_value is not None:
        number = min(max_value, number)
    return number
