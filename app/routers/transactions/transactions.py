from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response

from app.ENV import RATE_LIMIT_TRANSACTIONS, RATE_LIMIT_WINDOW_SECONDS
from app.errors import AppError, ErrorCodes, validate_address, validate_chains
from app.ratelimiting import RateLimiter, enforce_rate_limit, rate_limit_headers
from app.services.alchemy import AlchemyClient
from app.services.transactions import TransactionHistory
from app.state_getters import get_alchemy, get_rate_limiter, get_transaction_history
from app.utils import to_csv

router = APIRouter(tags=["Transactions"], prefix="/api")

FORMATS = ("json", "csv")


@router.get("/transactions")
async def get_transactions(
    request: Request,
    address: Optional[str] = None,
    chain: str = "ethereum",
    format: str = "json",
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    alchemy: AlchemyClient = Depends(get_alchemy),
    history: TransactionHistory = Depends(get_transaction_history),
) -> Response:
    """
    Recent transfers in and out of `address` on one chain, newest first.
    `format=csv` downloads the same rows as CSV.
    """
    address = validate_address(address)
    chains = validate_chains(chain)
    if len(chains) != 1:
        raise AppError(ErrorCodes.INVALID_PARAMETER, "Only one chain per request")
    chain = chains[0]
    if format not in FORMATS:
        raise AppError(ErrorCodes.INVALID_PARAMETER, "format must be json or csv")

    limit = await enforce_rate_limit(
        request,
        rate_limiter,
        "transactions",
        RATE_LIMIT_TRANSACTIONS,
        RATE_LIMIT_WINDOW_SECONDS,
    )

    if not alchemy.has_key(chain):
        raise AppError(
            ErrorCodes.INVALID_PARAMETER, f"Missing Alchemy API key for {chain}"
        )

    records = await history.get_transfers(address, chain)
    headers = rate_limit_headers(limit)
    headers["X-Cache"] = "MISS"

    if format == "csv":
        headers["Content-Disposition"] = (
            f'attachment; filename="transactions-{chain}-{address}.csv"'
        )
        return Response(
            to_csv(records, chain), media_type="text/csv; charset=utf-8", headers=headers
        )
    return JSONResponse(
        {"data": [x.model_dump(mode="json", by_alias=True) for x in records]},
        headers=headers,
    )
