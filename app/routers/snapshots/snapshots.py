from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from app.errors import AppError, ErrorCodes, validate_address, validate_int_param
from app.models import SnapshotCreate
from app.services.snapshots import MAX_LIST_LIMIT, SnapshotStore
from app.state_getters import get_snapshot_store

router = APIRouter(tags=["Snapshots"], prefix="/api")


@router.get("/snapshots", response_class=JSONResponse)
async def get_snapshots(
    address: Optional[str] = None,
    limit: Optional[str] = None,
    offset: Optional[str] = None,
    store: SnapshotStore = Depends(get_snapshot_store),
) -> dict:
    """
    With the default `limit=1` this is the latest full snapshot of `address`;
    a larger limit lists snapshot summaries, newest first.
    """
    address = validate_address(address)
    limit = validate_int_param(limit, "limit", 1, 1, MAX_LIST_LIMIT)
    offset = validate_int_param(offset, "offset", 0, 0)

    if limit > 1:
        snapshots = await store.list_snapshots(address, limit, offset)
        return {"data": [x.model_dump(mode="json", by_alias=True) for x in snapshots]}

    snapshot = await store.get_latest_snapshot(address)
    if snapshot is None:
        raise HTTPException(
            status_code=404, detail="No snapshot found for this address"
        )
    return snapshot.model_dump(mode="json", by_alias=True)


@router.post("/snapshots", response_class=JSONResponse)
async def create_snapshot(
    request: Request,
    store: SnapshotStore = Depends(get_snapshot_store),
) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise AppError(ErrorCodes.INVALID_PARAMETER, "Request body must be JSON")

    if (
        not isinstance(body, dict)
        or not body.get("address")
        or not isinstance(body.get("tokens"), list)
    ):
        raise AppError(
            ErrorCodes.MISSING_PARAMETER, "Address and tokens array are required"
        )
    validate_address(body["address"])

    try:
        snapshot = SnapshotCreate.model_validate(body)
    except ValidationError as error:
        raise AppError(
            ErrorCodes.INVALID_PARAMETER, f"Invalid token entries: {error.error_count()} errors"
        )

    receipt = await store.create_snapshot(snapshot.address, snapshot.tokens)
    return receipt.model_dump(mode="json", by_alias=True)


@router.get("/snapshots/{snapshot_id}", response_class=JSONResponse)
async def get_snapshot(
    snapshot_id: str,
    store: SnapshotStore = Depends(get_snapshot_store),
) -> dict:
    snapshot = await store.get_snapshot_by_id(snapshot_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Snapshot not found")
    return {"data": snapshot.model_dump(mode="json", by_alias=True)}
