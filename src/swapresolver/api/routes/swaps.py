"""Coordinator status and swap lookup endpoints."""

from fastapi import APIRouter, HTTPException, Request

from swapresolver.errors import ValidationError

router = APIRouter()


@router.get("/status")
async def coordinator_status(request: Request):
    """Counters and ledger statistics."""
    return await request.app.state.coordinator.status()


@router.get("/swaps/{order_hash}")
async def get_swap(order_hash: str, request: Request):
    """One swap record."""
    try:
        swap = await request.app.state.coordinator.ledger.get(order_hash)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if swap is None:
        raise HTTPException(status_code=404, detail=f"Swap {order_hash} not found")
    return swap.to_dict()
