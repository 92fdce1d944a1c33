"""Per-user balance views."""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from flextasker_service.routers.helpers import get_escrow_ledger

router = APIRouter()


@router.get("/users/{user_id}/balance")
async def get_balance(user_id: str) -> JSONResponse:
    """Lifetime earnings and spending. Unknown users read as zero."""
    balance = await run_in_threadpool(get_escrow_ledger().get_balance, user_id)
    return JSONResponse(status_code=200, content=balance.to_dict())


@router.get("/users/{user_id}/payment-summary")
async def get_payment_summary(user_id: str) -> JSONResponse:
    summary = await run_in_threadpool(get_escrow_ledger().get_payment_summary, user_id)
    return JSONResponse(status_code=200, content=summary.to_dict())
