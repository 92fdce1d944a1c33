"""Payment endpoints: pay for a task, read, list, refund, statistics."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from flextasker_service.errors import ServiceError
from flextasker_service.models import PaymentDirection, PaymentMethod, PaymentStatus
from flextasker_service.routers.helpers import (
    get_escrow_ledger,
    parse_datetime,
    parse_enum,
    parse_int,
    parse_json_body,
    require_money,
    require_query,
    require_str,
)

router = APIRouter()


# ---------------------------------------------------------------------------
# POST /payments: pay for a completed task
# ---------------------------------------------------------------------------


@router.post("/payments", status_code=201)
async def create_payment(request: Request) -> JSONResponse:
    """Charge the task owner and credit the assignee."""
    data = parse_json_body(await request.body())
    payer_id = require_str(data, "payer_id")
    task_id = require_str(data, "task_id")
    amount = require_money(data, "amount")
    payment_method = parse_enum(
        PaymentMethod, require_str(data, "payment_method"), "payment_method"
    )

    payment = await get_escrow_ledger().create_payment(payer_id, task_id, amount, payment_method)
    return JSONResponse(status_code=201, content=payment.to_dict())


@router.get("/payments")
async def list_payments(request: Request) -> JSONResponse:
    """List the payments a user sent or received."""
    params = request.query_params
    user_id = require_query(params.get("user_id"), "user_id")
    direction_raw = params.get("direction")
    status_raw = params.get("status")
    direction = (
        None if direction_raw is None else parse_enum(PaymentDirection, direction_raw, "direction")
    )
    status = None if status_raw is None else parse_enum(PaymentStatus, status_raw, "status")
    page_raw = parse_int(params.get("page"), "page")
    page = 1 if page_raw is None else page_raw
    limit = parse_int(params.get("limit"), "limit")

    result = await run_in_threadpool(
        get_escrow_ledger().list_user_payments, user_id, direction, status, page, limit
    )
    return JSONResponse(status_code=200, content=result.to_dict())


# ---------------------------------------------------------------------------
# GET /payments/statistics (MUST be before GET /payments/{payment_id})
# ---------------------------------------------------------------------------


@router.get("/payments/statistics")
async def payment_statistics(request: Request) -> JSONResponse:
    """Platform-wide volume and fee totals."""
    params = request.query_params
    start_raw = params.get("start_date")
    end_raw = params.get("end_date")
    start = None if start_raw is None else parse_datetime(start_raw, "start_date")
    end = None if end_raw is None else parse_datetime(end_raw, "end_date")

    stats = await run_in_threadpool(get_escrow_ledger().get_payment_statistics, start, end)
    return JSONResponse(status_code=200, content=stats.to_dict())


@router.get("/payments/{payment_id}")
async def get_payment(payment_id: str, request: Request) -> JSONResponse:
    user_id = require_query(request.query_params.get("user_id"), "user_id")
    payment = await run_in_threadpool(get_escrow_ledger().get_payment, payment_id, user_id)
    return JSONResponse(status_code=200, content=payment.to_dict())


@router.post("/payments/{payment_id}/refund")
async def refund_payment(payment_id: str, request: Request) -> JSONResponse:
    """Refund all or part of a completed payment."""
    data = parse_json_body(await request.body())
    amount = require_money(data, "amount")
    reason = require_str(data, "reason")
    requested_by = require_str(data, "requested_by")

    payment = await get_escrow_ledger().process_refund(payment_id, amount, reason, requested_by)
    return JSONResponse(status_code=200, content=payment.to_dict())


@router.api_route("/payments/{payment_id}/refund", methods=["GET", "PUT", "PATCH", "DELETE"])
async def refund_method_not_allowed(payment_id: str) -> None:
    """Reject wrong methods on the refund route."""
    _ = payment_id
    raise ServiceError("METHOD_NOT_ALLOWED", "Method not allowed", 405, {})
