"""Bid placement, search, and the accept/reject/withdraw transitions."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from flextasker_service.errors import ServiceError
from flextasker_service.logging import get_logger
from flextasker_service.models import BidSearchFilters, BidStatus
from flextasker_service.routers.helpers import (
    get_bid_ledger,
    optional_money,
    optional_str,
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
# POST /tasks/{task_id}/bids: place bid
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/bids", status_code=201)
async def create_bid(task_id: str, request: Request) -> JSONResponse:
    """Place a bid on an open task."""
    data = parse_json_body(await request.body())
    bidder_id = require_str(data, "bidder_id")
    amount = require_money(data, "amount")
    description = require_str(data, "description")
    timeline = optional_str(data, "timeline") or ""

    bid = await run_in_threadpool(
        get_bid_ledger().create_bid, bidder_id, task_id, amount, description, timeline
    )
    return JSONResponse(status_code=201, content=bid.to_dict())


@router.get("/tasks/{task_id}/bids/statistics")
async def task_bid_statistics(task_id: str, request: Request) -> JSONResponse:
    """Aggregate bid statistics for the task owner."""
    owner_id = require_query(request.query_params.get("owner_id"), "owner_id")
    stats = await run_in_threadpool(get_bid_ledger().get_task_bid_statistics, task_id, owner_id)
    return JSONResponse(status_code=200, content=stats.to_dict())


# ---------------------------------------------------------------------------
# GET /bids: search bids visible to the requester
# ---------------------------------------------------------------------------


@router.get("/bids")
async def search_bids(request: Request) -> JSONResponse:
    """Search bids where the requester is the bidder or the task owner."""
    params = request.query_params
    user_id = require_query(params.get("user_id"), "user_id")

    status_raw = params.get("status")
    min_raw = params.get("min_amount")
    max_raw = params.get("max_amount")
    after_raw = params.get("submitted_after")
    before_raw = params.get("submitted_before")
    filters = BidSearchFilters(
        task_id=params.get("task_id"),
        bidder_id=params.get("bidder_id"),
        status=None if status_raw is None else parse_enum(BidStatus, status_raw, "status"),
        min_amount=optional_money({"min_amount": min_raw}, "min_amount"),
        max_amount=optional_money({"max_amount": max_raw}, "max_amount"),
        submitted_after=None if after_raw is None else parse_datetime(after_raw, "submitted_after"),
        submitted_before=(
            None if before_raw is None else parse_datetime(before_raw, "submitted_before")
        ),
    )
    page_raw = parse_int(params.get("page"), "page")
    page = 1 if page_raw is None else page_raw
    limit = parse_int(params.get("limit"), "limit")

    result = await run_in_threadpool(get_bid_ledger().search_bids, user_id, filters, page, limit)
    return JSONResponse(status_code=200, content=result.to_dict())


@router.get("/bids/{bid_id}")
async def get_bid(bid_id: str, request: Request) -> JSONResponse:
    """Get a bid with the requester's permissions on it."""
    user_id = require_query(request.query_params.get("user_id"), "user_id")
    view = await run_in_threadpool(get_bid_ledger().get_bid, bid_id, user_id)
    return JSONResponse(status_code=200, content=view.to_dict())


@router.patch("/bids/{bid_id}")
async def update_bid(bid_id: str, request: Request) -> JSONResponse:
    """Update the terms of a pending bid."""
    data = parse_json_body(await request.body())
    bidder_id = require_str(data, "bidder_id")
    amount = optional_money(data, "amount")
    description = optional_str(data, "description")
    timeline = optional_str(data, "timeline")

    ledger = get_bid_ledger()
    bid = await run_in_threadpool(
        lambda: ledger.update_bid(
            bid_id, bidder_id, amount=amount, description=description, timeline=timeline
        )
    )
    return JSONResponse(status_code=200, content=bid.to_dict())


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


@router.post("/bids/{bid_id}/accept")
async def accept_bid(bid_id: str, request: Request) -> JSONResponse:
    """Accept a bid: assign the bidder and reject every competing bid."""
    data = parse_json_body(await request.body())
    owner_id = require_str(data, "owner_id")

    result = await run_in_threadpool(get_bid_ledger().accept_bid, bid_id, owner_id)
    get_logger(__name__).info(
        "Accept request served",
        extra={"bid_id": bid_id, "rejected_count": result.rejected_count},
    )
    return JSONResponse(status_code=200, content=result.to_dict())


@router.post("/bids/{bid_id}/reject")
async def reject_bid(bid_id: str, request: Request) -> JSONResponse:
    """Reject a single pending bid."""
    data = parse_json_body(await request.body())
    owner_id = require_str(data, "owner_id")

    bid = await run_in_threadpool(get_bid_ledger().reject_bid, bid_id, owner_id)
    return JSONResponse(status_code=200, content=bid.to_dict())


@router.post("/bids/{bid_id}/withdraw")
async def withdraw_bid(bid_id: str, request: Request) -> JSONResponse:
    """Withdraw the caller's own pending bid."""
    data = parse_json_body(await request.body())
    bidder_id = require_str(data, "bidder_id")

    bid = await run_in_threadpool(get_bid_ledger().withdraw_bid, bid_id, bidder_id)
    return JSONResponse(status_code=200, content=bid.to_dict())


# ---------------------------------------------------------------------------
# Method-not-allowed: bid action routes
# ---------------------------------------------------------------------------


@router.api_route("/bids/{bid_id}/accept", methods=["GET", "PUT", "PATCH", "DELETE"])
@router.api_route("/bids/{bid_id}/reject", methods=["GET", "PUT", "PATCH", "DELETE"])
@router.api_route("/bids/{bid_id}/withdraw", methods=["GET", "PUT", "PATCH", "DELETE"])
async def bid_action_method_not_allowed(bid_id: str) -> None:
    """Reject wrong methods on bid action routes."""
    _ = bid_id
    raise ServiceError("METHOD_NOT_ALLOWED", "Method not allowed", 405, {})
