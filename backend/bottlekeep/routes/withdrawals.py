# backend/bottlekeep/routes/withdrawals.py
"""
Withdrawal API routes.
"""
from flask import Blueprint, g, request

from bottlekeep.decorators import json_api, json_body, require_store_context
from bottlekeep.services import withdrawal_service
from bottlekeep.validation import parse_query_datetime, parse_query_int, require_positive_int


withdrawals_bp = Blueprint("withdrawals", __name__, url_prefix="/api/withdrawals")


@withdrawals_bp.get("")
@require_store_context
@json_api
def list_withdrawals():
    withdrawals = withdrawal_service.list_withdrawals(
        g.store_id,
        status=request.args.get("status"),
        deposit_id=parse_query_int(request.args.get("deposit_id"), "deposit_id"),
        date_from=parse_query_datetime(request.args.get("date_from"), "date_from"),
        date_to=parse_query_datetime(request.args.get("date_to"), "date_to"),
        limit=parse_query_int(request.args.get("limit"), "limit") or 200,
    )
    return [w.to_dict() for w in withdrawals]


@withdrawals_bp.post("")
@require_store_context
@json_api
def request_withdrawal():
    """
    Request body:
    {
        "deposit_id": int,
        "qty": number,
        "table_number": str (optional),
        "notes": str (optional)
    }

    Returns:
        201: Withdrawal created (deposit now pending_withdrawal)
        400: Invalid quantity / more than remaining
        404: Deposit not found
        409: Deposit not in_store
    """
    data = json_body()
    withdrawal = withdrawal_service.request_withdrawal(
        g.store_id,
        require_positive_int(data["deposit_id"], "deposit_id"),
        data["qty"],
        requester=g.actor,
        table_number=data.get("table_number"),
        notes=data.get("notes"),
    )
    return withdrawal.to_dict(), 201


@withdrawals_bp.post("/direct")
@require_store_context
@json_api
def withdraw_now():
    """In-person withdrawal; same body as POST /api/withdrawals."""
    data = json_body()
    withdrawal = withdrawal_service.withdraw_now(
        g.store_id,
        require_positive_int(data["deposit_id"], "deposit_id"),
        data["qty"],
        processor=g.actor,
        table_number=data.get("table_number"),
        notes=data.get("notes"),
    )
    return withdrawal.to_dict(), 201


@withdrawals_bp.post("/<int:withdrawal_id>/approve")
@require_store_context
@json_api
def approve_withdrawal(withdrawal_id: int):
    return withdrawal_service.approve_withdrawal(g.store_id, withdrawal_id, processor=g.actor).to_dict()


@withdrawals_bp.post("/<int:withdrawal_id>/complete")
@require_store_context
@json_api
def complete_withdrawal(withdrawal_id: int):
    """
    Request body: {"actual_qty": number}

    Returns:
        200: Completed; deposit decremented
        400: Invalid quantity / more than remaining
        409: Wrong status, or the deposit changed concurrently
    """
    data = json_body()
    withdrawal = withdrawal_service.complete_withdrawal(
        g.store_id, withdrawal_id, data["actual_qty"], processor=g.actor
    )
    return withdrawal.to_dict()


@withdrawals_bp.post("/<int:withdrawal_id>/reject")
@require_store_context
@json_api
def reject_withdrawal(withdrawal_id: int):
    """Request body: {"reason": str (optional)}"""
    data = json_body()
    withdrawal = withdrawal_service.reject_withdrawal(
        g.store_id, withdrawal_id, processor=g.actor, reason=data.get("reason")
    )
    return withdrawal.to_dict()


@withdrawals_bp.post("/settle")
@require_store_context
@json_api
def settle_withdrawals():
    """
    Request body:
    {
        "items": [{"withdrawal_id": int, "action": "complete"|"reject",
                   "actual_qty": number (optional), "reason": str (optional)}]
    }

    Each item succeeds or fails on its own; see per-item "ok".
    """
    data = json_body()
    results = withdrawal_service.settle_withdrawals(g.store_id, data["items"], processor=g.actor)
    return {"results": results}
