# backend/bottlekeep/routes/transfers.py
"""
Transfer-to-central API routes.
"""
from flask import Blueprint, g, request

from bottlekeep.decorators import json_api, json_body, require_store_context
from bottlekeep.services import transfer_service
from bottlekeep.validation import parse_query_int, require_positive_int


transfers_bp = Blueprint("transfers", __name__, url_prefix="/api/transfers")


@transfers_bp.get("")
@require_store_context
@json_api
def list_transfers():
    """Query params: status, direction (incoming|outgoing), limit"""
    transfers = transfer_service.list_transfers(
        g.store_id,
        status=request.args.get("status"),
        direction=request.args.get("direction"),
        limit=parse_query_int(request.args.get("limit"), "limit") or 200,
    )
    return [t.to_dict() for t in transfers]


@transfers_bp.post("")
@require_store_context
@json_api
def create_transfer():
    """
    Create a transfer of one deposit to the central store.

    Request body:
    {
        "deposit_id": int,
        "to_store_id": int (optional, must be the central store),
        "notes": str (optional),
        "photo_url": str (optional)
    }

    Returns:
        201: Transfer created
        400: Destination is not the central store
        404: Deposit or central store not found
        409: Deposit not in_store or already on a transfer
    """
    data = json_body()
    transfer = transfer_service.create_transfer(
        g.store_id,
        require_positive_int(data["deposit_id"], "deposit_id"),
        to_store_id=data.get("to_store_id"),
        requester=g.actor,
        notes=data.get("notes"),
        photo_url=data.get("photo_url"),
    )
    return transfer.to_dict(), 201


@transfers_bp.post("/batch")
@require_store_context
@json_api
def create_transfers_batch():
    """
    Request body: {"deposit_codes": [str], "notes": str (optional)}

    Each code succeeds or fails on its own; see per-item "ok".
    """
    data = json_body()
    results = transfer_service.create_transfers_batch(
        g.store_id,
        data["deposit_codes"],
        requester=g.actor,
        notes=data.get("notes"),
    )
    return {"results": results}


@transfers_bp.post("/<int:transfer_id>/confirm")
@require_store_context
@json_api
def confirm_transfer(transfer_id: int):
    """Called by the central store. Body: {"photo_url"?, "notes"?}"""
    data = json_body()
    transfer = transfer_service.confirm_transfer(
        g.store_id,
        transfer_id,
        confirmer=g.actor,
        photo_url=data.get("photo_url"),
        notes=data.get("notes"),
    )
    return transfer.to_dict()


@transfers_bp.post("/<int:transfer_id>/reject")
@require_store_context
@json_api
def reject_transfer(transfer_id: int):
    """Body: {"reason": str (optional)}"""
    data = json_body()
    transfer = transfer_service.reject_transfer(
        g.store_id, transfer_id, actor=g.actor, reason=data.get("reason")
    )
    return transfer.to_dict()


@transfers_bp.get("/central-deposits")
@require_store_context
@json_api
def list_central_deposits():
    items = transfer_service.list_central_deposits(g.store_id, status=request.args.get("status"))
    return [c.to_dict() for c in items]


@transfers_bp.post("/central-deposits/<int:central_deposit_id>/withdraw")
@require_store_context
@json_api
def withdraw_central_deposit(central_deposit_id: int):
    data = json_body()
    central = transfer_service.withdraw_central_deposit(
        g.store_id, central_deposit_id, actor=g.actor, notes=data.get("notes")
    )
    return central.to_dict()
