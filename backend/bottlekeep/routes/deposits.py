# backend/bottlekeep/routes/deposits.py
"""
Deposit ledger API routes.

All routes are store-scoped through the X-Store-Id header; X-Actor names the
staff member acting.
"""
from flask import Blueprint, g, request

from bottlekeep.decorators import json_api, json_body, require_store_context
from bottlekeep.services import deposit_service, import_service
from bottlekeep.time_utils import parse_iso_datetime
from bottlekeep.validation import (
    ValidationError,
    parse_query_bool,
    parse_query_datetime,
    parse_query_int,
    require_bool,
)


deposits_bp = Blueprint("deposits", __name__, url_prefix="/api/deposits")


@deposits_bp.get("")
@require_store_context
@json_api
def list_deposits():
    """
    Query params: status (comma separated), date_from, date_to, search,
    is_vip, limit
    """
    deposits = deposit_service.list_deposits(
        g.store_id,
        status=request.args.get("status"),
        date_from=parse_query_datetime(request.args.get("date_from"), "date_from"),
        date_to=parse_query_datetime(request.args.get("date_to"), "date_to"),
        search=request.args.get("search"),
        is_vip=parse_query_bool(request.args.get("is_vip"), "is_vip"),
        limit=parse_query_int(request.args.get("limit"), "limit") or 200,
    )
    return [d.to_dict() for d in deposits]


@deposits_bp.post("")
@require_store_context
@json_api
def create_deposit():
    """
    Request body:
    {
        "customer_name": str,
        "product_name": str,
        "quantity": number,
        "customer_phone": str (optional),
        "category": str (optional),
        "table_number": str (optional),
        "is_vip": bool (optional),
        "expiry_days": int (optional, defaults to the store setting)
    }
    """
    data = json_body()
    deposit = deposit_service.create_deposit(
        g.store_id,
        customer_name=data["customer_name"],
        product_name=data["product_name"],
        quantity=data["quantity"],
        customer_phone=data.get("customer_phone"),
        line_user_id=data.get("line_user_id"),
        category=data.get("category"),
        table_number=data.get("table_number"),
        notes=data.get("notes"),
        photo_url=data.get("photo_url"),
        customer_photo_url=data.get("customer_photo_url"),
        is_vip=data.get("is_vip", False),
        expiry_days=data.get("expiry_days"),
        actor=g.actor,
    )
    return deposit.to_dict(), 201


@deposits_bp.get("/expiring")
@require_store_context
@json_api
def list_expiring():
    deposits = deposit_service.list_expiring(
        g.store_id,
        threshold_days=parse_query_int(request.args.get("threshold_days"), "threshold_days"),
    )
    return [d.to_dict() for d in deposits]


@deposits_bp.get("/code/<string:deposit_code>")
@require_store_context
@json_api
def get_deposit_by_code(deposit_code: str):
    return deposit_service.get_deposit_by_code(g.store_id, deposit_code).to_dict()


@deposits_bp.get("/<int:deposit_id>")
@require_store_context
@json_api
def get_deposit(deposit_id: int):
    deposit = deposit_service.get_deposit(g.store_id, deposit_id)
    body = deposit.to_dict()
    body["withdrawals"] = [w.to_dict() for w in deposit.withdrawals]
    return body


@deposits_bp.post("/<int:deposit_id>/confirm")
@require_store_context
@json_api
def confirm_deposit(deposit_id: int):
    return deposit_service.confirm_deposit(g.store_id, deposit_id, actor=g.actor).to_dict()


@deposits_bp.post("/<int:deposit_id>/vip")
@require_store_context
@json_api
def set_vip(deposit_id: int):
    """Request body: {"is_vip": bool}"""
    data = json_body()
    enable = require_bool(data["is_vip"], "is_vip")
    return deposit_service.set_vip(g.store_id, deposit_id, enable, actor=g.actor).to_dict()


@deposits_bp.post("/<int:deposit_id>/expire")
@require_store_context
@json_api
def mark_expired(deposit_id: int):
    """Request body: {"notify_customer": bool (optional)}"""
    data = json_body()
    notify = require_bool(data.get("notify_customer", False), "notify_customer")
    deposit = deposit_service.mark_expired(g.store_id, deposit_id, notify_customer=notify, actor=g.actor)
    return deposit.to_dict()


@deposits_bp.post("/<int:deposit_id>/extend-expiry")
@require_store_context
@json_api
def extend_expiry(deposit_id: int):
    """Request body: {"days": int > 0}"""
    data = json_body()
    deposit = deposit_service.extend_expiry(g.store_id, deposit_id, data["days"], actor=g.actor)
    return deposit.to_dict()


@deposits_bp.post("/<int:deposit_id>/expiry-date")
@require_store_context
@json_api
def set_expiry_date(deposit_id: int):
    """Request body: {"expiry_date": ISO-8601}"""
    data = json_body()
    raw = data["expiry_date"]
    try:
        expiry = parse_iso_datetime(raw) if isinstance(raw, str) else None
    except ValueError:
        expiry = None
    if expiry is None:
        raise ValidationError("expiry_date must be an ISO-8601 datetime", field="expiry_date", value=raw)
    deposit = deposit_service.set_expiry_date(g.store_id, deposit_id, expiry, actor=g.actor)
    return deposit.to_dict()


@deposits_bp.get("/<int:deposit_id>/print-payload")
@require_store_context
@json_api
def print_payload(deposit_id: int):
    return deposit_service.build_print_payload(g.store_id, deposit_id)


@deposits_bp.post("/import")
@require_store_context
@json_api
def import_deposits():
    """Request body: {"rows": [ {deposit fields}, ... ]}"""
    data = json_body()
    result = import_service.import_deposits(g.store_id, data["rows"], actor=g.actor)
    status = 201 if result["imported"] else 200
    return result, status
