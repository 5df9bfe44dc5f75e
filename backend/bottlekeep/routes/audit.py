# Overview: Read-only API over the audit trail.

from flask import Blueprint, g, request

from bottlekeep.decorators import json_api, require_store_context
from bottlekeep.services import audit_service
from bottlekeep.validation import parse_query_datetime, parse_query_int


audit_bp = Blueprint("audit", __name__, url_prefix="/api/audit")


@audit_bp.get("")
@require_store_context
@json_api
def list_audit_entries():
    entries = audit_service.list_entries(
        store_id=g.store_id,
        action_type=request.args.get("action_type"),
        table_name=request.args.get("table_name"),
        record_id=request.args.get("record_id"),
        date_from=parse_query_datetime(request.args.get("date_from"), "date_from"),
        date_to=parse_query_datetime(request.args.get("date_to"), "date_to"),
        limit=parse_query_int(request.args.get("limit"), "limit") or 200,
    )
    return [e.to_dict() for e in entries]
