# Overview: Flask API routes for stores and store settings.

from flask import Blueprint, request

from bottlekeep.decorators import json_api, json_body
from bottlekeep.services import store_service
from bottlekeep.validation import NotFoundError, parse_query_bool


stores_bp = Blueprint("stores", __name__, url_prefix="/api/stores")


@stores_bp.get("")
@json_api
def list_stores():
    include_inactive = parse_query_bool(request.args.get("all"), "all") or False
    stores = store_service.list_stores(include_inactive=include_inactive)
    return [store.to_dict() for store in stores]


@stores_bp.post("")
@json_api
def create_store():
    data = json_body()
    store = store_service.create_store(
        data["code"],
        data["name"],
        is_central=bool(data.get("is_central", False)),
        timezone=data.get("timezone"),
    )
    return store.to_dict(), 201


@stores_bp.get("/<int:store_id>")
@json_api
def get_store(store_id: int):
    store = store_service.get_store(store_id)
    if not store:
        raise NotFoundError("Store", store_id)
    return store.to_dict()


@stores_bp.get("/<int:store_id>/settings")
@json_api
def get_settings(store_id: int):
    return store_service.get_settings(store_id).to_dict()


@stores_bp.patch("/<int:store_id>/settings")
@json_api
def update_settings(store_id: int):
    settings = store_service.update_settings(store_id, json_body())
    return settings.to_dict()
