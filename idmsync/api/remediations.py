"""Remediation endpoints: list, inspect, discard or replay failed pull records."""
from datetime import datetime

from flask import Blueprint, g, jsonify, request

from ..core.errors import ClientError
from ..core.logic import kind_of_type
from ..core.model import any_from_dict
from ..core.patch import patch_from_dict
from .decorators import if_match, prefer_async, require_auth, services
from .helpers import int_arg, json_body, result_response

bp = Blueprint("remediations", __name__)


def _date_arg(name: str):
    value = request.args.get(name)
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise ClientError(f"{name} must be an ISO-8601 date", [name])


@bp.route("/remediations", methods=["GET"])
@require_auth
def list_remediations():
    total, items = services().remediation_logic.list(
        g.auth, _date_arg("before"), _date_arg("after"), int_arg("page", 1), int_arg("size", 25))
    return jsonify({"totalCount": total, "result": [r.to_dict() for r in items]})


@bp.route("/remediations/<key>", methods=["GET"])
@require_auth
def read_remediation(key):
    return jsonify(services().remediation_logic.read(g.auth, key).to_dict())


@bp.route("/remediations/<key>", methods=["DELETE"])
@require_auth
def delete_remediation(key):
    services().remediation_logic.delete(g.auth, key)
    return ("", 204)


@bp.route("/remediations/<key>", methods=["POST"])
@require_auth
def remedy_create(key):
    logic = services().remediation_logic
    remediation = logic.read(g.auth, key)
    to = any_from_dict(json_body(), kind_of_type(remediation.any_type))
    return result_response(logic.remedy_create(g.auth, key, to, prefer_async()), 201)


@bp.route("/remediations/<key>", methods=["PATCH"])
@require_auth
def remedy_update(key):
    logic = services().remediation_logic
    remediation = logic.read(g.auth, key)
    patch = patch_from_dict(json_body(), kind_of_type(remediation.any_type))
    if not patch.key:
        raise ClientError("key is required", ["key"])
    return result_response(logic.remedy_update(g.auth, key, patch, prefer_async(), if_match()))


@bp.route("/remediations/<key>/<any_key>", methods=["DELETE"])
@require_auth
def remedy_delete(key, any_key):
    result = services().remediation_logic.remedy_delete(g.auth, key, any_key, prefer_async(), if_match())
    return result_response(result)
