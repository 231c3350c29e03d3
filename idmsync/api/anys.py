"""Users, groups and any objects endpoints."""
import logging

from flask import Blueprint, abort, g, jsonify, request

from ..core.errors import ClientError
from ..core.model import AnyKind, any_from_dict
from ..core.patch import patch_from_dict
from .decorators import if_match, prefer_async, require_auth, services
from .helpers import entity_response, int_arg, json_body, result_response

logger = logging.getLogger(__name__)

bp = Blueprint("anys", __name__)

COLLECTIONS = {
    "users": AnyKind.USER,
    "groups": AnyKind.GROUP,
    "anyObjects": AnyKind.ANY_OBJECT,
}

ASSOCIATIONS = ("link", "unlink", "assign", "unassign", "provision", "deprovision")


def _kind(collection: str) -> AnyKind:
    kind = COLLECTIONS.get(collection)
    if kind is None:
        abort(404, description=f"Unknown collection {collection}")
    return kind


@bp.route("/<collection>", methods=["GET"])
@require_auth
def search(collection):
    """Entities under ``realm`` (default root), optionally filtered by exact ``name``."""
    kind = _kind(collection)
    name = request.args.get("name")
    predicate = (lambda to: to.display_name == name) if name else None
    total, items = services().logics[kind].search(
        g.auth,
        realm=request.args.get("realm", "/"),
        predicate=predicate,
        page=int_arg("page", 1),
        size=int_arg("size", 25),
    )
    return jsonify({"totalCount": total, "result": [to.to_dict() for to in items]})


@bp.route("/<collection>/<key>", methods=["GET"])
@require_auth
def read(collection, key):
    return entity_response(services().logics[_kind(collection)].read(g.auth, key))


@bp.route("/<collection>", methods=["POST"])
@require_auth
def create(collection):
    kind = _kind(collection)
    to = any_from_dict(json_body(), kind)
    result = services().logics[kind].create(g.auth, to, prefer_async())
    return result_response(result, 201)


@bp.route("/<collection>/<key>", methods=["PATCH"])
@require_auth
def update(collection, key):
    kind = _kind(collection)
    data = json_body()
    data["key"] = key
    patch = patch_from_dict(data, kind)
    result = services().logics[kind].update(g.auth, patch, prefer_async(), if_match())
    return result_response(result)


@bp.route("/<collection>/<key>", methods=["DELETE"])
@require_auth
def delete(collection, key):
    kind = _kind(collection)
    result = services().logics[kind].delete(g.auth, key, prefer_async(), if_match())
    return result_response(result)


@bp.route("/<collection>/<key>/associate/<action>", methods=["POST"])
@require_auth
def associate(collection, key, action):
    """Resource association: link, unlink, assign, unassign, provision or deprovision.

    Body: ``{"resources": [...], "changePwd": false, "value": "<password>"}``.
    """
    kind = _kind(collection)
    if action not in ASSOCIATIONS:
        abort(404, description=f"Unknown association {action}")
    data = json_body()
    resources = data.get("resources") or []
    if not isinstance(resources, list) or not resources:
        raise ClientError("resources must be a non-empty list", ["resources"])

    logic = services().logics[kind]
    if action in ("link", "unlink"):
        entity = getattr(logic, action)(g.auth, key, resources)
        return entity_response(entity)
    if action in ("assign", "provision"):
        result = getattr(logic, action)(
            g.auth, key, resources, bool(data.get("changePwd", False)), data.get("value"), prefer_async())
    else:
        result = getattr(logic, action)(g.auth, key, resources, prefer_async())
    return result_response(result)
