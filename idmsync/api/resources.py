"""External resource endpoints: description, remote objects and connectivity check."""
from flask import Blueprint, g, jsonify, request

from .decorators import require_auth, services
from .helpers import int_arg

bp = Blueprint("resources", __name__)


def _resource_dict(resource) -> dict:
    return {
        "key": resource.key,
        "connector": resource.conn_instance.connector_name,
        "propagationPriority": resource.propagation_priority,
        "priorityAbort": resource.priority_abort,
        "randomPwdIfNotProvided": resource.random_pwd_if_not_provided,
        "enforceMandatoryCondition": resource.enforce_mandatory_condition,
        "provisions": [
            {
                "anyType": p.any_type,
                "objectClass": p.object_class,
                "auxClasses": list(p.aux_classes),
                "correlationRule": p.correlation_rule or "default",
                "mapping": [
                    {
                        "intAttrName": item.int_attr_name,
                        "extAttrName": item.ext_attr_name,
                        "purpose": item.purpose.value,
                        "connObjectKey": item.conn_object_key,
                        "password": item.password,
                        "mandatory": item.mandatory_condition,
                        "transformers": list(item.transformers),
                    }
                    for item in p.mapping.items
                ],
            }
            for p in resource.provisions
        ],
    }


@bp.route("/resources", methods=["GET"])
@require_auth
def list_resources():
    return jsonify([_resource_dict(r) for r in services().resource_logic.list(g.auth)])


@bp.route("/resources/<key>", methods=["GET"])
@require_auth
def read_resource(key):
    return jsonify(_resource_dict(services().resource_logic.read(g.auth, key)))


@bp.route("/resources/<key>/check", methods=["POST"])
@require_auth
def check_resource(key):
    ok, message = services().resource_logic.check(g.auth, key)
    return jsonify({"key": key, "ok": ok, "message": message}), 200 if ok else 503


@bp.route("/resources/<key>/<any_type>", methods=["GET"])
@require_auth
def list_conn_objects(key, any_type):
    """One page of remote objects; pass back ``nextPageCookie`` as ``cookie`` for the next one."""
    order_by = [s for s in request.args.get("orderBy", "").split(",") if s.strip()] or None
    result, cookie = services().resource_logic.list_conn_objects(
        g.auth, key, any_type, int_arg("size", 25), request.args.get("cookie"), order_by)
    return jsonify({"result": [obj.to_dict() for obj in result], "nextPageCookie": cookie})


@bp.route("/resources/<key>/<any_type>/<any_key>", methods=["GET"])
@require_auth
def read_conn_object(key, any_type, any_key):
    return jsonify(services().resource_logic.read_conn_object(g.auth, key, any_type, any_key).to_dict())
