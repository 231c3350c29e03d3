"""Request parsing and response building shared by the blueprints."""
from flask import jsonify, request

from ..core.errors import ClientError
from ..core.model import etag_of
from .decorators import prefer_async


def json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ClientError("JSON object body required")
    return data


def int_arg(name: str, default: int) -> int:
    try:
        return int(request.args.get(name, default))
    except ValueError:
        raise ClientError(f"{name} must be an integer", [name])


def _with_etag(response, entity):
    etag = etag_of(entity)
    if etag:
        response.headers["ETag"] = f'"{etag}"'
    return response


def entity_response(entity, status: int = 200):
    """JSON of ``entity`` with its ETag header."""
    response = jsonify(entity.to_dict())
    response.status_code = status
    return _with_etag(response, entity)


def result_response(result, status: int = 200):
    """JSON of a ProvisioningResult with the entity ETag and the applied preference."""
    response = jsonify(result.to_dict())
    response.status_code = status
    if prefer_async():
        response.headers["Preference-Applied"] = "respond-async"
    return _with_etag(response, result.entity)
