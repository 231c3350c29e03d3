"""Pull/push task endpoints."""
from flask import Blueprint, g, jsonify

from .decorators import prefer_async, require_auth, services

bp = Blueprint("tasks", __name__)


@bp.route("/tasks", methods=["GET"])
@require_auth
def list_tasks():
    return jsonify(services().task_logic.list(g.auth))


@bp.route("/tasks/<key>/execute", methods=["POST"])
@require_auth
def execute_task(key):
    """Run the task; with ``Prefer: respond-async`` it is queued and 202 is returned."""
    execution = services().task_logic.execute(g.auth, key, prefer_async())
    if execution is None:
        return jsonify({"task": key, "status": "QUEUED"}), 202, {"Preference-Applied": "respond-async"}
    return jsonify(execution.to_dict())


@bp.route("/tasks/<key>/interrupt", methods=["POST"])
@require_auth
def interrupt_task(key):
    interrupted = services().task_logic.interrupt(g.auth, key)
    return jsonify({"task": key, "interrupted": interrupted})


@bp.route("/tasks/<key>/executions", methods=["GET"])
@require_auth
def list_executions(key):
    return jsonify([e.to_dict() for e in services().task_logic.executions(g.auth, key)])
