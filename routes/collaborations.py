"""
Collaboration API routes: split a job among several contractors.
"""

from flask import Blueprint, request, jsonify

from auth import require_auth, require_role
from errors import ValidationError
from services import get_collaboration_splitter
from services.base import retry_on_conflict

collaborations_bp = Blueprint("collaborations", __name__, url_prefix="/api/collaborations")


@collaborations_bp.route("", methods=["POST"])
@require_auth
@require_role("contractor")
def create_collaboration(actor):
    """
    Split an assigned job.

    Body: {"job_id": "...", "tasks": [{"description": "...", "amount": 60000}, ...]}
    """
    data = request.get_json(silent=True) or {}
    job_id = data.get("job_id")
    if not job_id:
        raise ValidationError("job_id is required")
    collab = get_collaboration_splitter().create_collaboration(job_id, data.get("tasks"), actor)
    return jsonify({"success": True, "collaboration": collab.to_dict()}), 201


@collaborations_bp.route("", methods=["GET"])
@require_auth
@require_role("contractor", "admin")
def list_collaborations(actor):
    """GET /api/collaborations?scope=open|mine"""
    splitter = get_collaboration_splitter()
    if request.args.get("scope", "open") == "mine":
        collabs = splitter.list_for_contractor(actor.actor_id)
    else:
        collabs = splitter.list_open_collaborations()
    return jsonify({"success": True, "collaborations": [c.to_dict() for c in collabs]}), 200


@collaborations_bp.route("/<collab_id>", methods=["GET"])
@require_auth
def get_collaboration(collab_id, actor):
    collab = get_collaboration_splitter().get_collaboration(collab_id)
    return jsonify({"success": True, "collaboration": collab.to_dict()}), 200


@collaborations_bp.route("/<collab_id>/tasks", methods=["PUT"])
@require_auth
@require_role("contractor")
def update_tasks(collab_id, actor):
    data = request.get_json(silent=True) or {}
    collab = get_collaboration_splitter().update_tasks(collab_id, data.get("tasks"), actor)
    return jsonify({"success": True, "collaboration": collab.to_dict()}), 200


@collaborations_bp.route("/<collab_id>/tasks/<task_id>/accept", methods=["POST"])
@require_auth
@require_role("contractor")
def accept_task(collab_id, task_id, actor):
    collab = get_collaboration_splitter().accept_task(collab_id, task_id, actor.actor_id)
    return jsonify({"success": True, "collaboration": collab.to_dict()}), 200


@collaborations_bp.route("/<collab_id>/tasks/<task_id>/reject", methods=["POST"])
@require_auth
@require_role("contractor")
def reject_task(collab_id, task_id, actor):
    collab = get_collaboration_splitter().reject_task(collab_id, task_id, actor.actor_id)
    return jsonify({"success": True, "collaboration": collab.to_dict()}), 200


@collaborations_bp.route("/<collab_id>/tasks/<task_id>/complete", methods=["POST"])
@require_auth
@require_role("contractor", "admin")
def complete_task(collab_id, task_id, actor):
    splitter = get_collaboration_splitter()
    collab = retry_on_conflict(splitter.complete_task, collab_id, task_id, actor=actor)
    return jsonify({"success": True, "collaboration": collab.to_dict()}), 200


@collaborations_bp.route("/<collab_id>/cancel", methods=["POST"])
@require_auth
def cancel_collaboration(collab_id, actor):
    collab = get_collaboration_splitter().cancel_collaboration(collab_id, actor)
    return jsonify({"success": True, "collaboration": collab.to_dict()}), 200
