"""
Job lifecycle API routes for CurtainPoint.
"""

import logging

from flask import Blueprint, request, jsonify

from models import Job
from auth import require_auth, require_role
from errors import PermissionDeniedError, ValidationError
from services import get_escrow_engine
from services import job_store
from services.base import retry_on_conflict

logger = logging.getLogger(__name__)

jobs_bp = Blueprint("jobs", __name__, url_prefix="/api/jobs")


def _can_view(job, actor):
    if actor.is_admin:
        return True
    if actor.role == "seller":
        return job.seller_id == actor.actor_id
    # Contractors browse open jobs and see the ones assigned to them.
    return job.status == "pending" or job.contractor_id == actor.actor_id


def _load_visible(job_id, actor):
    job = job_store.get_job(job_id)
    if not _can_view(job, actor):
        raise PermissionDeniedError("Not allowed to view this job", job_id=job_id)
    return job


def _expected_version(data, default=None):
    """expected_version from a JSON body; numeric strings are accepted."""
    value = data.get("expected_version")
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValidationError("expected_version must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("expected_version must be an integer")



# ---------------------------------------------------------------------------
# POST /api/jobs
# ---------------------------------------------------------------------------
@jobs_bp.route("", methods=["POST"])
@require_auth
@require_role("seller", "admin")
def create_job(actor):
    """Create a pending job. Sellers always create for themselves."""
    data = request.get_json(silent=True) or {}
    spec = dict(data)
    if actor.role == "seller":
        spec["seller_id"] = actor.actor_id
    elif not spec.get("seller_id"):
        raise ValidationError("seller_id is required")

    job = job_store.create_job(spec)
    return jsonify({"success": True, "job": job.to_dict()}), 201


# ---------------------------------------------------------------------------
# GET /api/jobs
# ---------------------------------------------------------------------------
@jobs_bp.route("", methods=["GET"])
@require_auth
def list_jobs(actor):
    """
    List jobs for the caller.

    GET /api/jobs?status=pending
    Sellers see their own jobs, contractors their assigned jobs (or open
    jobs with status=pending), admins filter by status.
    """
    status = request.args.get("status")

    if actor.role == "seller":
        jobs = job_store.list_jobs_by_seller(actor.actor_id)
    elif actor.role == "contractor":
        if status == "pending":
            jobs = job_store.list_jobs_by_status("pending")
        else:
            jobs = job_store.list_jobs_by_contractor(actor.actor_id)
    else:
        jobs = job_store.list_jobs_by_status(status) if status else Job.query.order_by(Job.created_at.desc()).all()

    if status and actor.role != "admin":
        jobs = [job for job in jobs if job.status == status]

    return jsonify({"success": True, "jobs": [job.to_dict() for job in jobs], "count": len(jobs)}), 200


# ---------------------------------------------------------------------------
# GET /api/jobs/<job_id>
# ---------------------------------------------------------------------------
@jobs_bp.route("/<job_id>", methods=["GET"])
@require_auth
def get_job(job_id, actor):
    job = _load_visible(job_id, actor)
    return jsonify({"success": True, "job": job.to_dict()}), 200


# ---------------------------------------------------------------------------
# POST /api/jobs/<job_id>/status
# ---------------------------------------------------------------------------
@jobs_bp.route("/<job_id>/status", methods=["POST"])
@require_auth
def update_status(job_id, actor):
    """
    Request a status change.

    Body: {"status": "assigned", "expected_version": 3, "contractor_id": "...",
           "scheduled_date": "...", "note": "..."}
    Without expected_version the change is retried against fresh state on
    a concurrent write.
    """
    data = request.get_json(silent=True) or {}
    to_status = data.get("status")
    if not to_status:
        raise ValidationError("status is required")

    engine = get_escrow_engine()
    kwargs = {
        "contractor_id": data.get("contractor_id"),
        "scheduled_date": data.get("scheduled_date"),
        "note": data.get("note"),
        "reason": data.get("reason"),
    }
    expected_version = _expected_version(data)
    if expected_version is not None:
        job = engine.request_transition(job_id, to_status, actor, expected_version=expected_version, **kwargs)
    else:
        job = retry_on_conflict(engine.request_transition, job_id, to_status, actor, **kwargs)

    return jsonify({"success": True, "job": job.to_dict()}), 200


# ---------------------------------------------------------------------------
# POST /api/jobs/<job_id>/cancel
# ---------------------------------------------------------------------------
@jobs_bp.route("/<job_id>/cancel", methods=["POST"])
@require_auth
def cancel_job(job_id, actor):
    data = request.get_json(silent=True) or {}
    engine = get_escrow_engine()
    job = retry_on_conflict(engine.request_transition, job_id, "cancelled", actor, reason=data.get("reason"))
    return jsonify({"success": True, "job": job.to_dict()}), 200


# ---------------------------------------------------------------------------
# GET /api/jobs/<job_id>/cancellation-quote
# ---------------------------------------------------------------------------
@jobs_bp.route("/<job_id>/cancellation-quote", methods=["GET"])
@require_auth
@require_role("contractor")
def cancellation_quote(job_id, actor):
    """What cancelling would cost the calling contractor right now."""
    quote = get_escrow_engine().check_cancellation(job_id, actor.actor_id)
    return jsonify({"success": True, "quote": quote._asdict()}), 200


# ---------------------------------------------------------------------------
# POST /api/jobs/<job_id>/dispute
# ---------------------------------------------------------------------------
@jobs_bp.route("/<job_id>/dispute", methods=["POST"])
@require_auth
def file_dispute(job_id, actor):
    data = request.get_json(silent=True) or {}
    dispute = retry_on_conflict(get_escrow_engine().file_dispute, job_id, actor, reason=data.get("reason"))
    return jsonify({"success": True, "dispute": dispute.to_dict()}), 201


# ---------------------------------------------------------------------------
# POST /api/jobs/<job_id>/satisfaction
# ---------------------------------------------------------------------------
@jobs_bp.route("/<job_id>/satisfaction", methods=["POST"])
@require_auth
@require_role("seller", "admin")
def record_satisfaction(job_id, actor):
    """Record the customer's 1-5 rating, relayed by the seller."""
    data = request.get_json(silent=True) or {}
    job = _load_visible(job_id, actor)
    score = data.get("score")
    job = retry_on_conflict(job_store.record_satisfaction, job.id, score, data.get("comment"))
    return jsonify({"success": True, "job": job.to_dict()}), 200


# ---------------------------------------------------------------------------
# PUT /api/jobs/<job_id>/final-amount
# ---------------------------------------------------------------------------
@jobs_bp.route("/<job_id>/final-amount", methods=["PUT"])
@require_auth
@require_role("seller", "admin")
def update_final_amount(job_id, actor):
    data = request.get_json(silent=True) or {}
    job = _load_visible(job_id, actor)
    expected_version = _expected_version(data, default=job.version)
    job = job_store.update_final_amount(job.id, data.get("final_amount"), expected_version)
    return jsonify({"success": True, "job": job.to_dict()}), 200


# ---------------------------------------------------------------------------
# GET /api/jobs/<job_id>/escrow
# ---------------------------------------------------------------------------
@jobs_bp.route("/<job_id>/escrow", methods=["GET"])
@require_auth
def escrow_summary(job_id, actor):
    job = _load_visible(job_id, actor)
    return jsonify({"success": True, "escrow": get_escrow_engine().escrow_summary(job.id)}), 200


# ---------------------------------------------------------------------------
# GET /api/jobs/<job_id>/schedule-changes
# ---------------------------------------------------------------------------
@jobs_bp.route("/<job_id>/schedule-changes", methods=["GET"])
@require_auth
def schedule_changes(job_id, actor):
    job = _load_visible(job_id, actor)
    changes = get_escrow_engine().schedule_changes(job.id)
    return jsonify({"success": True, "schedule_changes": [c.to_dict() for c in changes]}), 200
