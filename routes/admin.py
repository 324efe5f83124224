"""
Admin API routes for CurtainPoint.
Protected by role-based access (admin only).
"""

import logging
from functools import wraps

from flask import Blueprint, request, jsonify

from auth import require_auth
from services import get_escrow_engine
from services import ledger
import notifications

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


def require_admin(f):
    """Wrap require_auth and additionally check that the caller has admin role."""
    @wraps(f)
    @require_auth
    def wrapper(actor, *args, **kwargs):
        if not actor.is_admin:
            return jsonify({"error": "Admin access required"}), 403
        return f(actor=actor, *args, **kwargs)
    return wrapper


@admin_bp.route("/disputes/<job_id>/resolve", methods=["POST"])
@require_admin
def resolve_dispute(job_id, actor):
    """
    Apply the arbiter's decision.

    Body: {"decision": "refund" | "settle", "note": "..."}
    """
    data = request.get_json(silent=True) or {}
    dispute = get_escrow_engine().resolve_dispute(job_id, data.get("decision"), actor, note=data.get("note"))
    return jsonify({"success": True, "dispute": dispute.to_dict()}), 200


@admin_bp.route("/jobs/<job_id>/compensation", methods=["POST"])
@require_admin
def compensate(job_id, actor):
    """
    Body: {"type": "product_not_ready" | "customer_absent", "reason": "..."}
    """
    data = request.get_json(silent=True) or {}
    record = get_escrow_engine().compensate(job_id, data.get("type"), actor, reason=data.get("reason"))
    return jsonify({"success": True, "compensation": record.to_dict()}), 201


@admin_bp.route("/transactions/<tx_id>/settle", methods=["POST"])
@require_admin
def settle_transaction(tx_id, actor):
    """Confirm or fail an externally settled transaction (withdrawal payouts).

    Body: {"outcome": "completed" | "failed" | "cancelled"}
    """
    data = request.get_json(silent=True) or {}
    tx = ledger.settle_transaction(tx_id, data.get("outcome", "completed"))
    logger.info("Admin %s settled transaction %s as %s", actor.actor_id, tx.id, tx.status)
    return jsonify({"success": True, "transaction": tx.to_dict()}), 200


@admin_bp.route("/escrow/sweep", methods=["POST"])
@require_admin
def sweep_escrow(actor):
    """Run the settlement sweep now instead of waiting for the scheduler."""
    settled = get_escrow_engine().settle_due()
    return jsonify({"success": True, "settled": settled}), 200


@admin_bp.route("/accounts/<account_id>/verify", methods=["GET"])
@require_admin
def verify_account(account_id, actor):
    ok, cached, computed = ledger.verify_account(account_id)
    return jsonify({"success": True, "ok": ok, "balance": cached, "computed_balance": computed}), 200


@admin_bp.route("/events/dispatch", methods=["POST"])
@require_admin
def dispatch_events(actor):
    processed = notifications.dispatch_pending_events()
    return jsonify({"success": True, "processed": processed}), 200


@admin_bp.route("/jobs/<job_id>/transactions", methods=["GET"])
@require_admin
def job_transactions(job_id, actor):
    transactions = ledger.find_transactions(job_id=job_id, tx_type=request.args.get("type"))
    return jsonify({"success": True, "transactions": [tx.to_dict() for tx in transactions]}), 200
