"""
Point balance API routes: balances, history, charges and withdrawals.
"""

import logging

from flask import Blueprint, request, jsonify

from models import LedgerAccount
from auth import require_auth, require_role
from errors import NotFoundError, ValidationError
from extensions import limiter, MONEY_RATE_LIMIT
from services import ledger

logger = logging.getLogger(__name__)

points_bp = Blueprint("points", __name__, url_prefix="/api/points")


def _own_account(actor):
    if actor.role not in ("seller", "contractor"):
        raise ValidationError("Only sellers and contractors hold point accounts")
    return LedgerAccount.account_id_for(actor.actor_id, actor.role)


@points_bp.route("/balance", methods=["GET"])
@require_auth
def get_balance(actor):
    """Current balance. Accounts open lazily with zero points."""
    account_id = _own_account(actor)
    try:
        account = ledger.get_balance(account_id)
    except NotFoundError:
        return jsonify({"success": True, "account": {
            "id": account_id,
            "owner_id": actor.actor_id,
            "owner_role": actor.role,
            "balance": 0,
            "available_balance": 0,
            "total_charged": 0,
            "total_withdrawn": 0,
        }}), 200

    data = account.to_dict()
    data["available_balance"] = ledger.available_balance(account_id)
    return jsonify({"success": True, "account": data}), 200


@points_bp.route("/transactions", methods=["GET"])
@require_auth
def list_transactions(actor):
    """
    GET /api/points/transactions?limit=50&offset=0
    """
    account_id = _own_account(actor)
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = max(request.args.get("offset", 0, type=int), 0)
    transactions = ledger.list_transactions(account_id, limit=limit, offset=offset)
    return jsonify({
        "success": True,
        "transactions": [tx.to_dict() for tx in transactions],
        "count": len(transactions),
    }), 200


@points_bp.route("/withdrawals", methods=["POST"])
@limiter.limit(MONEY_RATE_LIMIT)
@require_auth
@require_role("seller", "contractor")
def request_withdrawal(actor):
    data = request.get_json(silent=True) or {}
    tx = ledger.request_withdrawal(actor.actor_id, actor.role, data.get("amount"))
    return jsonify({"success": True, "transaction": tx.to_dict()}), 201


@points_bp.route("/charges", methods=["POST"])
@limiter.limit(MONEY_RATE_LIMIT)
@require_auth
@require_role("admin")
def record_charge(actor):
    """
    Payment-gateway callback relay: credit points after a confirmed charge.

    Body: {"owner_id": "...", "owner_role": "seller", "amount": 50000, "reference": "pay_123"}
    """
    data = request.get_json(silent=True) or {}
    owner_id = data.get("owner_id")
    if not owner_id:
        raise ValidationError("owner_id is required")
    tx = ledger.record_charge(
        owner_id,
        data.get("owner_role", "seller"),
        data.get("amount"),
        reference=data.get("reference"),
    )
    return jsonify({"success": True, "transaction": tx.to_dict()}), 201
