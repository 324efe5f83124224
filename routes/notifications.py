"""
In-app notification feed.
"""

from flask import Blueprint, request, jsonify

from models import db, Notification
from auth import require_auth
from errors import NotFoundError
from notifications import list_notifications

notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


@notifications_bp.route("", methods=["GET"])
@require_auth
def get_notifications(actor):
    """GET /api/notifications?unread=true"""
    unread_only = request.args.get("unread", "").lower() == "true"
    items = list_notifications(actor.actor_id, unread_only=unread_only)
    return jsonify({"success": True, "notifications": [n.to_dict() for n in items]}), 200


@notifications_bp.route("/<notification_id>/read", methods=["PUT"])
@require_auth
def mark_read(notification_id, actor):
    notification = db.session.get(Notification, notification_id)
    if not notification or notification.user_id != actor.actor_id:
        raise NotFoundError("Notification not found")
    notification.is_read = True
    db.session.commit()
    return jsonify({"success": True, "notification": notification.to_dict()}), 200
